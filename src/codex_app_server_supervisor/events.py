"""Domain events produced by the notification normalizer.

`CodexEvent` is a closed union. Consumers dispatch with `match` and must keep
an `Unknown` arm, which carries any notification the normalizer does not
recognise.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, TypeAlias

PlanStepState: TypeAlias = Literal["done", "active", "blocked", "todo"]


@dataclass(frozen=True, slots=True)
class PlanStep:
    step: str
    status: str = "pending"


def plan_step_state(status: str) -> PlanStepState:
    """Bucket a free-form plan status string."""
    lowered = status.lower()
    if any(word in lowered for word in ("done", "complete", "success")):
        return "done"
    if any(word in lowered for word in ("progress", "active", "working")):
        return "active"
    if any(word in lowered for word in ("blocked", "waiting")):
        return "blocked"
    return "todo"


@dataclass(frozen=True, slots=True)
class ThreadStarted:
    thread_id: str
    model: str | None = None
    model_provider: str | None = None
    rollout_path: str | None = None
    session_id: str | None = None


@dataclass(frozen=True, slots=True)
class TaskStarted:
    thread_id: str
    turn_id: str | None = None
    model_context_window: int = 0


@dataclass(frozen=True, slots=True)
class TaskComplete:
    thread_id: str
    turn_id: str | None = None
    last_agent_message: str | None = None
    status: str | None = None


@dataclass(frozen=True, slots=True)
class TurnAborted:
    thread_id: str
    reason: str = "unknown"
    turn_id: str | None = None


@dataclass(frozen=True, slots=True)
class AgentMessage:
    message: str
    thread_id: str
    turn_id: str | None = None


@dataclass(frozen=True, slots=True)
class AgentMessageDelta:
    delta: str
    thread_id: str
    turn_id: str | None = None


@dataclass(frozen=True, slots=True)
class AgentReasoning:
    content: str
    thread_id: str
    turn_id: str | None = None


@dataclass(frozen=True, slots=True)
class AgentReasoningDelta:
    delta: str
    thread_id: str
    turn_id: str | None = None


@dataclass(frozen=True, slots=True)
class PlanUpdate:
    thread_id: str
    plan: tuple[PlanStep, ...] = ()
    explanation: str | None = None
    turn_id: str | None = None


@dataclass(frozen=True, slots=True)
class McpToolCallBegin:
    thread_id: str
    call_id: str = ""
    tool: str = ""
    server: str = ""
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class McpToolCallEnd:
    thread_id: str
    call_id: str = ""
    result: Any = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class ExecCommandBegin:
    thread_id: str
    call_id: str = ""
    command: tuple[str, ...] = ()
    cwd: str = ""


@dataclass(frozen=True, slots=True)
class ExecCommandOutputDelta:
    """Decoded output chunk of a running command."""

    thread_id: str
    call_id: str = ""
    stream: str = "stdout"
    chunk: str = ""


@dataclass(frozen=True, slots=True)
class ExecCommandEnd:
    thread_id: str
    call_id: str = ""
    exit_code: int = -1
    duration_ms: int | None = None


@dataclass(frozen=True, slots=True)
class ApplyPatchApprovalRequest:
    thread_id: str
    call_id: str = ""
    file_changes: dict[str, Any] = field(default_factory=dict)
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class PatchApplyBegin:
    thread_id: str
    call_id: str = ""
    auto_approved: bool = False


@dataclass(frozen=True, slots=True)
class PatchApplyEnd:
    thread_id: str
    call_id: str = ""
    success: bool = False


@dataclass(frozen=True, slots=True)
class WebSearchBegin:
    thread_id: str
    call_id: str = ""
    query: str = ""


@dataclass(frozen=True, slots=True)
class WebSearchEnd:
    thread_id: str
    call_id: str = ""


@dataclass(frozen=True, slots=True)
class TokenCount:
    thread_id: str
    total_token_usage: int = 0
    last_token_usage: int = 0
    turn_id: str | None = None


@dataclass(frozen=True, slots=True)
class Error:
    message: str
    thread_id: str
    details: str | None = None
    turn_id: str | None = None


@dataclass(frozen=True, slots=True)
class Warning:
    message: str
    thread_id: str


@dataclass(frozen=True, slots=True)
class RateLimitsUpdated:
    """Raw rate limit payload; parse with `models.parse_rate_limit_snapshot`."""

    limits: dict[str, Any] = field(default_factory=dict)
    thread_id: str = ""


@dataclass(frozen=True, slots=True)
class Unknown:
    """Notification the normalizer does not recognise, kept verbatim."""

    method: str
    params: dict[str, Any] = field(default_factory=dict)
    thread_id: str = ""


CodexEvent: TypeAlias = (
    ThreadStarted
    | TaskStarted
    | TaskComplete
    | TurnAborted
    | AgentMessage
    | AgentMessageDelta
    | AgentReasoning
    | AgentReasoningDelta
    | PlanUpdate
    | McpToolCallBegin
    | McpToolCallEnd
    | ExecCommandBegin
    | ExecCommandOutputDelta
    | ExecCommandEnd
    | ApplyPatchApprovalRequest
    | PatchApplyBegin
    | PatchApplyEnd
    | WebSearchBegin
    | WebSearchEnd
    | TokenCount
    | Error
    | Warning
    | RateLimitsUpdated
    | Unknown
)
