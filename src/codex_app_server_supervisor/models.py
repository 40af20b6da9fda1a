from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Literal, TypeAlias

from pydantic import BaseModel, Field

from .protocol import APPLY_PATCH_APPROVAL_METHOD, EXEC_COMMAND_APPROVAL_METHOD


class InitializeResult(BaseModel):
    """Parsed result for the `initialize` handshake response.

    Attributes:
        user_agent: Server user agent string, if present.
        raw: Full raw initialize result payload.
    """

    user_agent: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class Notification:
    """Inbound notification: a method name plus its params object."""

    method: str
    params: dict[str, Any] = field(default_factory=dict)


ApprovalMethod: TypeAlias = Literal["execCommandApproval", "applyPatchApproval"]

#: Decision strings understood by the app-server.
#:
#: Values:
#: - ``"approved"``: allow this one action.
#: - ``"approved_for_session"``: allow and remember for the rest of the thread.
#: - ``"denied"``: refuse this action and let the turn continue.
#: - ``"abort"``: refuse and stop the turn.
ApprovalDecision: TypeAlias = Literal["approved", "approved_for_session", "denied", "abort"]

APPROVED_FOR_SESSION = "approved_for_session"
DENIED = "denied"


@dataclass(frozen=True, slots=True)
class ApprovalRequest:
    """Server-initiated request asking whether a command or patch may proceed."""

    request_id: int | str
    method: ApprovalMethod
    params: dict[str, Any] = field(default_factory=dict)

    @property
    def is_exec(self) -> bool:
        return self.method == EXEC_COMMAND_APPROVAL_METHOD

    @property
    def is_patch(self) -> bool:
        return self.method == APPLY_PATCH_APPROVAL_METHOD

    @property
    def thread_id(self) -> str | None:
        for key in ("threadId", "conversationId"):
            value = self.params.get(key)
            if isinstance(value, str) and value:
                return value
        return None

    @property
    def command(self) -> list[str]:
        """Command tokens for exec approvals (a bare string counts as one token)."""
        value = self.params.get("command")
        if isinstance(value, list):
            return [str(token) for token in value]
        if isinstance(value, str):
            return [value]
        return []

    @property
    def cwd(self) -> str:
        value = self.params.get("cwd")
        return value if isinstance(value, str) else ""

    @property
    def files(self) -> set[str]:
        """Paths touched by a patch approval."""
        changes = self.params.get("fileChanges")
        if isinstance(changes, Mapping):
            return {str(path) for path in changes}
        return set()

    @property
    def reason(self) -> str | None:
        value = self.params.get("reason")
        return value if isinstance(value, str) else None


class ThreadRef(BaseModel):
    """Thread summary returned by `thread/start`, `thread/resume` and `thread/list`."""

    id: str
    preview: str | None = None
    model_provider: str | None = None
    created_at: int | None = None


class ThreadListResult(BaseModel):
    """One page of `thread/list` results."""

    data: list[ThreadRef] = Field(default_factory=list)
    next_cursor: str | None = None


class TurnRef(BaseModel):
    """Turn summary returned by `turn/start`."""

    id: str
    status: str = "unknown"
    items: list[Any] = Field(default_factory=list)
    error: str | None = None


class RateLimitWindow(BaseModel):
    """Usage accounting for one account-level rate limit window.

    Attributes:
        label: Window label (`Primary` or `Secondary`).
        used_percent: Percentage of the window already consumed.
        window_minutes: Window length in minutes.
        resets_at: Epoch seconds when the window resets.
        limit: Absolute budget, when reported.
        used: Absolute usage, when reported.
        remaining: Absolute remaining budget, when reported.
    """

    label: str
    used_percent: float | None = None
    window_minutes: int | None = None
    resets_at: int | None = None
    limit: int | None = None
    used: int | None = None
    remaining: int | None = None

    def usage_fraction(self) -> float | None:
        """Best-effort consumed fraction in [0, 1]."""
        if self.used_percent is not None:
            return _clamp(self.used_percent / 100.0)
        if self.limit is not None and self.limit > 0:
            if self.used is not None:
                return _clamp(self.used / self.limit)
            if self.remaining is not None:
                return _clamp(1.0 - self.remaining / self.limit)
        return None


class RateLimitSnapshot(BaseModel):
    """Primary and secondary rate limit windows for the signed-in account."""

    primary: RateLimitWindow | None = None
    secondary: RateLimitWindow | None = None


def parse_rate_limit_snapshot(payload: Any) -> RateLimitSnapshot | None:
    """Parse a rate limit payload, tolerating a `rateLimits` wrapper object."""
    if not isinstance(payload, Mapping):
        return None
    container = payload.get("rateLimits")
    if not isinstance(container, Mapping):
        container = payload
    primary = _parse_rate_limit_window("Primary", container.get("primary"))
    secondary = _parse_rate_limit_window("Secondary", container.get("secondary"))
    if primary is None and secondary is None:
        return None
    return RateLimitSnapshot(primary=primary, secondary=secondary)


def _parse_rate_limit_window(label: str, payload: Any) -> RateLimitWindow | None:
    if not isinstance(payload, Mapping) or not payload:
        return None
    used_percent = _first_number(payload, ("usedPercent", "used_percentage", "usedPercentPct"))
    window = _first_number(payload, ("windowDurationMins", "windowMinutes", "window"))
    resets_at = _first_number(payload, ("resetsAt", "resetAt", "resetEpochSeconds"))
    limit = _first_number(payload, ("limit", "budget", "capacity"))
    used = _first_number(payload, ("used", "usage", "usedTokens", "tokensUsed"))
    remaining = _first_number(payload, ("remaining", "tokensRemaining"))
    return RateLimitWindow(
        label=label,
        used_percent=used_percent,
        window_minutes=_as_int(window),
        resets_at=_as_int(resets_at),
        limit=_as_int(limit),
        used=_as_int(used),
        remaining=_as_int(remaining),
    )


def _first_number(payload: Mapping[str, Any], keys: tuple[str, ...]) -> float | None:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, (int, float)):
            number = float(value)
        elif isinstance(value, str):
            try:
                number = float(value.strip())
            except ValueError:
                continue
        else:
            continue
        if math.isfinite(number):
            return number
    return None


def _as_int(value: float | None) -> int | None:
    return int(value) if value is not None else None


def _clamp(value: float) -> float:
    return min(max(value, 0.0), 1.0)
