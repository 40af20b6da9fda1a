from . import events
from .api import CodexApi
from .approvals import ApprovalCache, assess_command_risk, has_sensitive_files
from .channels import Broadcast, StateChannel, Subscription
from .config import ClientInfo, ServiceConfig, to_server_sandbox_mode
from .errors import (
    CodexBinaryNotFoundError,
    CodexError,
    CodexNotInitializedError,
    CodexProtocolError,
    CodexTimeoutError,
    CodexTransportError,
)
from .events import CodexEvent, PlanStep, plan_step_state
from .masking import mask, mask_command, mask_path
from .models import (
    ApprovalDecision,
    ApprovalRequest,
    InitializeResult,
    Notification,
    RateLimitSnapshot,
    RateLimitWindow,
    ThreadListResult,
    ThreadRef,
    TurnRef,
    parse_rate_limit_snapshot,
)
from .normalizer import decode_output_chunk, parse_codex_event, parse_duration_millis
from .process import ManagedProcess, ProcessState, ProcessSupervisor, compute_backoff_ms, find_codex_binary
from .rpc import JsonRpcClient
from .service import (
    ApprovalHandler,
    CodexService,
    ServiceError,
    ServiceRunning,
    ServiceStarting,
    ServiceState,
    ServiceStopped,
)
from .sessions import Session, SessionEvent, SessionRegistry, SessionState

__all__ = [
    "ApprovalCache",
    "ApprovalDecision",
    "ApprovalHandler",
    "ApprovalRequest",
    "Broadcast",
    "ClientInfo",
    "CodexApi",
    "CodexBinaryNotFoundError",
    "CodexError",
    "CodexEvent",
    "CodexNotInitializedError",
    "CodexProtocolError",
    "CodexService",
    "CodexTimeoutError",
    "CodexTransportError",
    "InitializeResult",
    "JsonRpcClient",
    "ManagedProcess",
    "Notification",
    "PlanStep",
    "ProcessState",
    "ProcessSupervisor",
    "RateLimitSnapshot",
    "RateLimitWindow",
    "ServiceConfig",
    "ServiceError",
    "ServiceRunning",
    "ServiceStarting",
    "ServiceState",
    "ServiceStopped",
    "Session",
    "SessionEvent",
    "SessionRegistry",
    "SessionState",
    "StateChannel",
    "Subscription",
    "ThreadListResult",
    "ThreadRef",
    "TurnRef",
    "assess_command_risk",
    "compute_backoff_ms",
    "decode_output_chunk",
    "events",
    "find_codex_binary",
    "has_sensitive_files",
    "mask",
    "mask_command",
    "mask_path",
    "parse_codex_event",
    "parse_duration_millis",
    "parse_rate_limit_snapshot",
    "plan_step_state",
    "to_server_sandbox_mode",
]
