from __future__ import annotations

from typing import Any, Literal

# Handshake.
INITIALIZE_METHOD = "initialize"
INITIALIZED_NOTIFICATION = "initialized"

# Domain request methods consumed by this library.
THREAD_START_METHOD = "thread/start"
THREAD_RESUME_METHOD = "thread/resume"
THREAD_LIST_METHOD = "thread/list"
THREAD_ARCHIVE_METHOD = "thread/archive"
TURN_START_METHOD = "turn/start"
TURN_INTERRUPT_METHOD = "turn/interrupt"
MODEL_LIST_METHOD = "model/list"
ACCOUNT_LOGIN_START_METHOD = "account/login/start"
ACCOUNT_LOGIN_CANCEL_METHOD = "account/login/cancel"
ACCOUNT_LOGOUT_METHOD = "account/logout"
ACCOUNT_READ_METHOD = "account/read"
ACCOUNT_RATE_LIMITS_READ_METHOD = "account/rateLimits/read"
EXEC_ONE_OFF_COMMAND_METHOD = "execOneOffCommand"
FUZZY_FILE_SEARCH_METHOD = "fuzzyFileSearch"
GIT_DIFF_TO_REMOTE_METHOD = "gitDiffToRemote"

# Server-initiated requests answered with an approval decision.
EXEC_COMMAND_APPROVAL_METHOD = "execCommandApproval"
APPLY_PATCH_APPROVAL_METHOD = "applyPatchApproval"
APPROVAL_METHODS = frozenset(
    {
        EXEC_COMMAND_APPROVAL_METHOD,
        APPLY_PATCH_APPROVAL_METHOD,
    }
)

# Notification methods understood by the event normalizer.
THREAD_STARTED_METHOD = "thread/started"
TURN_STARTED_METHOD = "turn/started"
ITEM_CREATED_METHOD = "item/created"
ITEM_DELTA_METHOD = "item/delta"
ITEM_COMPLETED_METHOD = "item/completed"
ITEM_AGENT_MESSAGE_DELTA_METHOD = "item/agentMessage/delta"
RATE_LIMITS_UPDATED_METHOD = "account/rateLimits/updated"
SESSION_CONFIGURED_METHOD = "sessionConfigured"
CODEX_EVENT_PREFIX = "codex/event/"

# Notification method aliases that may signal turn completion.
TURN_COMPLETED_METHODS = frozenset(
    {
        "turn/completed",
        "turn.completed",
        "turnCompleted",
    }
)

# Notification method aliases that may signal turn failure.
TURN_FAILED_METHODS = frozenset(
    {
        "turn/error",
        "turn.failed",
        "turn/failed",
        "turnFailed",
        "turn/errored",
    }
)

# JSON-RPC error code for server requests this client does not implement.
METHOD_NOT_FOUND_CODE = -32601

MessageKind = Literal["response", "error", "request", "notification", "invalid"]


def make_request(
    request_id: int,
    method: str,
    params: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build a request envelope."""
    return {
        "id": request_id,
        "method": method,
        "params": params if params is not None else {},
    }


def make_notification(
    method: str,
    params: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build a notification envelope (no id)."""
    return {
        "method": method,
        "params": params if params is not None else {},
    }


def make_result_response(
    request_id: int | str,
    result: Any,
) -> dict[str, Any]:
    """Build a success response envelope."""
    return {
        "id": request_id,
        "result": result,
    }


def make_approval_response(
    request_id: int | str,
    decision: str,
) -> dict[str, Any]:
    """Build the response envelope for an approval request."""
    return make_result_response(request_id, {"decision": decision})


def make_error_response(
    request_id: int | str,
    code: int,
    message: str,
    data: Any = None,
) -> dict[str, Any]:
    """Build an error response envelope."""
    error: dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {
        "id": request_id,
        "error": error,
    }


def classify_message(payload: dict[str, Any]) -> MessageKind:
    """Classify an inbound message by which envelope fields are present."""
    has_id = "id" in payload
    if has_id and "result" in payload:
        return "response"
    if has_id and "error" in payload:
        return "error"
    if has_id and "method" in payload:
        return "request"
    if "method" in payload:
        return "notification"
    return "invalid"


def is_turn_completed(method: str) -> bool:
    """Return True when method name indicates turn completion."""
    return method in TURN_COMPLETED_METHODS


def is_turn_failed(method: str) -> bool:
    """Return True when method name indicates turn failure."""
    return method in TURN_FAILED_METHODS
