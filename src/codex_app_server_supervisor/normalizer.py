"""Map raw app-server notifications onto the closed `CodexEvent` union.

The app-server has emitted the same logical events in several shapes over
time: flat methods such as `thread/started`, the legacy `sessionConfigured`
method, and `codex/event/<kind>` envelopes that nest the payload under
`msg`. Every lookup below is an ordered tuple of extraction strategies; the
first strategy returning a value wins. Nothing in this module raises for
malformed input; unrecognised notifications become `events.Unknown`.
"""

from __future__ import annotations

import base64
import binascii
import math
import re
from collections.abc import Callable, Mapping
from typing import Any

from . import events
from .models import Notification
from .protocol import (
    CODEX_EVENT_PREFIX,
    ITEM_AGENT_MESSAGE_DELTA_METHOD,
    ITEM_COMPLETED_METHOD,
    ITEM_CREATED_METHOD,
    ITEM_DELTA_METHOD,
    RATE_LIMITS_UPDATED_METHOD,
    SESSION_CONFIGURED_METHOD,
    THREAD_STARTED_METHOD,
    TURN_STARTED_METHOD,
    is_turn_completed,
    is_turn_failed,
)

Strategy = Callable[[Mapping[str, Any]], str | None]


def _string(source: Mapping[str, Any] | None, key: str) -> str | None:
    """Return a primitive field rendered as text, or None."""
    if source is None:
        return None
    return _primitive_text(source.get(key))


def _primitive_text(value: Any) -> str | None:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return None


def _mapping(value: Any) -> Mapping[str, Any] | None:
    return value if isinstance(value, Mapping) else None


def _int(source: Mapping[str, Any] | None, key: str) -> int | None:
    if source is None:
        return None
    value = source.get(key)
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def _bool(source: Mapping[str, Any], key: str) -> bool:
    value = source.get(key)
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return False


def first_match(strategies: tuple[Strategy, ...], source: Mapping[str, Any]) -> str | None:
    """Run `strategies` in order and return the first non-None result."""
    for strategy in strategies:
        value = strategy(source)
        if value is not None:
            return value
    return None


def _msg(params: Mapping[str, Any]) -> Mapping[str, Any] | None:
    return _mapping(params.get("msg"))


THREAD_ID_STRATEGIES: tuple[Strategy, ...] = (
    lambda params: _string(params, "threadId"),
    lambda params: _string(_mapping(params.get("thread")), "id"),
    lambda params: _string(_msg(params), "threadId"),
    lambda params: _string(_mapping((_msg(params) or {}).get("thread")), "id"),
)


def resolve_thread_id(params: Mapping[str, Any]) -> str:
    """Find the thread id wherever this notification shape keeps it."""
    return first_match(THREAD_ID_STRATEGIES, params) or ""


def extract_text(element: Any) -> str | None:
    """Recursively pull text out of a string, content object or content array."""
    if element is None:
        return None
    if isinstance(element, Mapping):
        for key in ("text", "textDelta", "delta", "value"):
            text = _string(element, key)
            if text is not None:
                return text
        return extract_text(element.get("content"))
    if isinstance(element, list):
        parts = [part for part in (extract_text(child) for child in element) if part is not None]
        return "".join(parts) if parts else None
    return _primitive_text(element)


ITEM_TEXT_STRATEGIES: tuple[Strategy, ...] = (
    lambda item: _string(item, "text"),
    lambda item: extract_text(item.get("content")),
    lambda item: _string(item, "value"),
)

ITEM_DELTA_STRATEGIES: tuple[Strategy, ...] = (
    lambda item: _string(item, "textDelta"),
    lambda item: extract_text(item.get("textDelta")),
    lambda item: _string(item, "delta"),
    lambda item: extract_text(item.get("delta")),
)


def _is_reasoning(item_type: str | None, purpose: str | None) -> bool:
    return (item_type is not None and "reasoning" in item_type) or purpose == "reasoning"


def _plan_steps(value: Any) -> tuple[events.PlanStep, ...]:
    if not isinstance(value, list):
        return ()
    steps: list[events.PlanStep] = []
    for entry in value:
        entry_map = _mapping(entry)
        if entry_map is None:
            continue
        step = _string(entry_map, "step")
        if step is None:
            step = _string(entry_map, "title")
        if step is None:
            continue
        steps.append(events.PlanStep(step=step, status=_string(entry_map, "status") or "pending"))
    return tuple(steps)


def _legacy_plan_steps(value: Any) -> tuple[events.PlanStep, ...]:
    """`codex/event/plan_update` steps; a missing `step` becomes an empty step."""
    if not isinstance(value, list):
        return ()
    return tuple(
        events.PlanStep(step=_string(entry, "step") or "", status=_string(entry, "status") or "pending")
        for entry in map(_mapping, value)
        if entry is not None
    )


def _item_turn_id(params: Mapping[str, Any], item: Mapping[str, Any]) -> str | None:
    turn_id = _string(params, "turnId")
    return turn_id if turn_id is not None else _string(item, "turnId")


def _parse_item(
    params: Mapping[str, Any],
    thread_id: str,
    *,
    completed: bool = False,
) -> events.CodexEvent | None:
    item = _mapping(params.get("item"))
    if item is None:
        return None
    turn_id = _item_turn_id(params, item)
    raw_type = _string(item, "type")
    if completed and raw_type == "userMessage":
        return None
    item_type = raw_type.lower() if raw_type is not None else None
    purpose = _string(item, "purpose")
    purpose = purpose.lower() if purpose is not None else None

    text = first_match(ITEM_TEXT_STRATEGIES, item)
    delta = first_match(ITEM_DELTA_STRATEGIES, item)

    if _is_reasoning(item_type, purpose):
        if text and text.strip():
            return events.AgentReasoning(content=text, thread_id=thread_id, turn_id=turn_id)
        if delta and delta.strip():
            return events.AgentReasoningDelta(delta=delta, thread_id=thread_id, turn_id=turn_id)
        return None

    if item_type == "plan":
        steps = item.get("steps")
        if not isinstance(steps, list):
            steps = item.get("plan")
        return events.PlanUpdate(
            thread_id=thread_id,
            plan=_plan_steps(steps),
            explanation=_string(item, "explanation"),
            turn_id=turn_id,
        )

    if text and text.strip():
        return events.AgentMessage(message=text, thread_id=thread_id, turn_id=turn_id)
    if delta and delta.strip():
        return events.AgentMessageDelta(delta=delta, thread_id=thread_id, turn_id=turn_id)
    return None


def _parse_item_delta(params: Mapping[str, Any], thread_id: str) -> events.CodexEvent | None:
    item = _mapping(params.get("item")) or params
    turn_id = _item_turn_id(params, item)
    item_type = _string(item, "type")
    purpose = _string(item, "purpose")

    delta = first_match(ITEM_DELTA_STRATEGIES, item)
    if delta is None:
        delta = _string(params, "delta")
    if not delta or not delta.strip():
        return None

    if _is_reasoning(
        item_type.lower() if item_type is not None else None,
        purpose.lower() if purpose is not None else None,
    ):
        return events.AgentReasoningDelta(delta=delta, thread_id=thread_id, turn_id=turn_id)
    return events.AgentMessageDelta(delta=delta, thread_id=thread_id, turn_id=turn_id)


def _thread_started(payload: Mapping[str, Any], thread_id: str) -> events.ThreadStarted:
    return events.ThreadStarted(
        thread_id=thread_id,
        model=_string(payload, "model"),
        model_provider=_string(payload, "modelProvider"),
        rollout_path=_string(payload, "rolloutPath"),
        session_id=_string(payload, "sessionId"),
    )


def _turn_completed(params: Mapping[str, Any], thread_id: str) -> events.TaskComplete:
    turn = _mapping(params.get("turn")) or params
    turn_id = _string(turn, "id")
    status = _string(turn, "status")
    last_message = _string(turn, "lastMessage")
    return events.TaskComplete(
        thread_id=thread_id,
        turn_id=turn_id if turn_id is not None else _string(params, "turnId"),
        last_agent_message=last_message if last_message is not None else _string(params, "lastMessage"),
        status=status if status is not None else _string(params, "status"),
    )


def _turn_failed(params: Mapping[str, Any], thread_id: str) -> events.Error:
    turn = _mapping(params.get("turn")) or params
    error_value = turn.get("error", params.get("error"))
    error_map = _mapping(error_value)
    message = _string(error_map, "message") if error_map is not None else _primitive_text(error_value)
    if message is None:
        message = _string(params, "message") or ""
    details = _string(error_map, "details") if error_map is not None else None
    turn_id = _string(turn, "id")
    return events.Error(
        message=message,
        thread_id=thread_id,
        details=details,
        turn_id=turn_id if turn_id is not None else _string(params, "turnId"),
    )


# Duration parsing -----------------------------------------------------------

_DURATION_PATTERN = re.compile(
    r"^([0-9]+(?:\.[0-9]+)?)\s*"
    r"(ms|millis|millisecond|milliseconds"
    r"|s|sec|secs|second|seconds"
    r"|m|min|mins|minute|minutes"
    r"|h|hr|hrs|hour|hours"
    r"|us|micro|micros|microsecond|microseconds"
    r"|ns|nano|nanos|nanosecond|nanoseconds)$",
    re.IGNORECASE,
)

_NUMERIC_PATTERN = re.compile(r"^[+-]?(?:[0-9]+(?:\.[0-9]*)?|\.[0-9]+)(?:[eE][+-]?[0-9]+)?$")

_UNIT_MULTIPLIERS: dict[str, float] = {}
for _names, _multiplier in (
    (("ms", "millis", "millisecond", "milliseconds"), 1.0),
    (("s", "sec", "secs", "second", "seconds"), 1_000.0),
    (("m", "min", "mins", "minute", "minutes"), 60_000.0),
    (("h", "hr", "hrs", "hour", "hours"), 3_600_000.0),
    (("us", "micro", "micros", "microsecond", "microseconds"), 0.001),
    (("ns", "nano", "nanos", "nanosecond", "nanoseconds"), 0.000001),
):
    for _name in _names:
        _UNIT_MULTIPLIERS[_name] = _multiplier

DURATION_DIRECT_KEYS = (
    "millis",
    "milliseconds",
    "durationMs",
    "durationMillis",
    "ms",
    "value",
    "raw",
    "totalMs",
    "totalMillis",
)

DURATION_TEXT_KEYS = ("approximate", "pretty", "human", "humanReadable", "display")

# (keys, multiplier to milliseconds); only the first present key of a family counts.
DURATION_PART_FAMILIES: tuple[tuple[tuple[str, ...], float], ...] = (
    (("seconds", "second", "secs", "sec", "s"), 1_000.0),
    (("minutes", "minute", "mins", "min", "m"), 60_000.0),
    (("hours", "hour", "hrs", "hr", "h"), 3_600_000.0),
    (("nanos", "nano", "ns"), 1 / 1_000_000.0),
    (("microseconds", "microsecond", "micros", "micro", "us"), 1 / 1_000.0),
)

_DURATION_PART_KEYS = frozenset(key for keys, _ in DURATION_PART_FAMILIES for key in keys)
_DURATION_SKIP_KEYS = frozenset(DURATION_DIRECT_KEYS) | frozenset(DURATION_TEXT_KEYS) | _DURATION_PART_KEYS


def _round_half_up(value: float) -> int | None:
    if not math.isfinite(value):
        return None
    return math.floor(value + 0.5)


def _sanitize_duration_text(raw: str) -> str:
    return raw.strip().lstrip("~").rstrip("+").strip()


def _parse_number_text(text: str) -> float | None:
    if not _NUMERIC_PATTERN.match(text):
        return None
    try:
        return float(text)
    except ValueError:
        return None


def _part_value(source: Mapping[str, Any], keys: tuple[str, ...]) -> float | None:
    for key in keys:
        value = source.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, (int, float)):
            return float(value)
        if isinstance(value, str):
            parsed = _parse_number_text(value.strip())
            if parsed is not None:
                return parsed
    return None


def parse_duration_millis(value: Any) -> int | None:
    """Best-effort conversion of any duration shape to whole milliseconds.

    Accepts numbers, numeric strings (optionally decorated as `~12` or `12+`),
    unit-suffixed strings such as `"1.5s"` or `"150ms"`, objects with direct,
    part (seconds/nanos...) or human-readable keys, and arrays, whose first
    parseable element wins. Returns None when nothing parses.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return _round_half_up(value)
    if isinstance(value, str):
        return _parse_duration_text(value)
    if isinstance(value, Mapping):
        return _parse_duration_object(value)
    if isinstance(value, list):
        for element in value:
            parsed = parse_duration_millis(element)
            if parsed is not None:
                return parsed
    return None


def _parse_duration_text(raw: str) -> int | None:
    text = _sanitize_duration_text(raw)
    if not text:
        return None
    number = _parse_number_text(text)
    if number is not None:
        return _round_half_up(number)
    match = _DURATION_PATTERN.match(text)
    if match is None:
        return None
    multiplier = _UNIT_MULTIPLIERS.get(match.group(2).lower(), 1.0)
    return _round_half_up(float(match.group(1)) * multiplier)


def _parse_duration_object(source: Mapping[str, Any]) -> int | None:
    for key in DURATION_DIRECT_KEYS:
        parsed = parse_duration_millis(source.get(key))
        if parsed is not None:
            return parsed

    contributions: list[float] = []
    for keys, multiplier in DURATION_PART_FAMILIES:
        part = _part_value(source, keys)
        if part is not None and math.isfinite(part):
            contributions.append(part * multiplier)
    if contributions:
        return _round_half_up(sum(contributions))

    for key in DURATION_TEXT_KEYS:
        parsed = parse_duration_millis(source.get(key))
        if parsed is not None:
            return parsed

    for key, child in source.items():
        if key in _DURATION_SKIP_KEYS:
            continue
        parsed = parse_duration_millis(child)
        if parsed is not None:
            return parsed
    return None


def decode_output_chunk(encoded: str) -> str:
    """Decode a base64 output chunk; input that is not base64 passes through unchanged.

    Chunks may split a multi-byte character, so invalid UTF-8 is replaced
    rather than rejected.
    """
    if not encoded:
        return ""
    try:
        decoded = base64.b64decode(encoded, validate=True)
    except binascii.Error:
        return encoded
    return decoded.decode("utf-8", errors="replace")


# codex/event/<kind> builders -------------------------------------------------

EventBuilder = Callable[[Mapping[str, Any], str], events.CodexEvent]


def _command_tokens(value: Any) -> tuple[str, ...]:
    if isinstance(value, list):
        return tuple(text for text in (_primitive_text(token) for token in value) if text is not None)
    if isinstance(value, str):
        return (value,)
    return ()


def _token_count(payload: Mapping[str, Any], thread_id: str) -> events.TokenCount:
    info = _mapping(payload.get("info"))
    return events.TokenCount(
        thread_id=thread_id,
        total_token_usage=_int(info, "totalTokenUsage") or 0,
        last_token_usage=_int(info, "lastTokenUsage") or 0,
        turn_id=_string(payload, "turnId"),
    )


def _exec_command_end(payload: Mapping[str, Any], thread_id: str) -> events.ExecCommandEnd:
    exit_code = _int(payload, "exitCode")
    return events.ExecCommandEnd(
        thread_id=thread_id,
        call_id=_string(payload, "callId") or "",
        exit_code=exit_code if exit_code is not None else -1,
        duration_ms=parse_duration_millis(payload.get("duration")),
    )


CODEX_EVENT_BUILDERS: dict[str, EventBuilder] = {
    "session_configured": lambda p, tid: _thread_started(p, tid),
    "task_started": lambda p, tid: events.TaskStarted(
        thread_id=tid,
        turn_id=_string(p, "turnId"),
        model_context_window=_int(p, "modelContextWindow") or 0,
    ),
    "task_complete": lambda p, tid: events.TaskComplete(
        thread_id=tid,
        turn_id=_string(p, "turnId"),
        last_agent_message=_string(p, "lastAgentMessage"),
        status=_string(p, "status"),
    ),
    "turn_aborted": lambda p, tid: events.TurnAborted(
        thread_id=tid,
        reason=_string(p, "reason") or "unknown",
        turn_id=_string(p, "turnId"),
    ),
    "agent_message": lambda p, tid: events.AgentMessage(
        message=_string(p, "message") or "",
        thread_id=tid,
        turn_id=_string(p, "turnId"),
    ),
    "agent_message_delta": lambda p, tid: events.AgentMessageDelta(
        delta=_string(p, "delta") or "",
        thread_id=tid,
        turn_id=_string(p, "turnId"),
    ),
    "agent_reasoning": lambda p, tid: events.AgentReasoning(
        content=_string(p, "content") or "",
        thread_id=tid,
        turn_id=_string(p, "turnId"),
    ),
    "agent_reasoning_delta": lambda p, tid: events.AgentReasoningDelta(
        delta=_string(p, "delta") or "",
        thread_id=tid,
        turn_id=_string(p, "turnId"),
    ),
    "plan_update": lambda p, tid: events.PlanUpdate(
        thread_id=tid,
        plan=_legacy_plan_steps(p.get("plan")),
        explanation=_string(p, "explanation"),
        turn_id=_string(p, "turnId"),
    ),
    "mcp_tool_call_begin": lambda p, tid: events.McpToolCallBegin(
        thread_id=tid,
        call_id=_string(p, "callId") or "",
        tool=_string(p, "tool") or "",
        server=_string(p, "server") or "",
        arguments=dict(_mapping(p.get("arguments")) or {}),
    ),
    "mcp_tool_call_end": lambda p, tid: events.McpToolCallEnd(
        thread_id=tid,
        call_id=_string(p, "callId") or "",
        result=p.get("result"),
        error=_string(p, "error"),
    ),
    "exec_command_begin": lambda p, tid: events.ExecCommandBegin(
        thread_id=tid,
        call_id=_string(p, "callId") or "",
        command=_command_tokens(p.get("command")),
        cwd=_string(p, "cwd") or "",
    ),
    "exec_command_output_delta": lambda p, tid: events.ExecCommandOutputDelta(
        thread_id=tid,
        call_id=_string(p, "callId") or "",
        stream=_string(p, "stream") or "stdout",
        chunk=decode_output_chunk(_string(p, "chunk") or ""),
    ),
    "exec_command_end": _exec_command_end,
    "apply_patch_approval_request": lambda p, tid: events.ApplyPatchApprovalRequest(
        thread_id=tid,
        call_id=_string(p, "callId") or "",
        file_changes=dict(_mapping(p.get("fileChanges")) or {}),
        reason=_string(p, "reason"),
    ),
    "patch_apply_begin": lambda p, tid: events.PatchApplyBegin(
        thread_id=tid,
        call_id=_string(p, "callId") or "",
        auto_approved=_bool(p, "autoApproved"),
    ),
    "patch_apply_end": lambda p, tid: events.PatchApplyEnd(
        thread_id=tid,
        call_id=_string(p, "callId") or "",
        success=_bool(p, "success"),
    ),
    "web_search_begin": lambda p, tid: events.WebSearchBegin(
        thread_id=tid,
        call_id=_string(p, "callId") or "",
        query=_string(p, "query") or "",
    ),
    "web_search_end": lambda p, tid: events.WebSearchEnd(
        thread_id=tid,
        call_id=_string(p, "callId") or "",
    ),
    "token_count": _token_count,
    "error": lambda p, tid: events.Error(
        message=_string(p, "message") or "",
        thread_id=tid,
        turn_id=_string(p, "turnId"),
    ),
    "warning": lambda p, tid: events.Warning(
        message=_string(p, "message") or "",
        thread_id=tid,
    ),
}


def parse_codex_event(
    notification: Notification | str,
    params: Mapping[str, Any] | None = None,
) -> events.CodexEvent:
    """Normalize one notification (or a `(method, params)` pair) into an event."""
    if isinstance(notification, Notification):
        method = notification.method
        raw_params: Any = notification.params
    else:
        method = notification
        raw_params = params
    params_map: dict[str, Any] = dict(raw_params) if isinstance(raw_params, Mapping) else {}

    thread_id = resolve_thread_id(params_map)
    unknown = events.Unknown(method=method, params=params_map, thread_id=thread_id)

    if method == THREAD_STARTED_METHOD:
        thread = _mapping(params_map.get("thread")) or params_map
        return _thread_started(thread, _string(thread, "id") or thread_id)

    if method == TURN_STARTED_METHOD:
        turn = _mapping(params_map.get("turn"))
        turn_id = _string(turn, "id")
        return events.TaskStarted(
            thread_id=thread_id,
            turn_id=turn_id if turn_id is not None else _string(params_map, "turnId"),
            model_context_window=_int(turn, "modelContextWindow") or 0,
        )

    if is_turn_completed(method):
        return _turn_completed(params_map, thread_id)

    if is_turn_failed(method):
        return _turn_failed(params_map, thread_id)

    if method == ITEM_CREATED_METHOD:
        return _parse_item(params_map, thread_id) or unknown

    if method == ITEM_COMPLETED_METHOD:
        return _parse_item(params_map, thread_id, completed=True) or unknown

    if method in (ITEM_DELTA_METHOD, ITEM_AGENT_MESSAGE_DELTA_METHOD):
        event = _parse_item_delta(params_map, thread_id)
        return event or unknown

    if method == RATE_LIMITS_UPDATED_METHOD:
        return events.RateLimitsUpdated(limits=params_map, thread_id=thread_id)

    if method == SESSION_CONFIGURED_METHOD:
        return _thread_started(_msg(params_map) or params_map, thread_id)

    if method.startswith(CODEX_EVENT_PREFIX):
        builder = CODEX_EVENT_BUILDERS.get(method[len(CODEX_EVENT_PREFIX):])
        if builder is None:
            return unknown
        return builder(_msg(params_map) or params_map, thread_id)

    return unknown
