from __future__ import annotations

import base64

import pytest

from codex_app_server_supervisor import events
from codex_app_server_supervisor.models import Notification
from codex_app_server_supervisor.normalizer import (
    THREAD_ID_STRATEGIES,
    decode_output_chunk,
    extract_text,
    parse_codex_event,
    parse_duration_millis,
    resolve_thread_id,
)


def test_thread_started_reads_nested_thread_object() -> None:
    event = parse_codex_event("thread/started", {"thread": {"id": "thr-1", "model": "gpt-4"}})
    assert event == events.ThreadStarted(thread_id="thr-1", model="gpt-4")


def test_accepts_notification_objects() -> None:
    event = parse_codex_event(Notification("thread/started", {"threadId": "thr-2"}))
    assert isinstance(event, events.ThreadStarted)
    assert event.thread_id == "thr-2"


def test_legacy_agent_message_envelope() -> None:
    event = parse_codex_event(
        "codex/event/agent_message",
        {"threadId": "t", "msg": {"message": "hi", "turnId": "x"}},
    )
    assert event == events.AgentMessage(message="hi", thread_id="t", turn_id="x")


def test_session_configured_variants_map_to_thread_started() -> None:
    legacy = parse_codex_event(
        "sessionConfigured",
        {"msg": {"threadId": "thr-9", "model": "o3", "rolloutPath": "/r", "sessionId": "s"}},
    )
    assert legacy == events.ThreadStarted(thread_id="thr-9", model="o3", rollout_path="/r", session_id="s")

    envelope = parse_codex_event(
        "codex/event/session_configured",
        {"msg": {"thread": {"id": "thr-8"}, "modelProvider": "openai"}},
    )
    assert envelope == events.ThreadStarted(thread_id="thr-8", model_provider="openai")


@pytest.mark.parametrize(
    ("params", "expected"),
    [
        ({"threadId": "a", "thread": {"id": "b"}}, "a"),
        ({"thread": {"id": "b"}, "msg": {"threadId": "c"}}, "b"),
        ({"msg": {"threadId": "c", "thread": {"id": "d"}}}, "c"),
        ({"msg": {"thread": {"id": "d"}}}, "d"),
        ({"thread": "not-an-object"}, ""),
        ({}, ""),
    ],
)
def test_thread_id_strategies_run_in_order(params: dict, expected: str) -> None:
    assert resolve_thread_id(params) == expected


def test_each_thread_id_strategy_is_independent() -> None:
    params = {"msg": {"thread": {"id": "only-last"}}}
    results = [strategy(params) for strategy in THREAD_ID_STRATEGIES]
    assert results == [None, None, None, "only-last"]


def test_item_created_concatenates_array_content() -> None:
    event = parse_codex_event(
        "item/created",
        {
            "threadId": "t",
            "item": {"type": "agentMessage", "content": [{"text": "Hello, "}, {"text": "world!"}]},
        },
    )
    assert event == events.AgentMessage(message="Hello, world!", thread_id="t")


def test_item_created_classifies_reasoning_and_plan() -> None:
    reasoning = parse_codex_event(
        "item/created",
        {"threadId": "t", "turnId": "u", "item": {"type": "Reasoning", "text": "thinking"}},
    )
    assert reasoning == events.AgentReasoning(content="thinking", thread_id="t", turn_id="u")

    by_purpose = parse_codex_event(
        "item/created",
        {"threadId": "t", "item": {"type": "message", "purpose": "reasoning", "textDelta": "hm"}},
    )
    assert by_purpose == events.AgentReasoningDelta(delta="hm", thread_id="t")

    plan = parse_codex_event(
        "item/created",
        {
            "threadId": "t",
            "item": {
                "type": "plan",
                "explanation": "why",
                "plan": [{"title": "write code"}, {"step": "test", "status": "in_progress"}, {"status": "x"}],
            },
        },
    )
    assert plan == events.PlanUpdate(
        thread_id="t",
        plan=(events.PlanStep("write code", "pending"), events.PlanStep("test", "in_progress")),
        explanation="why",
    )


def test_item_text_wins_over_delta_and_blank_text_falls_back() -> None:
    full = parse_codex_event("item/created", {"item": {"text": "full", "delta": "partial"}})
    assert full == events.AgentMessage(message="full", thread_id="")

    blank = parse_codex_event("item/created", {"item": {"text": "  ", "delta": {"content": "partial"}}})
    assert blank == events.AgentMessageDelta(delta="partial", thread_id="")


def test_blank_item_becomes_unknown() -> None:
    params = {"threadId": "t", "item": {"type": "agentMessage", "text": "   "}}
    event = parse_codex_event("item/created", params)
    assert event == events.Unknown(method="item/created", params=params, thread_id="t")


def test_item_completed_skips_user_messages() -> None:
    agent = parse_codex_event(
        "item/completed",
        {"threadId": "t", "item": {"type": "agentMessage", "text": "done"}},
    )
    assert agent == events.AgentMessage(message="done", thread_id="t")

    user = parse_codex_event(
        "item/completed",
        {"threadId": "t", "item": {"type": "userMessage", "content": [{"type": "text", "text": "hi"}]}},
    )
    assert isinstance(user, events.Unknown)


def test_item_delta_variants() -> None:
    nested = parse_codex_event(
        "item/delta",
        {"threadId": "t", "item": {"type": "reasoning", "delta": {"text": "r"}}},
    )
    assert nested == events.AgentReasoningDelta(delta="r", thread_id="t")

    flat = parse_codex_event("item/delta", {"threadId": "t", "turnId": "u", "delta": "chunk"})
    assert flat == events.AgentMessageDelta(delta="chunk", thread_id="t", turn_id="u")

    modern = parse_codex_event(
        "item/agentMessage/delta",
        {"threadId": "t", "turnId": "u", "itemId": "i", "delta": "Hel"},
    )
    assert modern == events.AgentMessageDelta(delta="Hel", thread_id="t", turn_id="u")

    assert isinstance(parse_codex_event("item/delta", {"delta": ""}), events.Unknown)


def test_turn_lifecycle_methods() -> None:
    started = parse_codex_event(
        "turn/started",
        {"threadId": "t", "turn": {"id": "u", "modelContextWindow": 128000}},
    )
    assert started == events.TaskStarted(thread_id="t", turn_id="u", model_context_window=128000)

    completed = parse_codex_event(
        "turn/completed",
        {"threadId": "t", "turn": {"id": "u", "status": "completed", "lastMessage": "bye"}},
    )
    assert completed == events.TaskComplete(
        thread_id="t", turn_id="u", last_agent_message="bye", status="completed"
    )

    alias = parse_codex_event("turnCompleted", {"threadId": "t", "turnId": "u", "status": "interrupted"})
    assert alias == events.TaskComplete(thread_id="t", turn_id="u", status="interrupted")

    failed = parse_codex_event(
        "turn/failed",
        {"threadId": "t", "turn": {"id": "u", "error": {"message": "quota", "details": "429"}}},
    )
    assert failed == events.Error(message="quota", thread_id="t", details="429", turn_id="u")


def test_rate_limits_updated_keeps_raw_payload() -> None:
    params = {"rateLimits": {"primary": {"usedPercent": 12.5}}}
    event = parse_codex_event("account/rateLimits/updated", params)
    assert event == events.RateLimitsUpdated(limits=params)


def test_legacy_tool_and_exec_events() -> None:
    begin = parse_codex_event(
        "codex/event/exec_command_begin",
        {"threadId": "t", "msg": {"callId": "c", "command": ["ls", "-la"], "cwd": "/p"}},
    )
    assert begin == events.ExecCommandBegin(thread_id="t", call_id="c", command=("ls", "-la"), cwd="/p")

    chunk = base64.b64encode("hello\n".encode("utf-8")).decode("ascii")
    delta = parse_codex_event(
        "codex/event/exec_command_output_delta",
        {"threadId": "t", "msg": {"callId": "c", "chunk": chunk}},
    )
    assert delta == events.ExecCommandOutputDelta(thread_id="t", call_id="c", stream="stdout", chunk="hello\n")

    end = parse_codex_event(
        "codex/event/exec_command_end",
        {"threadId": "t", "msg": {"callId": "c", "duration": {"secs": 1, "nanos": 250000000}}},
    )
    assert end == events.ExecCommandEnd(thread_id="t", call_id="c", exit_code=-1, duration_ms=1250)

    mcp = parse_codex_event(
        "codex/event/mcp_tool_call_begin",
        {"msg": {"callId": "m", "tool": "search", "server": "docs", "arguments": {"q": "x"}}},
    )
    assert mcp == events.McpToolCallBegin(thread_id="", call_id="m", tool="search", server="docs", arguments={"q": "x"})

    patch = parse_codex_event(
        "codex/event/patch_apply_end",
        {"threadId": "t", "msg": {"callId": "p", "success": True}},
    )
    assert patch == events.PatchApplyEnd(thread_id="t", call_id="p", success=True)


def test_legacy_token_count_reads_info_block() -> None:
    event = parse_codex_event(
        "codex/event/token_count",
        {"threadId": "t", "msg": {"turnId": "u", "info": {"totalTokenUsage": 900, "lastTokenUsage": 120}}},
    )
    assert event == events.TokenCount(thread_id="t", total_token_usage=900, last_token_usage=120, turn_id="u")

    empty = parse_codex_event("codex/event/token_count", {"msg": {"info": None}})
    assert empty == events.TokenCount(thread_id="")


def test_legacy_turn_aborted_defaults_reason() -> None:
    event = parse_codex_event("codex/event/turn_aborted", {"threadId": "t", "msg": {}})
    assert event == events.TurnAborted(thread_id="t", reason="unknown")


def test_unrecognised_methods_become_unknown() -> None:
    assert parse_codex_event("codex/event/brand_new", {"msg": {}}) == events.Unknown(
        method="codex/event/brand_new", params={"msg": {}}
    )
    unknown = parse_codex_event("mystery/method", None)
    assert unknown == events.Unknown(method="mystery/method", params={})


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ({"millis": 2500}, 2500),
        ({"seconds": 1, "nanos": 500000000}, 1500),
        ("150ms", 150),
        ({}, None),
        (42, 42),
        (2.5, 3),
        (True, None),
        (float("nan"), None),
        ("~12+", 12),
        ("  7.4 ", 7),
        ("1.5s", 1500),
        ("2 MIN", 120000),
        ("1h", 3600000),
        ("1500us", 2),
        ("2000000ns", 2),
        ("soon", None),
        ({"durationMs": "1.2s", "millis": None}, 1200),
        ({"minutes": 1, "seconds": "30"}, 90000),
        ({"pretty": "3s"}, 3000),
        ({"nested": {"ms": 9}}, 9),
        ([None, "x", "5ms", 7], 5),
        ([], None),
        (None, None),
    ],
)
def test_parse_duration_millis(value: object, expected: int | None) -> None:
    assert parse_duration_millis(value) == expected


def test_direct_keys_take_priority_over_parts() -> None:
    assert parse_duration_millis({"seconds": 5, "ms": 10}) == 10
    assert parse_duration_millis({"value": 1, "millis": 2}) == 2


def test_decode_output_chunk_falls_back_to_raw_text() -> None:
    assert decode_output_chunk(base64.b64encode(b"ok").decode("ascii")) == "ok"
    assert decode_output_chunk("not base64!") == "not base64!"
    assert decode_output_chunk(base64.b64encode(b"\xff\xfe").decode("ascii")) == "\ufffd\ufffd"
    assert decode_output_chunk("") == ""


def test_legacy_plan_update_keeps_steps_without_a_name() -> None:
    event = parse_codex_event(
        "codex/event/plan_update",
        {
            "threadId": "t",
            "msg": {
                "explanation": "next",
                "plan": [{"step": "read", "status": "completed"}, {"status": "in_progress"}, {"title": "ignored"}],
            },
        },
    )
    assert event == events.PlanUpdate(
        thread_id="t",
        plan=(
            events.PlanStep("read", "completed"),
            events.PlanStep("", "in_progress"),
            events.PlanStep("", "pending"),
        ),
        explanation="next",
    )


def test_output_chunk_split_inside_a_character_is_still_decoded() -> None:
    # "h\u00e9" with the second byte of "\u00e9" left for the next chunk.
    chunk = base64.b64encode(b"h\xc3").decode("ascii")
    event = parse_codex_event(
        "codex/event/exec_command_output_delta",
        {"threadId": "t", "msg": {"callId": "c", "chunk": chunk}},
    )
    assert isinstance(event, events.ExecCommandOutputDelta)
    assert event.chunk == "h\ufffd"


def test_extract_text_handles_every_shape() -> None:
    assert extract_text("plain") == "plain"
    assert extract_text(3) == "3"
    assert extract_text({"content": {"value": "deep"}}) == "deep"
    assert extract_text([{"text": "a"}, "b", {"content": [{"delta": "c"}]}]) == "abc"
    assert extract_text([]) is None
    assert extract_text({"other": 1}) is None


@pytest.mark.parametrize(
    ("status", "expected"),
    [
        ("completed", "done"),
        ("Done", "done"),
        ("in_progress", "active"),
        ("waiting on review", "blocked"),
        ("pending", "todo"),
    ],
)
def test_plan_step_state_buckets_statuses(status: str, expected: str) -> None:
    assert events.plan_step_state(status) == expected
