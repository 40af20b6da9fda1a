from codex_app_server_supervisor.protocol import (
    classify_message,
    is_turn_completed,
    is_turn_failed,
    make_approval_response,
    make_error_response,
    make_notification,
    make_request,
)


def test_make_request_builds_expected_envelope() -> None:
    payload = make_request(7, "initialize", {"foo": "bar"})
    assert payload == {"id": 7, "method": "initialize", "params": {"foo": "bar"}}
    assert "jsonrpc" not in payload


def test_make_notification_has_no_id_and_defaults_params() -> None:
    payload = make_notification("initialized")
    assert payload == {"method": "initialized", "params": {}}


def test_make_approval_response_wraps_decision() -> None:
    assert make_approval_response(12, "denied") == {"id": 12, "result": {"decision": "denied"}}


def test_make_error_response_omits_missing_data() -> None:
    payload = make_error_response(9, -32601, "nope")
    assert payload == {"id": 9, "error": {"code": -32601, "message": "nope"}}

    with_data = make_error_response(9, -32000, "boom", {"x": 1})
    assert with_data["error"]["data"] == {"x": 1}


def test_classify_message_by_present_fields() -> None:
    assert classify_message({"id": 1, "result": None}) == "response"
    assert classify_message({"id": 1, "error": {"code": 1}}) == "error"
    assert classify_message({"id": 1, "method": "execCommandApproval"}) == "request"
    assert classify_message({"method": "turn/started", "params": {}}) == "notification"
    assert classify_message({"id": 1}) == "invalid"
    assert classify_message({}) == "invalid"


def test_turn_completion_and_failure_aliases() -> None:
    assert is_turn_completed("turn/completed")
    assert is_turn_completed("turnCompleted")
    assert not is_turn_completed("turn/started")
    assert is_turn_failed("turn/failed")
    assert is_turn_failed("turn.failed")
    assert not is_turn_failed("turn/completed")
