from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any

import pytest

from codex_app_server_supervisor.api import CodexApi, build_input_items
from codex_app_server_supervisor.errors import CodexProtocolError
from codex_app_server_supervisor.models import ThreadRef


class RecordingSender:
    def __init__(self, responses: dict[str, Any] | None = None) -> None:
        self.responses = responses or {}
        self.calls: list[tuple[str, dict[str, Any] | None]] = []

    async def send_request(
        self,
        method: str,
        params: Mapping[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        self.calls.append((method, dict(params) if params is not None else None))
        return self.responses.get(method, {})


def test_start_thread_sends_defaults_and_parses_thread() -> None:
    async def _run() -> None:
        sender = RecordingSender(
            {"thread/start": {"thread": {"id": "thr-1", "preview": "", "modelProvider": "openai", "createdAt": 5}}}
        )
        thread = await CodexApi(sender).start_thread(model="gpt-5-codex", cwd="/w", developer_instructions="be brief")

        assert thread == ThreadRef(id="thr-1", preview="", model_provider="openai", created_at=5)
        assert sender.calls == [
            (
                "thread/start",
                {
                    "model": "gpt-5-codex",
                    "cwd": "/w",
                    "approvalPolicy": "onRequest",
                    "sandbox": "workspaceWrite",
                    "developerInstructions": "be brief",
                },
            )
        ]

    asyncio.run(_run())


def test_missing_thread_in_response_is_a_protocol_error() -> None:
    async def _run() -> None:
        api = CodexApi(RecordingSender({"thread/start": {"ok": True}, "thread/resume": {"thread": {}}}))
        with pytest.raises(CodexProtocolError, match="Missing thread in thread/start response"):
            await api.start_thread(model="m", cwd="/w")
        with pytest.raises(CodexProtocolError):
            await api.resume_thread("thr-1")

    asyncio.run(_run())


def test_start_turn_builds_input_and_overrides() -> None:
    async def _run() -> None:
        sender = RecordingSender(
            {"turn/start": {"turn": {"id": "turn-1", "status": "inProgress", "items": [], "error": {"message": "x"}}}}
        )
        turn = await CodexApi(sender).start_turn(
            "thr-1",
            "look at this",
            attachments=["/tmp/shot.png"],
            effort="high",
            sandbox="readOnly",
        )

        assert turn.id == "turn-1"
        assert turn.status == "inProgress"
        assert turn.error == "x"
        method, params = sender.calls[0]
        assert method == "turn/start"
        assert params == {
            "threadId": "thr-1",
            "input": [
                {"type": "text", "text": "look at this"},
                {"type": "localImage", "path": "/tmp/shot.png"},
            ],
            "effort": "high",
            "summary": "auto",
            "sandbox": "readOnly",
        }

    asyncio.run(_run())


def test_build_input_items_skips_blank_text() -> None:
    assert build_input_items("   ", ["a.png"]) == [{"type": "localImage", "path": "a.png"}]
    assert build_input_items("") == []


def test_list_threads_skips_entries_without_id() -> None:
    async def _run() -> None:
        sender = RecordingSender(
            {
                "thread/list": {
                    "data": [{"id": "a", "preview": "hi"}, {"preview": "no id"}, "junk", {"id": "b"}],
                    "nextCursor": "c2",
                }
            }
        )
        page = await CodexApi(sender).list_threads(limit=10, model_providers=("openai",))

        assert [thread.id for thread in page.data] == ["a", "b"]
        assert page.next_cursor == "c2"
        assert sender.calls == [("thread/list", {"limit": 10, "modelProviders": ["openai"]})]

        empty = await CodexApi(RecordingSender({"thread/list": None})).list_threads()
        assert empty.data == []
        assert empty.next_cursor is None

    asyncio.run(_run())


def test_thin_wrappers_send_expected_params() -> None:
    async def _run() -> None:
        sender = RecordingSender()
        api = CodexApi(sender)
        await api.interrupt_turn("t", "u")
        await api.archive_thread("t")
        await api.login_start("apiKey", api_key="sk-test")
        await api.login_cancel("login-1")
        await api.read_account()
        await api.exec_one_off_command(("ls", "-la"), "/w")
        await api.fuzzy_file_search("main", "/w")
        await api.git_diff_to_remote("/w")

        assert sender.calls == [
            ("turn/interrupt", {"threadId": "t", "turnId": "u"}),
            ("thread/archive", {"threadId": "t"}),
            ("account/login/start", {"type": "apiKey", "apiKey": "sk-test"}),
            ("account/login/cancel", {"loginId": "login-1"}),
            ("account/read", {"refreshToken": False}),
            ("execOneOffCommand", {"command": ["ls", "-la"], "cwd": "/w"}),
            ("fuzzyFileSearch", {"query": "main", "cwd": "/w", "maxResults": 20}),
            ("gitDiffToRemote", {"cwd": "/w", "remote": "origin", "branch": "main"}),
        ]

    asyncio.run(_run())


def test_read_rate_limits_parses_snapshot() -> None:
    async def _run() -> None:
        sender = RecordingSender({"account/rateLimits/read": {"rateLimits": {"primary": {"usedPercent": 50}}}})
        snapshot = await CodexApi(sender).read_rate_limits()
        assert snapshot is not None
        assert snapshot.primary is not None
        assert snapshot.primary.usage_fraction() == 0.5

        assert await CodexApi(RecordingSender()).read_rate_limits() is None

    asyncio.run(_run())
