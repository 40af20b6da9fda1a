from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from codex_app_server_supervisor import events
from codex_app_server_supervisor.channels import Subscription
from codex_app_server_supervisor.config import ServiceConfig
from codex_app_server_supervisor.errors import CodexProtocolError, CodexTransportError
from codex_app_server_supervisor.models import ApprovalRequest
from codex_app_server_supervisor.service import (
    CodexService,
    ServiceError,
    ServiceRunning,
    ServiceStopped,
)
from codex_app_server_supervisor.sessions import SessionEvent, SessionState


def _config(tmp_path: Path, codex_path: str, *extra_args: str) -> ServiceConfig:
    return ServiceConfig(
        working_dir=str(tmp_path),
        codex_path=codex_path,
        extra_args=list(extra_args),
        backoff_base_ms=10,
        request_timeout=5.0,
    )


async def _collect_until(
    stream: Subscription[events.CodexEvent],
    event_type: type,
    *,
    timeout: float = 5.0,
) -> list[events.CodexEvent]:
    seen: list[events.CodexEvent] = []

    async def _drain() -> None:
        async for event in stream:
            seen.append(event)
            if isinstance(event, event_type):
                return

    await asyncio.wait_for(_drain(), timeout=timeout)
    return seen


def test_conversation_round_trip(tmp_path: Path, fake_codex: str) -> None:
    async def _run() -> None:
        async with CodexService(_config(tmp_path, fake_codex)) as service:
            assert isinstance(service.state, ServiceRunning)
            stream = service.events()

            session = await service.open_thread(model="gpt-4")
            assert session.thread_id == "thr-1"
            assert session.model == "gpt-4"
            assert session.cwd == str(tmp_path)

            turn = await service.send_message("thr-1", "Hi")
            assert turn.id == "turn-1"

            seen = await _collect_until(stream, events.TaskComplete)
            assert seen == [
                events.ThreadStarted(thread_id="thr-1", model="gpt-4"),
                events.TaskStarted(thread_id="thr-1", turn_id="turn-1"),
                events.AgentMessage(message="Hello!", thread_id="thr-1", turn_id="turn-1"),
                events.TaskComplete(thread_id="thr-1", turn_id="turn-1", status="completed"),
            ]

            completed = service.sessions.get_session("thr-1")
            assert completed is not None
            assert completed.state is SessionState.COMPLETED
            assert completed.last_turn_id == "turn-1"

        assert isinstance(service.state, ServiceStopped)
        assert service.sessions.list_sessions() == []
        with pytest.raises(CodexTransportError):
            service.client

    asyncio.run(_run())


def test_unknown_method_surfaces_protocol_error(tmp_path: Path, fake_codex: str) -> None:
    async def _run() -> None:
        async with CodexService(_config(tmp_path, fake_codex)) as service:
            with pytest.raises(CodexProtocolError) as exc_info:
                await service.api.list_models()
            assert exc_info.value.code == -32601
            assert str(exc_info.value) == "unknown method model/list"

    asyncio.run(_run())


def test_approval_handler_decision_reaches_server(tmp_path: Path, fake_codex: str) -> None:
    async def _run() -> None:
        received: list[ApprovalRequest] = []

        async def handler(request: ApprovalRequest) -> str:
            received.append(request)
            return "approved"

        config = _config(tmp_path, fake_codex, "--approval")
        async with CodexService(config, approval_handler=handler) as service:
            stream = service.events()
            await service.open_thread()
            await service.send_message("thr-1", "run git status")

            seen = await _collect_until(stream, events.Warning)
            assert seen[-1] == events.Warning(message="decision=approved", thread_id="thr-1")

        assert len(received) == 1
        assert received[0].is_exec
        assert received[0].command == ["git", "status"]
        assert received[0].cwd == "/p"

    asyncio.run(_run())


def test_approvals_are_denied_without_handler(tmp_path: Path, fake_codex: str) -> None:
    async def _run() -> None:
        async with CodexService(_config(tmp_path, fake_codex, "--approval")) as service:
            stream = service.events()
            await service.open_thread()
            await service.send_message("thr-1", "run git status")

            seen = await _collect_until(stream, events.Warning)
            assert seen[-1] == events.Warning(message="decision=denied", thread_id="thr-1")

    asyncio.run(_run())


def test_failing_handler_denies(tmp_path: Path, fake_codex: str) -> None:
    async def _run() -> None:
        async def handler(request: ApprovalRequest) -> str:
            raise RuntimeError("ui went away")

        config = _config(tmp_path, fake_codex, "--approval")
        async with CodexService(config, approval_handler=handler) as service:
            stream = service.events()
            await service.open_thread()
            await service.send_message("thr-1", "run git status")

            seen = await _collect_until(stream, events.Warning)
            assert seen[-1] == events.Warning(message="decision=denied", thread_id="thr-1")

    asyncio.run(_run())


def test_session_wide_approval_is_answered_from_cache(tmp_path: Path, fake_codex: str) -> None:
    async def _run() -> None:
        calls = 0

        async def handler(request: ApprovalRequest) -> str:
            nonlocal calls
            calls += 1
            return "approved_for_session"

        config = _config(tmp_path, fake_codex, "--approval")
        async with CodexService(config, approval_handler=handler) as service:
            stream = service.events()
            await service.open_thread()

            await service.send_message("thr-1", "first")
            first = await _collect_until(stream, events.Warning)
            assert first[-1].message == "decision=approved_for_session"

            await service.send_message("thr-1", "second")
            second = await _collect_until(stream, events.Warning)
            assert second[-1].message == "decision=approved"

            assert calls == 1
            assert service.approval_cache.stats().exec_approvals == 1

    asyncio.run(_run())


def test_start_fails_when_binary_cannot_be_spawned(tmp_path: Path) -> None:
    async def _run() -> None:
        config = ServiceConfig(
            working_dir=str(tmp_path),
            codex_path=str(tmp_path / "missing" / "codex"),
            max_restart_attempts=1,
            backoff_base_ms=10,
        )
        service = CodexService(config)
        with pytest.raises(CodexTransportError):
            await service.start()
        assert isinstance(service.state, ServiceError)
        assert service.supervisor is None

        await service.stop()
        assert isinstance(service.state, ServiceStopped)

    asyncio.run(_run())


def test_open_thread_session_becomes_configured(tmp_path: Path, fake_codex: str) -> None:
    async def _run() -> None:
        async with CodexService(_config(tmp_path, fake_codex)) as service:
            changes = service.sessions.subscribe()
            session = await service.open_thread(model="gpt-4")
            assert session.thread_id == "thr-1"

            async def _configured() -> SessionEvent:
                async for change in changes:
                    if change.state is SessionState.CONFIGURED:
                        return change
                raise AssertionError("session events ended early")

            change = await asyncio.wait_for(_configured(), timeout=5.0)
            assert change == SessionEvent("thr-1", SessionState.CONFIGURED)
            configured = service.sessions.get_session("thr-1")
            assert configured is not None
            assert configured.state is SessionState.CONFIGURED
            changes.close()

    asyncio.run(_run())


def test_restart_reconnects_with_a_fresh_client(tmp_path: Path, fake_codex: str) -> None:
    async def _run() -> None:
        async with CodexService(_config(tmp_path, fake_codex, "--exit-on-slow")) as service:
            await service.open_thread()
            first = service.client
            assert service.supervisor is not None
            first_process = service.supervisor.current
            states = service.watch_states()

            # The server exits while this request is in flight.
            with pytest.raises(CodexTransportError):
                await first.send_request("slow/request")

            async def _reconnected() -> ServiceRunning:
                async for state in states:
                    if isinstance(state, ServiceRunning) and state.client is not first:
                        return state
                raise AssertionError("service states ended early")

            running = await asyncio.wait_for(_reconnected(), timeout=10.0)
            states.close()

            assert first.closed
            assert running.client.is_initialized
            assert service.client is running.client
            assert service.supervisor.current is not first_process
            assert service.sessions.list_sessions() == []

            session = await service.open_thread()
            assert session.thread_id == "thr-1"

    asyncio.run(_run())
