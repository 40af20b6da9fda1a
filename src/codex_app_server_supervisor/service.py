from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeAlias

from . import process
from .api import CodexApi
from .approvals import ApprovalCache
from .channels import Broadcast, StateChannel, Subscription
from .config import ServiceConfig, to_server_sandbox_mode
from .errors import CodexError, CodexTransportError
from .events import CodexEvent
from .masking import mask, mask_command, mask_path
from .models import DENIED, ApprovalDecision, ApprovalRequest, TurnRef
from .normalizer import parse_codex_event
from .process import ManagedProcess, ProcessSupervisor
from .rpc import JsonRpcClient
from .sessions import Session, SessionRegistry

logger = logging.getLogger(__name__)

ApprovalHandler: TypeAlias = Callable[[ApprovalRequest], Awaitable[ApprovalDecision]]


@dataclass(frozen=True, slots=True)
class ServiceStopped:
    pass


@dataclass(frozen=True, slots=True)
class ServiceStarting:
    pass


@dataclass(frozen=True, slots=True)
class ServiceRunning:
    client: JsonRpcClient


@dataclass(frozen=True, slots=True)
class ServiceError:
    message: str


ServiceState: TypeAlias = ServiceStopped | ServiceStarting | ServiceRunning | ServiceError


@dataclass(eq=False, slots=True)
class _Connection:
    """Protocol client plus its pump tasks, bound to one process instance."""

    process: ManagedProcess
    client: JsonRpcClient
    lines: Subscription[str]
    tasks: list[asyncio.Task[None]] = field(default_factory=list)


class CodexService:
    """Owns one supervised app-server and everything layered on top of it.

    The service reconnects after every restart: each new process instance
    gets a fresh `JsonRpcClient`, a new handshake, and new notification and
    approval loops. Requests pending on the old connection fail with
    `CodexTransportError`.

    Example:
        ```python
        async with CodexService(ServiceConfig(working_dir=".")) as service:
            session = await service.open_thread()
            await service.send_message(session.thread_id, "hello")
        ```
    """

    def __init__(
        self,
        config: ServiceConfig | None = None,
        *,
        approval_handler: ApprovalHandler | None = None,
    ) -> None:
        self._config = config if config is not None else ServiceConfig()
        self._approval_handler = approval_handler
        self._states: StateChannel[ServiceState] = StateChannel(ServiceStopped())
        self._events: Broadcast[CodexEvent] = Broadcast()
        self._sessions = SessionRegistry()
        self._approval_cache = ApprovalCache()

        self._supervisor: ProcessSupervisor | None = None
        self._watch_task: asyncio.Task[None] | None = None
        self._connection: _Connection | None = None
        self._connections_made = 0

    @property
    def config(self) -> ServiceConfig:
        return self._config

    @property
    def state(self) -> ServiceState:
        return self._states.value

    @property
    def sessions(self) -> SessionRegistry:
        return self._sessions

    @property
    def approval_cache(self) -> ApprovalCache:
        return self._approval_cache

    @property
    def supervisor(self) -> ProcessSupervisor | None:
        return self._supervisor

    @property
    def client(self) -> JsonRpcClient:
        """The initialized client of the live connection."""
        state = self._states.value
        if not isinstance(state, ServiceRunning):
            raise CodexTransportError("codex service is not running")
        return state.client

    @property
    def api(self) -> CodexApi:
        return CodexApi(self.client)

    def watch_states(self) -> Subscription[ServiceState]:
        """Subscribe to service state changes, starting with the current state."""
        return self._states.subscribe()

    def events(self) -> Subscription[CodexEvent]:
        """Subscribe to normalized events from every connection from now on."""
        return self._events.subscribe()

    def set_approval_handler(self, handler: ApprovalHandler | None) -> None:
        """Set or clear the async approval callback; without one, approvals are denied."""
        self._approval_handler = handler

    async def start(self) -> None:
        """Spawn the app-server and wait until the handshake completes.

        Raises:
            CodexTransportError: If the process fails or the handshake errors.
                Supervision is stopped and the service stays in `ServiceError`.
        """
        if not isinstance(self._states.value, (ServiceStopped, ServiceError)):
            return

        self._states.publish(ServiceStarting())
        waiter = self._states.subscribe()
        try:
            supervisor = ProcessSupervisor(
                self._config.working_dir,
                codex_path=self._config.codex_path,
                extra_args=self._config.extra_args,
                env=self._config.env,
                max_restart_attempts=self._config.max_restart_attempts,
                backoff_base_ms=self._config.backoff_base_ms,
                backoff_cap_ms=self._config.backoff_cap_ms,
            )
            self._supervisor = supervisor
            self._watch_task = asyncio.create_task(self._watch_process(supervisor.watch_states()))
            await supervisor.start()

            async for state in waiter:
                if isinstance(state, ServiceRunning):
                    return
                if isinstance(state, ServiceError):
                    raise CodexTransportError(state.message)
        except CodexError as exc:
            await self._halt()
            self._states.publish(ServiceError(str(exc)))
            raise
        finally:
            waiter.close()

    async def stop(self) -> None:
        """Stop the process, fail pending requests, and forget sessions and approvals."""
        await self._halt()
        await self._sessions.shutdown()
        self._approval_cache.clear()
        self._states.publish(ServiceStopped())
        logger.info("codex service stopped")

    async def __aenter__(self) -> CodexService:
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.stop()

    async def open_thread(
        self,
        *,
        model: str | None = None,
        cwd: str | None = None,
        approval_policy: str | None = None,
        sandbox_mode: str | None = None,
        base_instructions: str | None = None,
        developer_instructions: str | None = None,
    ) -> Session:
        """Start a thread using config defaults and register its session."""
        resolved_model = model or self._config.model
        resolved_cwd = cwd or self._config.working_dir
        thread = await self.api.start_thread(
            model=resolved_model,
            cwd=resolved_cwd,
            approval_policy=approval_policy or self._config.approval_policy,
            sandbox=to_server_sandbox_mode(sandbox_mode or self._config.sandbox_mode),
            base_instructions=base_instructions,
            developer_instructions=developer_instructions,
        )
        existing = self._sessions.get_session(thread.id)
        if existing is not None:
            return existing
        return self._sessions.register_session(thread.id, resolved_model, resolved_cwd)

    async def send_message(
        self,
        thread_id: str,
        text: str,
        *,
        attachments: tuple[str, ...] | list[str] = (),
        effort: str | None = None,
        summary: str | None = None,
        model: str | None = None,
    ) -> TurnRef:
        """Start a turn on `thread_id` and mark it active in the registry."""
        turn = await self.api.start_turn(
            thread_id,
            text,
            attachments=attachments,
            effort=effort or self._config.effort,
            summary=summary or self._config.summary,
            model=model,
        )
        session = self._sessions.get_session(thread_id)
        if session is not None and session.active_turn_id != turn.id:
            self._sessions.mark_turn_active(thread_id, turn.id)
        return turn

    async def interrupt(self, thread_id: str) -> bool:
        """Interrupt the active turn of `thread_id`, if any."""
        return await self._sessions.interrupt_active_turn(self.api, thread_id)

    async def archive(self, thread_id: str) -> bool:
        """Archive `thread_id` and drop its cached approvals."""
        archived = await self._sessions.archive_session(self.api, thread_id)
        if archived:
            self._approval_cache.clear_thread(thread_id)
        return archived

    async def _halt(self) -> None:
        watch_task = self._watch_task
        self._watch_task = None
        if watch_task is not None and watch_task is not asyncio.current_task():
            watch_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watch_task
        await self._teardown_connection()
        supervisor = self._supervisor
        self._supervisor = None
        if supervisor is not None:
            await supervisor.stop()

    async def _watch_process(self, states: Subscription[process.ProcessState]) -> None:
        try:
            async for state in states:
                await self._on_process_state(state)
        finally:
            states.close()

    async def _on_process_state(self, state: process.ProcessState) -> None:
        match state:
            case process.Running():
                supervisor = self._supervisor
                managed = supervisor.current if supervisor is not None else None
                if managed is None:
                    return
                if self._connection is not None and self._connection.process is managed:
                    return
                await self._teardown_connection()
                try:
                    await self._connect(managed)
                except CodexError as exc:
                    logger.error("codex handshake failed: %s", exc)
                    await self._teardown_connection()
                    self._states.publish(ServiceError(str(exc)))
            case process.Failed(error=error, restart_in_ms=None):
                await self._teardown_connection()
                self._states.publish(ServiceError(error))
            case process.Starting() | process.Restarting() | process.Failed():
                await self._teardown_connection()
                if not isinstance(self._states.value, ServiceStarting):
                    self._states.publish(ServiceStarting())
            case process.Stopped():
                await self._teardown_connection()

    async def _connect(self, managed: ManagedProcess) -> None:
        if self._connections_made > 0:
            logger.warning("codex app-server restarted, dropping stale sessions")
            await self._sessions.shutdown()
            self._approval_cache.clear()
        self._connections_made += 1

        lines = managed.lines.subscribe()
        client = JsonRpcClient(
            managed.stdin,
            lines,
            request_timeout=self._config.request_timeout,
            client_info=self._config.client_info.model_dump(),
        )
        connection = _Connection(process=managed, client=client, lines=lines)
        self._connection = connection
        client.start()

        result = await client.initialize()
        logger.info("codex app-server initialized (user agent: %s)", result.user_agent)
        connection.tasks.append(asyncio.create_task(self._pump_notifications(client)))
        connection.tasks.append(asyncio.create_task(self._pump_approvals(client)))
        self._states.publish(ServiceRunning(client))

    async def _teardown_connection(self) -> None:
        connection = self._connection
        self._connection = None
        if connection is None:
            return
        for task in connection.tasks:
            task.cancel()
        if connection.tasks:
            await asyncio.gather(*connection.tasks, return_exceptions=True)
        await connection.client.close()
        connection.lines.close()

    async def _pump_notifications(self, client: JsonRpcClient) -> None:
        async for notification in client.notifications():
            event = parse_codex_event(notification)
            self._sessions.apply_event(event)
            self._events.publish(event)

    async def _pump_approvals(self, client: JsonRpcClient) -> None:
        async for request in client.approval_requests():
            decision = await self._decide(request)
            try:
                await client.respond_to_approval(request.request_id, decision)
            except CodexTransportError as exc:
                logger.warning("could not answer approval %r: %s", request.request_id, exc)

    async def _decide(self, request: ApprovalRequest) -> str:
        thread_id = request.thread_id
        cached = self._cached_decision(request, thread_id)
        if cached is not None:
            logger.info("%s auto-approved from cache: %s", request.method, _describe(request))
            return cached

        handler = self._approval_handler
        if handler is None:
            logger.warning("no approval handler, denying %s: %s", request.method, _describe(request))
            return DENIED

        try:
            decision: str = await handler(request)
        except Exception:
            logger.exception("approval handler failed, denying %s: %s", request.method, _describe(request))
            return DENIED

        if thread_id is not None:
            if request.is_exec:
                self._approval_cache.cache_exec_approval(thread_id, request.command, request.cwd, decision)
            elif request.is_patch:
                self._approval_cache.cache_patch_approval(thread_id, request.files, decision)
        logger.info("%s -> %s: %s", request.method, decision, _describe(request))
        return decision

    def _cached_decision(self, request: ApprovalRequest, thread_id: str | None) -> str | None:
        if thread_id is None:
            return None
        if request.is_exec:
            return self._approval_cache.check_exec_approval(thread_id, request.command, request.cwd)
        if request.is_patch:
            return self._approval_cache.check_patch_approval(thread_id, request.files)
        return None


def _describe(request: ApprovalRequest) -> str:
    """Loggable, secret-masked summary of an approval request."""
    if request.is_exec:
        return f"{' '.join(mask_command(request.command))} (cwd {mask_path(request.cwd)})"
    if request.is_patch:
        files = ", ".join(sorted(mask_path(path) for path in request.files))
        reason = request.reason
        return f"{files}" + (f" ({mask(reason)})" if reason else "")
    return request.method
