from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator, Mapping
from typing import Any, Protocol

from .errors import (
    CodexNotInitializedError,
    CodexProtocolError,
    CodexTimeoutError,
    CodexTransportError,
)
from .models import ApprovalRequest, InitializeResult, Notification
from .protocol import (
    APPROVAL_METHODS,
    INITIALIZE_METHOD,
    INITIALIZED_NOTIFICATION,
    METHOD_NOT_FOUND_CODE,
    classify_message,
    make_approval_response,
    make_error_response,
    make_notification,
    make_request,
)

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 30.0

DEFAULT_CLIENT_INFO: dict[str, str] = {
    "name": "codex-app-server-supervisor",
    "title": "Codex App Server Supervisor",
    "version": "0.1.0",
}

_QUEUE_STOP = object()


class LineWriter(Protocol):
    """Byte sink the client writes framed messages to (e.g. `asyncio.StreamWriter`)."""

    def write(self, data: bytes) -> None: ...

    async def drain(self) -> None: ...


class JsonRpcClient:
    """Request/response/notification protocol over one stdin/stdout pair.

    Inbound notifications and approval requests land on unbounded FIFO queues.
    Nothing applies backpressure to the reader, so a consumer that stops
    draining them grows memory instead of stalling protocol parsing.
    """

    def __init__(
        self,
        writer: LineWriter,
        lines: AsyncIterable[str],
        *,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        client_info: Mapping[str, str] | None = None,
    ) -> None:
        """Create a client bound to one process connection.

        Args:
            writer: Sink for outbound newline-delimited JSON.
            lines: Inbound stdout lines, one JSON message per line.
            request_timeout: Default timeout for request/response calls.
            client_info: `clientInfo` sent with the initialize handshake.
        """
        self._writer = writer
        self._lines = lines
        self._request_timeout = request_timeout
        self._client_info = dict(client_info) if client_info is not None else dict(DEFAULT_CLIENT_INFO)

        self._next_request_id = 1
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._notifications: asyncio.Queue[Notification | object] = asyncio.Queue()
        self._approval_requests: asyncio.Queue[ApprovalRequest | object] = asyncio.Queue()

        self._send_lock = asyncio.Lock()
        self._initialize_lock = asyncio.Lock()
        self._initialized = False
        self._initialize_result: InitializeResult | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._closed = False
        self._lost: str | None = None

    @property
    def writer(self) -> LineWriter:
        return self._writer

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_count(self) -> int:
        """Number of requests still waiting for a response."""
        return len(self._pending)

    def start(self) -> JsonRpcClient:
        """Start the background line reader exactly once."""
        if self._closed:
            raise CodexTransportError("client is closed")
        if self._reader_task is None:
            self._reader_task = asyncio.create_task(self._reader_loop())
        return self

    async def close(self) -> None:
        """Stop the reader, reject pending requests, and end both queues."""
        if self._closed:
            return
        self._closed = True

        if self._reader_task is not None and self._reader_task is not asyncio.current_task():
            self._reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
        self._reader_task = None
        self._shutdown(CodexTransportError("client is closing"))

    async def __aenter__(self) -> JsonRpcClient:
        return self.start()

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.close()

    async def initialize(self, *, timeout: float | None = None) -> InitializeResult:
        """Perform the handshake once: `initialize` request, then `initialized`.

        Later calls return the cached result without touching the wire.
        """
        async with self._initialize_lock:
            if self._initialized and self._initialize_result is not None:
                logger.debug("already initialized, skipping handshake")
                return self._initialize_result

            result = await self._send_request_internal(
                INITIALIZE_METHOD,
                {"clientInfo": dict(self._client_info)},
                timeout=timeout,
            )
            await self.send_notification(INITIALIZED_NOTIFICATION, {})

            result_dict = result if isinstance(result, dict) else {"value": result}
            user_agent = result_dict.get("userAgent")
            self._initialize_result = InitializeResult(
                user_agent=user_agent if isinstance(user_agent, str) else None,
                raw=result_dict,
            )
            self._initialized = True
            return self._initialize_result

    async def send_request(
        self,
        method: str,
        params: Mapping[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Send a request and await its result.

        Raises:
            CodexNotInitializedError: Before `initialize()` completed.
            CodexProtocolError: When the server answers with an error.
            CodexTimeoutError: When no response arrives in time.
            CodexTransportError: When the connection is closed or lost.
        """
        if not self._initialized:
            raise CodexNotInitializedError(
                f"cannot send {method!r}: client not initialized, call initialize() first"
            )
        return await self._send_request_internal(method, params, timeout=timeout)

    async def send_notification(
        self,
        method: str,
        params: Mapping[str, Any] | None = None,
    ) -> None:
        """Send a notification; no response is expected."""
        await self._write(make_notification(method, dict(params) if params is not None else None))

    async def respond_to_approval(self, request_id: int | str, decision: str) -> None:
        """Answer a pending approval request with a decision string."""
        await self._write(make_approval_response(request_id, decision))

    async def notifications(self) -> AsyncIterator[Notification]:
        """Yield inbound notifications in arrival order until the client closes."""
        while True:
            item = await self._notifications.get()
            if item is _QUEUE_STOP:
                self._notifications.put_nowait(_QUEUE_STOP)
                return
            if isinstance(item, Notification):
                yield item

    async def approval_requests(self) -> AsyncIterator[ApprovalRequest]:
        """Yield inbound approval requests in arrival order until the client closes."""
        while True:
            item = await self._approval_requests.get()
            if item is _QUEUE_STOP:
                self._approval_requests.put_nowait(_QUEUE_STOP)
                return
            if isinstance(item, ApprovalRequest):
                yield item

    async def _send_request_internal(
        self,
        method: str,
        params: Mapping[str, Any] | None,
        *,
        timeout: float | None,
    ) -> Any:
        self._ensure_open()

        request_id = self._next_request_id
        self._next_request_id += 1

        message = make_request(request_id, method, dict(params) if params is not None else None)
        loop = asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()
        self._pending[request_id] = future

        try:
            await self._write(message)
        except BaseException:
            self._pending.pop(request_id, None)
            raise

        timeout_seconds = timeout if timeout is not None else self._request_timeout
        try:
            return await asyncio.wait_for(future, timeout=timeout_seconds)
        except asyncio.TimeoutError as exc:
            self._pending.pop(request_id, None)
            raise CodexTimeoutError(
                f"request timed out for method={method!r} after {timeout_seconds:.1f}s"
            ) from exc

    async def _write(self, message: Mapping[str, Any]) -> None:
        line = json.dumps(dict(message), separators=(",", ":")) + "\n"
        async with self._send_lock:
            self._ensure_open()
            try:
                self._writer.write(line.encode("utf-8"))
                await self._writer.drain()
            except (OSError, RuntimeError) as exc:
                raise CodexTransportError("failed writing to codex stdin") from exc

    async def _reader_loop(self) -> None:
        """Dispatch inbound lines until the stream ends."""
        try:
            async for line in self._lines:
                await self.dispatch_line(line)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("codex stdout reader failed: %s", exc)
            reason = f"reader loop failed: {exc}"
        else:
            logger.info("codex stdout closed")
            reason = "connection lost: codex stdout closed"
        self._lost = reason
        self._shutdown(CodexTransportError(reason))

    async def dispatch_line(self, line: str) -> None:
        """Route one inbound line to a pending request or an inbound queue."""
        if not line.strip():
            return
        try:
            payload = json.loads(line)
        except ValueError:
            logger.error("failed to parse JSON-RPC message: %s", line)
            return
        if not isinstance(payload, dict):
            logger.error("dropping non-object JSON-RPC message: %s", line)
            return

        kind = classify_message(payload)
        if kind == "response":
            self._resolve(payload.get("id"), payload.get("result"))
        elif kind == "error":
            self._reject(payload.get("id"), payload.get("error"))
        elif kind == "request":
            await self._handle_server_request(payload)
        elif kind == "notification":
            method = payload.get("method")
            if not isinstance(method, str):
                logger.error("dropping notification without method name: %s", line)
                return
            self._notifications.put_nowait(Notification(method, _params_of(payload)))
        else:
            logger.debug("dropping unclassifiable message: %s", line)

    def _resolve(self, request_id: Any, result: Any) -> None:
        future = self._pop_pending(request_id)
        if future is None:
            logger.debug("dropping response for unknown request id %r", request_id)
            return
        future.set_result(result)

    def _reject(self, request_id: Any, error: Any) -> None:
        future = self._pop_pending(request_id)
        if future is None:
            logger.debug("dropping error for unknown request id %r", request_id)
            return
        code: int | None = None
        message = "JSON-RPC error"
        if isinstance(error, Mapping):
            raw_code = error.get("code")
            code = raw_code if isinstance(raw_code, int) else None
            message = str(error.get("message", message))
        elif error is not None:
            message = str(error)
        future.set_exception(CodexProtocolError(message, code=code, data=error))

    def _pop_pending(self, request_id: Any) -> asyncio.Future[Any] | None:
        if isinstance(request_id, bool) or not isinstance(request_id, (int, str)):
            return None
        if isinstance(request_id, str):
            if not request_id.isdigit():
                return None
            request_id = int(request_id)
        future = self._pending.pop(request_id, None)
        if future is None or future.done():
            return None
        return future

    async def _handle_server_request(self, payload: dict[str, Any]) -> None:
        request_id = payload.get("id")
        method = payload.get("method")
        if isinstance(request_id, bool) or not isinstance(request_id, (int, str)):
            logger.error("dropping server request with invalid id: %r", request_id)
            return
        if not isinstance(method, str):
            logger.error("dropping server request %r without method name", request_id)
            return

        if method in APPROVAL_METHODS:
            self._approval_requests.put_nowait(
                ApprovalRequest(request_id=request_id, method=method, params=_params_of(payload))
            )
            return

        logger.warning("rejecting unsupported server request %s (id %r)", method, request_id)
        try:
            await self._write(
                make_error_response(
                    request_id,
                    METHOD_NOT_FOUND_CODE,
                    f"Client does not implement server request {method!r}.",
                )
            )
        except CodexTransportError as exc:
            logger.warning("could not reject server request %r: %s", request_id, exc)

    def _ensure_open(self) -> None:
        if self._closed:
            raise CodexTransportError("client is closed")
        if self._lost is not None:
            raise CodexTransportError(self._lost)

    def _shutdown(self, error: CodexTransportError) -> None:
        for future in list(self._pending.values()):
            if not future.done():
                future.set_exception(error)
        self._pending.clear()
        self._notifications.put_nowait(_QUEUE_STOP)
        self._approval_requests.put_nowait(_QUEUE_STOP)


def _params_of(payload: Mapping[str, Any]) -> dict[str, Any]:
    params = payload.get("params")
    return dict(params) if isinstance(params, Mapping) else {}
