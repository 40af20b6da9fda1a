from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any, Protocol

from .errors import CodexProtocolError
from .models import (
    RateLimitSnapshot,
    ThreadListResult,
    ThreadRef,
    TurnRef,
    parse_rate_limit_snapshot,
)
from .protocol import (
    ACCOUNT_LOGIN_CANCEL_METHOD,
    ACCOUNT_LOGIN_START_METHOD,
    ACCOUNT_LOGOUT_METHOD,
    ACCOUNT_RATE_LIMITS_READ_METHOD,
    ACCOUNT_READ_METHOD,
    EXEC_ONE_OFF_COMMAND_METHOD,
    FUZZY_FILE_SEARCH_METHOD,
    GIT_DIFF_TO_REMOTE_METHOD,
    MODEL_LIST_METHOD,
    THREAD_ARCHIVE_METHOD,
    THREAD_LIST_METHOD,
    THREAD_RESUME_METHOD,
    THREAD_START_METHOD,
    TURN_INTERRUPT_METHOD,
    TURN_START_METHOD,
)

DEFAULT_APPROVAL_POLICY = "onRequest"
DEFAULT_SANDBOX = "workspaceWrite"
DEFAULT_EFFORT = "medium"
DEFAULT_SUMMARY = "auto"


class RequestSender(Protocol):
    """Anything that can issue an initialized request, e.g. `JsonRpcClient`."""

    async def send_request(
        self,
        method: str,
        params: Mapping[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> Any: ...


class CodexApi:
    """Typed wrappers for the app-server thread, turn and account methods."""

    def __init__(self, client: RequestSender) -> None:
        self._client = client

    async def start_thread(
        self,
        *,
        model: str,
        cwd: str,
        approval_policy: str = DEFAULT_APPROVAL_POLICY,
        sandbox: str = DEFAULT_SANDBOX,
        base_instructions: str | None = None,
        developer_instructions: str | None = None,
    ) -> ThreadRef:
        """Create a thread and return its summary."""
        params: dict[str, Any] = {
            "model": model,
            "cwd": cwd,
            "approvalPolicy": approval_policy,
            "sandbox": sandbox,
        }
        params.update(
            _optional_params(
                (
                    ("baseInstructions", base_instructions),
                    ("developerInstructions", developer_instructions),
                )
            )
        )
        result = await self._client.send_request(THREAD_START_METHOD, params)
        return _thread_ref(_object_field(result, "thread", THREAD_START_METHOD), THREAD_START_METHOD)

    async def resume_thread(self, thread_id: str) -> ThreadRef:
        result = await self._client.send_request(THREAD_RESUME_METHOD, {"threadId": thread_id})
        return _thread_ref(_object_field(result, "thread", THREAD_RESUME_METHOD), THREAD_RESUME_METHOD)

    async def list_threads(
        self,
        *,
        cursor: str | None = None,
        limit: int | None = None,
        model_providers: Sequence[str] | None = None,
    ) -> ThreadListResult:
        """Fetch one page of stored threads; entries without an id are skipped."""
        params = _optional_params(
            (
                ("cursor", cursor),
                ("limit", limit),
                ("modelProviders", list(model_providers) if model_providers is not None else None),
            )
        )
        result = await self._client.send_request(THREAD_LIST_METHOD, params)
        if not isinstance(result, Mapping):
            return ThreadListResult()

        data: list[ThreadRef] = []
        raw_data = result.get("data")
        if isinstance(raw_data, list):
            for entry in raw_data:
                if isinstance(entry, Mapping) and isinstance(entry.get("id"), str):
                    data.append(_thread_ref(entry, THREAD_LIST_METHOD))
        next_cursor = result.get("nextCursor")
        return ThreadListResult(
            data=data,
            next_cursor=next_cursor if isinstance(next_cursor, str) else None,
        )

    async def archive_thread(self, thread_id: str) -> None:
        await self._client.send_request(THREAD_ARCHIVE_METHOD, {"threadId": thread_id})

    async def start_turn(
        self,
        thread_id: str,
        text: str,
        *,
        attachments: Sequence[str] = (),
        effort: str = DEFAULT_EFFORT,
        summary: str = DEFAULT_SUMMARY,
        approval_policy: str | None = None,
        sandbox: str | None = None,
        cwd: str | None = None,
        model: str | None = None,
    ) -> TurnRef:
        """Send user input to a thread and return the started turn.

        Args:
            thread_id: Target thread.
            text: User message; blank text sends attachments only.
            attachments: Local image paths sent as `localImage` inputs.
            effort: Reasoning effort hint.
            summary: Reasoning summary mode.
            approval_policy: Per-turn approval policy override.
            sandbox: Per-turn sandbox override.
            cwd: Per-turn working directory override.
            model: Per-turn model override.
        """
        params: dict[str, Any] = {
            "threadId": thread_id,
            "input": build_input_items(text, attachments),
            "effort": effort,
            "summary": summary,
        }
        params.update(
            _optional_params(
                (
                    ("approvalPolicy", approval_policy),
                    ("sandbox", sandbox),
                    ("cwd", cwd),
                    ("model", model),
                )
            )
        )
        result = await self._client.send_request(TURN_START_METHOD, params)
        return _turn_ref(_object_field(result, "turn", TURN_START_METHOD))

    async def interrupt_turn(self, thread_id: str, turn_id: str) -> None:
        await self._client.send_request(
            TURN_INTERRUPT_METHOD,
            {"threadId": thread_id, "turnId": turn_id},
        )

    async def list_models(self) -> Any:
        return await self._client.send_request(MODEL_LIST_METHOD, {})

    async def login_start(self, login_type: str, *, api_key: str | None = None) -> Any:
        params: dict[str, Any] = {"type": login_type}
        params.update(_optional_params((("apiKey", api_key),)))
        return await self._client.send_request(ACCOUNT_LOGIN_START_METHOD, params)

    async def login_cancel(self, login_id: str) -> Any:
        return await self._client.send_request(ACCOUNT_LOGIN_CANCEL_METHOD, {"loginId": login_id})

    async def logout(self) -> Any:
        return await self._client.send_request(ACCOUNT_LOGOUT_METHOD, {})

    async def read_account(self, *, refresh_token: bool = False) -> Any:
        return await self._client.send_request(ACCOUNT_READ_METHOD, {"refreshToken": refresh_token})

    async def read_rate_limits(self) -> RateLimitSnapshot | None:
        """Read account rate limits; None when the server reports no windows."""
        result = await self._client.send_request(ACCOUNT_RATE_LIMITS_READ_METHOD, {})
        return parse_rate_limit_snapshot(result)

    async def exec_one_off_command(self, command: Sequence[str], cwd: str) -> Any:
        return await self._client.send_request(
            EXEC_ONE_OFF_COMMAND_METHOD,
            {"command": list(command), "cwd": cwd},
        )

    async def fuzzy_file_search(self, query: str, cwd: str, *, max_results: int = 20) -> Any:
        return await self._client.send_request(
            FUZZY_FILE_SEARCH_METHOD,
            {"query": query, "cwd": cwd, "maxResults": max_results},
        )

    async def git_diff_to_remote(
        self,
        cwd: str,
        *,
        remote: str = "origin",
        branch: str = "main",
    ) -> Any:
        return await self._client.send_request(
            GIT_DIFF_TO_REMOTE_METHOD,
            {"cwd": cwd, "remote": remote, "branch": branch},
        )


def build_input_items(text: str, attachments: Sequence[str] = ()) -> list[dict[str, str]]:
    """Encode a user message and local image paths as `turn/start` input items."""
    items: list[dict[str, str]] = []
    if text.strip():
        items.append({"type": "text", "text": text})
    for path in attachments:
        items.append({"type": "localImage", "path": path})
    return items


def _optional_params(pairs: tuple[tuple[str, Any], ...]) -> dict[str, Any]:
    """Keep only the pairs whose value is set."""
    return {key: value for key, value in pairs if value is not None}


def _object_field(result: Any, key: str, method: str) -> Mapping[str, Any]:
    value = result.get(key) if isinstance(result, Mapping) else None
    if not isinstance(value, Mapping):
        raise CodexProtocolError(f"Missing {key} in {method} response", data=result)
    return value


def _thread_ref(thread: Mapping[str, Any], method: str) -> ThreadRef:
    thread_id = thread.get("id")
    if not isinstance(thread_id, str):
        raise CodexProtocolError(f"{method} response thread has no id", data=dict(thread))
    preview = thread.get("preview")
    provider = thread.get("modelProvider")
    created_at = thread.get("createdAt")
    return ThreadRef(
        id=thread_id,
        preview=preview if isinstance(preview, str) else None,
        model_provider=provider if isinstance(provider, str) else None,
        created_at=created_at if isinstance(created_at, int) and not isinstance(created_at, bool) else None,
    )


def _turn_ref(turn: Mapping[str, Any]) -> TurnRef:
    turn_id = turn.get("id")
    if not isinstance(turn_id, str):
        raise CodexProtocolError("turn/start response turn has no id", data=dict(turn))
    status = turn.get("status")
    items = turn.get("items")
    error = turn.get("error")
    if isinstance(error, Mapping):
        error = error.get("message")
    return TurnRef(
        id=turn_id,
        status=status if isinstance(status, str) else "unknown",
        items=list(items) if isinstance(items, list) else [],
        error=error if isinstance(error, str) else None,
    )
