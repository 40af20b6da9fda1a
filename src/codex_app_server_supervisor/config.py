from __future__ import annotations

import os
import shlex
from collections.abc import Mapping

from pydantic import BaseModel, Field

from .process import DEFAULT_BACKOFF_BASE_MS, DEFAULT_BACKOFF_CAP_MS, DEFAULT_MAX_RESTART_ATTEMPTS
from .rpc import DEFAULT_CLIENT_INFO, DEFAULT_REQUEST_TIMEOUT

SANDBOX_MODES = ("read-only", "workspace-write", "danger-full-access")
SUMMARY_MODES = ("auto", "concise", "detailed", "none")


class ClientInfo(BaseModel):
    """`clientInfo` sent with the initialize handshake."""

    name: str = DEFAULT_CLIENT_INFO["name"]
    title: str = DEFAULT_CLIENT_INFO["title"]
    version: str = DEFAULT_CLIENT_INFO["version"]


class ServiceConfig(BaseModel):
    """Settings for one supervised app-server and its conversation defaults.

    Attributes:
        working_dir: Directory the app-server runs in and default thread cwd.
        codex_path: Explicit binary path; `PATH` is searched when unset.
        extra_args: Arguments appended after `app-server`.
        env: Optional subprocess environment.
        max_restart_attempts: Crash restarts tried before the terminal failure.
        backoff_base_ms: Delay before the first restart.
        backoff_cap_ms: Upper bound for restart delays.
        request_timeout: Default request timeout in seconds.
        client_info: Handshake client identity.
        model: Default model for new threads.
        effort: Default reasoning effort for turns.
        summary: Default reasoning summary mode for turns.
        approval_policy: Default approval policy for new threads.
        sandbox_mode: Default sandbox mode in settings spelling (`workspace-write`).
    """

    working_dir: str = Field(default_factory=os.getcwd)
    codex_path: str | None = None
    extra_args: list[str] = Field(default_factory=list)
    env: dict[str, str] | None = None
    max_restart_attempts: int = DEFAULT_MAX_RESTART_ATTEMPTS
    backoff_base_ms: int = DEFAULT_BACKOFF_BASE_MS
    backoff_cap_ms: int = DEFAULT_BACKOFF_CAP_MS
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    client_info: ClientInfo = Field(default_factory=ClientInfo)
    model: str = "gpt-5-codex"
    effort: str = "medium"
    summary: str = "auto"
    approval_policy: str = "onRequest"
    sandbox_mode: str = "workspace-write"

    @property
    def server_sandbox_mode(self) -> str:
        return to_server_sandbox_mode(self.sandbox_mode)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, **overrides: object) -> ServiceConfig:
        """Build a config from `CODEX_*` environment variables plus explicit overrides."""
        source = os.environ if environ is None else environ
        values: dict[str, object] = {}
        if source.get("CODEX_PATH"):
            values["codex_path"] = source["CODEX_PATH"]
        if source.get("CODEX_EXTRA_ARGS"):
            values["extra_args"] = shlex.split(source["CODEX_EXTRA_ARGS"])
        if source.get("CODEX_WORKING_DIR"):
            values["working_dir"] = source["CODEX_WORKING_DIR"]
        if source.get("CODEX_REQUEST_TIMEOUT"):
            values["request_timeout"] = source["CODEX_REQUEST_TIMEOUT"]
        if source.get("CODEX_MAX_RESTART_ATTEMPTS"):
            values["max_restart_attempts"] = source["CODEX_MAX_RESTART_ATTEMPTS"]
        values.update(overrides)
        return cls.model_validate(values)


def to_server_sandbox_mode(value: str) -> str:
    """Translate settings spelling (`read-only`) to the wire spelling (`readOnly`)."""
    if value in ("readOnly", "workspaceWrite", "dangerFullAccess"):
        return value
    return {
        "read-only": "readOnly",
        "readonly": "readOnly",
        "workspace-write": "workspaceWrite",
        "workspacewrite": "workspaceWrite",
        "danger-full-access": "dangerFullAccess",
        "dangerfullaccess": "dangerFullAccess",
    }.get(value.lower(), value)
