from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import TypeAlias

from .channels import Broadcast, StateChannel, Subscription
from .errors import CodexBinaryNotFoundError, CodexTransportError

logger = logging.getLogger(__name__)

APP_SERVER_SUBCOMMAND = "app-server"
DEFAULT_BINARY_NAME = "codex"
DEFAULT_MAX_RESTART_ATTEMPTS = 5
DEFAULT_BACKOFF_BASE_MS = 1000
DEFAULT_BACKOFF_CAP_MS = 30000

# asyncio.StreamReader limit; app-server lines can carry whole diffs.
STDOUT_LINE_LIMIT = 16 * 1024 * 1024


@dataclass(frozen=True, slots=True)
class Stopped:
    """No process is running and none is wanted."""


@dataclass(frozen=True, slots=True)
class Starting:
    """A process is being spawned."""


@dataclass(frozen=True, slots=True)
class Running:
    """A process is running with open stdin/stdout pipes."""


@dataclass(frozen=True, slots=True)
class Restarting:
    """A crashed process will be restarted after `delay_ms`."""

    attempt: int
    delay_ms: int


@dataclass(frozen=True, slots=True)
class Failed:
    """Spawn failure or crash; terminal when `restart_in_ms` is None."""

    error: str
    restart_in_ms: int | None = None


ProcessState: TypeAlias = Stopped | Starting | Running | Restarting | Failed


@dataclass(eq=False, slots=True)
class ManagedProcess:
    """One spawned app-server instance.

    A restart never mutates an existing instance; the supervisor builds a new
    one, so consumers detect a hand-off by comparing identities.
    """

    process: asyncio.subprocess.Process
    stdin: asyncio.StreamWriter
    lines: Broadcast[str] = field(default_factory=Broadcast)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.returncode


def compute_backoff_ms(
    attempt: int,
    *,
    base_ms: int = DEFAULT_BACKOFF_BASE_MS,
    cap_ms: int = DEFAULT_BACKOFF_CAP_MS,
) -> int:
    """Return the restart delay for a 1-based attempt: 1s, 2s, 4s... capped."""
    exponent = max(attempt - 1, 0)
    return min(base_ms * (2**exponent), cap_ms)


def find_codex_binary(
    name: str = DEFAULT_BINARY_NAME,
    *,
    path: str | None = None,
) -> str | None:
    """Search `PATH` for an executable file called `name`."""
    search_path = path if path is not None else os.environ.get("PATH")
    if not search_path:
        return None
    for directory in search_path.split(os.pathsep):
        if not directory:
            continue
        candidate = os.path.join(directory, name)
        if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
            return os.path.abspath(candidate)
    return None


class ProcessSupervisor:
    """Spawns `codex app-server`, watches it, and restarts it after crashes."""

    def __init__(
        self,
        working_dir: str,
        *,
        codex_path: str | None = None,
        extra_args: Sequence[str] = (),
        env: Mapping[str, str] | None = None,
        max_restart_attempts: int = DEFAULT_MAX_RESTART_ATTEMPTS,
        backoff_base_ms: int = DEFAULT_BACKOFF_BASE_MS,
        backoff_cap_ms: int = DEFAULT_BACKOFF_CAP_MS,
    ) -> None:
        """Configure the supervisor.

        Args:
            working_dir: Directory the app-server runs in.
            codex_path: Explicit binary path; `PATH` is searched when omitted.
            extra_args: Arguments appended after the `app-server` subcommand.
            env: Optional environment for the subprocess.
            max_restart_attempts: Crash restarts tried before giving up.
            backoff_base_ms: Delay before the first restart.
            backoff_cap_ms: Upper bound for any restart delay.
        """
        self._working_dir = working_dir
        self._codex_path = codex_path
        self._extra_args = list(extra_args)
        self._env = dict(env) if env is not None else None
        self._max_restart_attempts = max_restart_attempts
        self._backoff_base_ms = backoff_base_ms
        self._backoff_cap_ms = backoff_cap_ms

        self._should_run = False
        self._restart_attempts = 0
        self._current: ManagedProcess | None = None
        self._states: StateChannel[ProcessState] = StateChannel(Stopped())

        self._stdout_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._monitor_task: asyncio.Task[None] | None = None
        self._restart_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> ProcessState:
        return self._states.value

    @property
    def current(self) -> ManagedProcess | None:
        """The live process instance, if any."""
        return self._current

    @property
    def restart_attempts(self) -> int:
        return self._restart_attempts

    def watch_states(self) -> Subscription[ProcessState]:
        """Subscribe to state changes, starting with the current state."""
        return self._states.subscribe()

    def backoff_ms(self, attempt: int) -> int:
        return compute_backoff_ms(
            attempt,
            base_ms=self._backoff_base_ms,
            cap_ms=self._backoff_cap_ms,
        )

    async def start(self) -> None:
        """Enable supervision and spawn the process; a no-op while one is running."""
        if self._current is not None:
            logger.debug("codex app-server already running (pid %s)", self._current.pid)
            return
        self._should_run = True
        self._restart_attempts = 0
        await self._start_process()

    async def stop(self) -> None:
        """Disable supervision and forcibly terminate the process."""
        self._should_run = False

        current_task = asyncio.current_task()
        tasks = [
            task
            for task in (
                self._restart_task,
                self._monitor_task,
                self._stdout_task,
                self._stderr_task,
            )
            if task is not None and task is not current_task
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._restart_task = None
        self._monitor_task = None
        self._stdout_task = None
        self._stderr_task = None

        managed = self._current
        self._current = None
        if managed is not None:
            await _kill(managed)
            managed.lines.close()

        self._states.publish(Stopped())
        logger.info("codex process stopped")

    def resolve_binary(self) -> str:
        if self._codex_path:
            return self._codex_path
        search_env = self._env if self._env is not None else os.environ
        binary = find_codex_binary(path=search_env.get("PATH"))
        if binary is None:
            raise CodexBinaryNotFoundError("codex binary not found in PATH")
        return binary

    async def _start_process(self) -> None:
        self._states.publish(Starting())
        try:
            binary = self.resolve_binary()
            command = [binary, APP_SERVER_SUBCOMMAND, *self._extra_args]
            if self._extra_args:
                logger.info(
                    "starting codex app-server from %s (extra args: %s)",
                    binary,
                    " ".join(self._extra_args),
                )
            else:
                logger.info("starting codex app-server from %s", binary)
            try:
                process = await asyncio.create_subprocess_exec(
                    *command,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=self._working_dir,
                    env=self._env,
                    limit=STDOUT_LINE_LIMIT,
                )
            except OSError as exc:
                raise CodexTransportError(
                    f"failed to start codex app-server: {command!r} ({exc})"
                ) from exc
            if process.stdin is None or process.stdout is None:
                raise CodexTransportError("codex app-server pipes are not available")
        except CodexTransportError as exc:
            logger.error("failed to start codex process: %s", exc)
            if self._should_run and self._restart_attempts < self._max_restart_attempts:
                delay_ms = self.backoff_ms(self._restart_attempts + 1)
                self._states.publish(Failed(str(exc), restart_in_ms=delay_ms))
                self._handle_crash()
            else:
                self._states.publish(Failed(str(exc)))
            return

        managed = ManagedProcess(process=process, stdin=process.stdin)
        self._current = managed
        self._restart_attempts = 0

        self._stdout_task = asyncio.create_task(self._read_stdout(managed))
        self._stderr_task = asyncio.create_task(self._read_stderr(managed))
        self._monitor_task = asyncio.create_task(self._monitor(managed))
        logger.info("codex app-server running (pid %s)", managed.pid)
        self._states.publish(Running())

    async def _read_stdout(self, managed: ManagedProcess) -> None:
        reader = managed.process.stdout
        assert reader is not None
        try:
            while True:
                raw = await reader.readline()
                if not raw:
                    break
                managed.lines.publish(raw.decode("utf-8", errors="replace").rstrip("\r\n"))
        except (OSError, ValueError) as exc:
            logger.error("error reading codex stdout: %s", exc)
        finally:
            managed.lines.close()

    async def _read_stderr(self, managed: ManagedProcess) -> None:
        reader = managed.process.stderr
        if reader is None:
            return
        with contextlib.suppress(OSError, ValueError):
            while True:
                raw = await reader.readline()
                if not raw:
                    break
                logger.warning(
                    "codex stderr: %s",
                    raw.decode("utf-8", errors="replace").rstrip("\r\n"),
                )

    async def _monitor(self, managed: ManagedProcess) -> None:
        exit_code = await managed.process.wait()
        logger.warning("codex process exited with code %s", exit_code)

        stdout_task = self._stdout_task
        if stdout_task is not None:
            # Let the reader drain buffered lines before the broadcast closes.
            await asyncio.wait({stdout_task})
        managed.lines.close()
        if self._current is managed:
            self._current = None

        if not self._should_run:
            return
        if self._restart_attempts < self._max_restart_attempts:
            self._handle_crash()
        else:
            self._states.publish(
                Failed(f"Max restart attempts ({self._max_restart_attempts}) reached")
            )
            logger.error("max restart attempts reached, giving up")

    def _handle_crash(self) -> None:
        self._restart_attempts += 1
        attempt = self._restart_attempts
        delay_ms = self.backoff_ms(attempt)
        logger.warning("scheduling restart attempt %s in %sms", attempt, delay_ms)
        self._states.publish(Restarting(attempt=attempt, delay_ms=delay_ms))
        self._restart_task = asyncio.create_task(self._restart_after(delay_ms, attempt))

    async def _restart_after(self, delay_ms: int, attempt: int) -> None:
        await asyncio.sleep(delay_ms / 1000)
        if self._should_run:
            logger.info("restarting codex process (attempt %s)", attempt)
            await self._start_process()


async def _kill(managed: ManagedProcess) -> None:
    process = managed.process
    with contextlib.suppress(OSError, RuntimeError):
        managed.stdin.close()
    if process.returncode is None:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
    await process.wait()
