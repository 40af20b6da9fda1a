from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from .models import APPROVED_FOR_SESSION

logger = logging.getLogger(__name__)

CACHED_DECISION = "approved"


@dataclass(frozen=True, slots=True)
class CacheStats:
    exec_approvals: int
    patch_approvals: int


def exec_approval_key(command: Sequence[str], cwd: str) -> str:
    """Normalized key for an exec command: lower-cased trimmed tokens at `cwd`."""
    if not command:
        return f"unknown:{cwd}"
    normalized = " ".join(token.strip().lower() for token in command)
    return f"{normalized}@{cwd}"


def patch_approval_key(files: Iterable[str]) -> str:
    """Normalized key for a patch: its sorted trimmed paths."""
    paths = sorted(path.strip() for path in files)
    if not paths:
        return "patch:none"
    return "|".join(paths)


class ApprovalCache:
    """Per-thread memory of "approve for the rest of this session" decisions.

    Only `approved_for_session` is remembered; a later lookup for a matching
    command or patch returns `"approved"`. One-shot decisions never cache.
    """

    def __init__(self) -> None:
        self._exec: dict[str, dict[str, str]] = {}
        self._patch: dict[str, dict[str, str]] = {}

    def check_exec_approval(self, thread_id: str, command: Sequence[str], cwd: str) -> str | None:
        return self._exec.get(thread_id, {}).get(exec_approval_key(command, cwd))

    def cache_exec_approval(
        self,
        thread_id: str,
        command: Sequence[str],
        cwd: str,
        decision: str,
    ) -> None:
        if decision != APPROVED_FOR_SESSION:
            return
        self._exec.setdefault(thread_id, {})[exec_approval_key(command, cwd)] = CACHED_DECISION
        logger.debug("cached exec approval for thread %s", thread_id)

    def check_patch_approval(self, thread_id: str, files: Iterable[str]) -> str | None:
        return self._patch.get(thread_id, {}).get(patch_approval_key(files))

    def cache_patch_approval(self, thread_id: str, files: Iterable[str], decision: str) -> None:
        if decision != APPROVED_FOR_SESSION:
            return
        self._patch.setdefault(thread_id, {})[patch_approval_key(files)] = CACHED_DECISION
        logger.debug("cached patch approval for thread %s", thread_id)

    def clear(self) -> None:
        self._exec.clear()
        self._patch.clear()

    def clear_thread(self, thread_id: str) -> None:
        self._exec.pop(thread_id, None)
        self._patch.pop(thread_id, None)

    def stats(self) -> CacheStats:
        return CacheStats(
            exec_approvals=sum(len(entries) for entries in self._exec.values()),
            patch_approvals=sum(len(entries) for entries in self._patch.values()),
        )


def assess_command_risk(command: Sequence[str]) -> str | None:
    """Return a short warning for commands an approver should look at twice."""
    if not command:
        return None
    program = command[0].lower()
    if program in ("rm", "rmdir", "del") and any("-r" in arg or "-f" in arg for arg in command):
        return "Destructive file deletion"
    if program in ("chmod", "chown") and any("-R" in arg for arg in command):
        return "Recursive permission change"
    if program == "curl" and any("sudo" in arg or "bash" in arg for arg in command):
        return "Remote script execution"
    if program in ("dd", "mkfs", "fdisk"):
        return "Disk operation - potential data loss"
    if program in ("kill", "killall") and "-9" in command:
        return "Force kill processes"
    if program == "docker" and any(arg in ("rmi", "system", "prune") for arg in command):
        return "Docker cleanup operation"
    if any("sudo" in arg for arg in command):
        return "Requires elevated privileges"
    return None


_SENSITIVE_PATH_MARKERS = (".env", "credentials", "secrets", "id_rsa", ".ssh")


def has_sensitive_files(files: Iterable[str]) -> bool:
    """True when a patch touches credentials, dotenv files or SSH material."""
    return any(marker in path for path in files for marker in _SENSITIVE_PATH_MARKERS)
