from __future__ import annotations

from typing import Any


class CodexError(Exception):
    """Base exception for the codex-app-server-supervisor package."""


class CodexTransportError(CodexError):
    """Raised when the app-server process or its stdio pipes fail."""


class CodexBinaryNotFoundError(CodexTransportError):
    """Raised when no executable `codex` binary can be resolved."""


class CodexTimeoutError(CodexError):
    """Raised when a request receives no response within its timeout."""


class CodexProtocolError(CodexError):
    """Raised when the app-server reports an error or answers malformed data."""

    def __init__(
        self,
        message: str,
        *,
        code: int | None = None,
        data: Any = None,
    ) -> None:
        """Create a protocol error.

        Args:
            message: Human-readable description.
            code: Optional JSON-RPC error code.
            data: Optional raw error payload reported by the server.
        """
        super().__init__(message)
        self.code = code
        self.data = data


class CodexNotInitializedError(CodexProtocolError):
    """Raised when a request is sent before the initialize handshake completed."""
