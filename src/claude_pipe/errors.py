"""Application-level exception types for claude-pipe."""

from __future__ import annotations


class ClaudePipeError(Exception):
    """Base exception for claude-pipe."""


class ConfigurationError(ClaudePipeError):
    """Base exception for configuration and startup validation errors."""


class WorkspaceNotFoundError(ConfigurationError):
    """Raised when the configured workspace path does not exist."""


class BackendError(ClaudePipeError):
    """Base exception for agent backend failures.

    Backends raise these internally and turn them into the apology reply at
    their boundary; the orchestrator never sees them.
    """


class BackendSpawnError(BackendError):
    """Raised when the agent subprocess cannot be started."""


class RpcError(BackendError):
    """Raised when the app-server answers a request with an error object."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(f"codex rpc error ({code}): {message}")
        self.code = code
        self.rpc_message = message


class RpcConnectionClosedError(BackendError):
    """Raised for requests still pending when the subprocess goes away."""
