"""Error taxonomy for the orchestration layer.

Internal exceptions are translated into one of these kinds before they
reach a caller, so every failure carries a human-readable message.
"""

from __future__ import annotations

import enum
from typing import Any


class ErrorKind(enum.StrEnum):
    AGENT = "agent"
    SPAWN_FAILURE = "spawn_failure"
    PROCESS_DEATH = "process_death"
    CONFLICT = "conflict"
    ACCESS_DENIED = "access_denied"
    TIMEOUT = "timeout"
    NOT_FOUND = "not_found"


class AgentError(Exception):
    """Base class. Also used for errors reported by the agent CLI itself."""

    kind: ErrorKind = ErrorKind.AGENT

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message}


class SpawnFailure(AgentError):
    """The binary is missing or the OS refused to exec it."""

    kind = ErrorKind.SPAWN_FAILURE


class ProcessDeath(AgentError):
    """A child exited unexpectedly while a call was outstanding."""

    kind = ErrorKind.PROCESS_DEATH


class Conflict(AgentError):
    """On-disk content no longer matches what an undo operation expects."""

    kind = ErrorKind.CONFLICT

    def __init__(
        self, message: str, path: str = "", expected: str = "", found: int = 0
    ) -> None:
        super().__init__(message)
        self.path = path
        self.expected = expected
        self.found = found

    def to_dict(self) -> dict[str, Any]:
        return {
            **super().to_dict(),
            "path": self.path,
            "expected": self.expected,
            "found": self.found,
        }


class AccessDenied(AgentError):
    kind = ErrorKind.ACCESS_DENIED

    def __init__(self, message: str, path: str = "") -> None:
        super().__init__(message)
        self.path = path


class AgentTimeout(AgentError):
    kind = ErrorKind.TIMEOUT


class NotFound(AgentError):
    kind = ErrorKind.NOT_FOUND


def friendly_spawn_error(exc: OSError, binary: str = "claude") -> SpawnFailure:
    """Translate an exec failure into a user-facing SpawnFailure."""
    if isinstance(exc, FileNotFoundError):
        return SpawnFailure(
            f"{binary} is not installed or not found in PATH. "
            "Install it with: npm install -g @anthropic-ai/claude-code"
        )
    return SpawnFailure(f"Failed to start {binary}: {exc.strerror or exc}")
