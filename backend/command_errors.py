"""
Command Errors - error taxonomy shared by the host executor and the agent.

Every error carries an ``ErrorKind`` decided where it is raised, next to the
human-readable sentence that crosses the channel. Callers branch on the kind,
never on the message text.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    UNSUPPORTED = "unsupported"
    RESOURCE_LOAD = "resource_load"
    TIMEOUT = "timeout"
    CONNECTION_LOST = "connection_lost"
    UNKNOWN_COMMAND = "unknown_command"
    CANCELLED = "cancelled"
    INTERNAL = "internal"

    @classmethod
    def from_code(cls, code: Optional[str]) -> "ErrorKind":
        """Map a wire code back to a kind; unrecognised codes are internal."""
        try:
            return cls(code)
        except ValueError:
            return cls.INTERNAL


class HostError(Exception):
    """Base class for errors raised while executing a command."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details: Dict[str, Any] = details or {}
        super().__init__(message)

    def to_payload(self) -> Dict[str, Any]:
        return {"code": self.kind.value, "message": self.message, "details": self.details}


class ValidationError(HostError):
    kind = ErrorKind.VALIDATION


class NotFoundError(HostError):
    kind = ErrorKind.NOT_FOUND


class UnsupportedOperationError(HostError):
    kind = ErrorKind.UNSUPPORTED


class ResourceLoadError(HostError):
    kind = ErrorKind.RESOURCE_LOAD


class CommandTimeoutError(HostError, TimeoutError):
    kind = ErrorKind.TIMEOUT


class ConnectionLost(HostError):
    kind = ErrorKind.CONNECTION_LOST


class UnknownCommandError(HostError):
    kind = ErrorKind.UNKNOWN_COMMAND


def error_kind_of(exc: BaseException) -> ErrorKind:
    if isinstance(exc, HostError):
        return exc.kind
    return ErrorKind.INTERNAL
