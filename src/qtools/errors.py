# noqa: D401
"""Error taxonomy for the qtools orchestration engine."""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorCode(Enum):
    """Machine-readable error codes surfaced in aggregate results."""

    PARSE_ERROR = "parse_error"
    PLATFORM_UNSUPPORTED = "platform_unsupported"
    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    ALREADY_RUNNING = "already_running"
    ALREADY_STOPPED = "already_stopped"
    TIMEOUT = "timeout"
    UNREACHABLE = "unreachable"
    AUTH_FAILED = "auth_failed"
    NOT_CONFIGURED = "not_configured"
    CANCELLED = "cancelled"
    IO_ERROR = "io_error"
    COMMAND_FAILED = "command_failed"


class QtoolsError(Exception):
    """Base exception for orchestration errors."""

    code: ErrorCode = ErrorCode.COMMAND_FAILED

    def __init__(self, message: str, target: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.target = target

    def __str__(self) -> str:
        return self.message


class InformationalError(QtoolsError):
    """Raised for repeatable no-ops; bulk operations record these as successes."""

    pass


class ParseErrorKind(Enum):
    """Why a core specification was rejected."""

    INVALID_RANGE = "invalid_range"
    INVALID_TOKEN = "invalid_token"


class ParseError(QtoolsError):
    """Malformed core specification."""

    code = ErrorCode.PARSE_ERROR

    def __init__(self, kind: ParseErrorKind, token: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"{kind.value}: {token!r}")
        self.kind = kind
        self.token = token


class PlatformUnsupportedError(QtoolsError):
    code = ErrorCode.PLATFORM_UNSUPPORTED


class ServiceNotFoundError(QtoolsError):
    code = ErrorCode.NOT_FOUND


class PermissionDeniedError(QtoolsError):
    code = ErrorCode.PERMISSION_DENIED


class AlreadyRunningError(InformationalError):
    code = ErrorCode.ALREADY_RUNNING


class AlreadyStoppedError(InformationalError):
    code = ErrorCode.ALREADY_STOPPED


class OperationTimeoutError(QtoolsError):
    code = ErrorCode.TIMEOUT


class UnreachableError(QtoolsError):
    code = ErrorCode.UNREACHABLE


class AuthFailedError(QtoolsError):
    code = ErrorCode.AUTH_FAILED


class NotConfiguredError(QtoolsError):
    code = ErrorCode.NOT_CONFIGURED


class OperationCancelledError(QtoolsError):
    """Operation abandoned because the caller cancelled it."""

    code = ErrorCode.CANCELLED


class DefinitionWriteError(QtoolsError):
    """Writing a persisted service definition failed."""

    code = ErrorCode.IO_ERROR


class ConfigError(QtoolsError):
    """Node configuration could not be read or validated."""

    code = ErrorCode.IO_ERROR


class CommandFailedError(QtoolsError):
    """A service-control command exited non-zero for an unclassified reason."""

    code = ErrorCode.COMMAND_FAILED


__all__ = [
    "AlreadyRunningError",
    "AlreadyStoppedError",
    "AuthFailedError",
    "CommandFailedError",
    "ConfigError",
    "DefinitionWriteError",
    "ErrorCode",
    "InformationalError",
    "NotConfiguredError",
    "OperationCancelledError",
    "OperationTimeoutError",
    "ParseError",
    "ParseErrorKind",
    "PermissionDeniedError",
    "PlatformUnsupportedError",
    "QtoolsError",
    "ServiceNotFoundError",
    "UnreachableError",
]
