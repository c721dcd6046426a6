from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    """Failure taxonomy shared by the submitter, worker and reconciler."""

    VALIDATION = "VALIDATION"
    AI_TIMEOUT = "AI_TIMEOUT"
    AI_UPSTREAM = "AI_UPSTREAM"
    TRANSPORT = "TRANSPORT"
    CONFLICT = "CONFLICT"
    ORPHANED = "ORPHANED"


_ERROR_CLASS = {
    ErrorCode.VALIDATION: "validation",
    ErrorCode.AI_TIMEOUT: "upstream_timeout",
    ErrorCode.AI_UPSTREAM: "upstream",
    ErrorCode.TRANSPORT: "transient",
    ErrorCode.CONFLICT: "business_rule",
    ErrorCode.ORPHANED: "reconciliation",
}

_RETRYABLE = frozenset({ErrorCode.TRANSPORT})


def normalize_error_code(code: str | ErrorCode | None) -> ErrorCode | None:
    if code is None:
        return None
    if isinstance(code, ErrorCode):
        return code
    try:
        return ErrorCode(str(code).strip().upper())
    except ValueError:
        return None


def is_retryable(code: str | ErrorCode | None) -> bool:
    normalized = normalize_error_code(code)
    return normalized in _RETRYABLE


def is_terminal_failure(code: str | ErrorCode | None) -> bool:
    normalized = normalize_error_code(code)
    if normalized is None:
        return True
    return normalized not in _RETRYABLE and normalized is not ErrorCode.CONFLICT


def error_class_for(code: str | ErrorCode | None) -> str:
    normalized = normalize_error_code(code)
    if normalized is None:
        return "internal"
    return _ERROR_CLASS[normalized]


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status


class TransportError(RuntimeError):
    """Queue broker or job store could not be reached."""

    error_code = ErrorCode.TRANSPORT
