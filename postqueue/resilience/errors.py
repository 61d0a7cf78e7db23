"""
Normalized API errors for outbound calls.

Every failure of a downstream call is turned into an :class:`ApiError`
carrying a type, a derived severity and a retryable flag.  The only place
that looks at raw error *messages* is :func:`classify_error`; keep it that
way so the substring heuristic can be swapped for typed errors later.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import FrozenSet, Optional, Union

from postqueue.utils import utc_now

logger = logging.getLogger(__name__)


class ErrorType(Enum):
    """Normalized failure categories."""

    AUTHENTICATION = "authentication"
    RATE_LIMIT = "rate_limit"
    SERVER_ERROR = "server_error"
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    INVALID_RESPONSE = "invalid_response"
    SERVICE_UNAVAILABLE = "service_unavailable"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Severity levels, used for log level and alert thresholds."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


RETRYABLE_ERROR_TYPES: FrozenSet[ErrorType] = frozenset({
    ErrorType.NETWORK_ERROR,
    ErrorType.TIMEOUT,
    ErrorType.SERVER_ERROR,
    ErrorType.SERVICE_UNAVAILABLE,
})

_SEVERITY_BY_TYPE = {
    ErrorType.AUTHENTICATION: ErrorSeverity.HIGH,
    ErrorType.RATE_LIMIT: ErrorSeverity.MEDIUM,
    ErrorType.SERVER_ERROR: ErrorSeverity.HIGH,
    ErrorType.SERVICE_UNAVAILABLE: ErrorSeverity.HIGH,
    ErrorType.NETWORK_ERROR: ErrorSeverity.MEDIUM,
    ErrorType.TIMEOUT: ErrorSeverity.MEDIUM,
    ErrorType.INVALID_RESPONSE: ErrorSeverity.LOW,
    ErrorType.UNKNOWN: ErrorSeverity.MEDIUM,
}

# Ordered: the first matching rule wins.
_CLASSIFICATION_RULES = (
    (ErrorType.AUTHENTICATION, ("authentication", "unauthorized", "401")),
    (ErrorType.RATE_LIMIT, ("rate limit", "429")),
    (ErrorType.TIMEOUT, ("timeout", "time out")),
    (ErrorType.NETWORK_ERROR, ("network", "connection")),
    (ErrorType.SERVER_ERROR, ("server error", "500")),
    (ErrorType.SERVICE_UNAVAILABLE, ("service unavailable", "503")),
    (ErrorType.INVALID_RESPONSE, ("invalid response", "malformed")),
)


def classify_error(message: str) -> ErrorType:
    """Map a raw error message to an :class:`ErrorType` by substring.

    Matching is case-insensitive and ordered, so ``"503 Service
    Unavailable"`` is SERVICE_UNAVAILABLE but ``"500 ... timeout"`` is
    TIMEOUT.
    """
    lowered = message.lower()
    for error_type, needles in _CLASSIFICATION_RULES:
        if any(needle in lowered for needle in needles):
            return error_type
    return ErrorType.UNKNOWN


def severity_for(error_type: ErrorType) -> ErrorSeverity:
    return _SEVERITY_BY_TYPE.get(error_type, ErrorSeverity.MEDIUM)


def is_retryable(
    error_type: ErrorType, retryable_types: FrozenSet[ErrorType] = RETRYABLE_ERROR_TYPES
) -> bool:
    return error_type in retryable_types


class ApiError(Exception):
    """A classified downstream failure.

    Raised by :func:`~postqueue.resilience.retry.execute_with_retry` once
    retries are exhausted or the failure is not retryable.  Build instances
    with :func:`create_error` or :func:`normalize_error`; they are not
    mutated after construction.

    Attributes:
        type: Normalized category.
        message: Original error message.
        service: Tag of the downstream service (e.g. ``"x-api"``).
        severity: Derived from ``type``.
        retryable: Derived from ``type`` unless overridden.
        code: Optional provider error code or HTTP status.
        endpoint: Optional endpoint context.
        user_id: Optional user context.
        timestamp: When the error was normalized.
    """

    def __init__(
        self,
        type: ErrorType,
        message: str,
        service: str,
        severity: ErrorSeverity,
        retryable: bool,
        code: Optional[Union[str, int]] = None,
        endpoint: Optional[str] = None,
        user_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> None:
        super().__init__(message)
        self.type = type
        self.message = message
        self.service = service
        self.severity = severity
        self.retryable = retryable
        self.code = code
        self.endpoint = endpoint
        self.user_id = user_id
        self.timestamp = timestamp or utc_now()

    def __repr__(self) -> str:
        return (
            f"ApiError(type={self.type.value!r}, service={self.service!r}, "
            f"retryable={self.retryable}, message={self.message!r})"
        )

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
            "code": self.code,
            "retryable": self.retryable,
            "service": self.service,
            "endpoint": self.endpoint,
            "user_id": self.user_id,
            "timestamp": self.timestamp.isoformat(),
        }


def create_error(
    error_type: ErrorType,
    message: str,
    service: str,
    code: Optional[Union[str, int]] = None,
    retryable: Optional[bool] = None,
    endpoint: Optional[str] = None,
    user_id: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> ApiError:
    """Build an :class:`ApiError` with severity and retryability derived."""
    return ApiError(
        type=error_type,
        message=message,
        service=service,
        severity=severity_for(error_type),
        retryable=is_retryable(error_type) if retryable is None else retryable,
        code=code,
        endpoint=endpoint,
        user_id=user_id,
        timestamp=timestamp or utc_now(),
    )


def normalize_error(
    error: BaseException,
    service: str,
    endpoint: Optional[str] = None,
    user_id: Optional[str] = None,
    retryable_types: FrozenSet[ErrorType] = RETRYABLE_ERROR_TYPES,
) -> ApiError:
    """Turn any raised error into an :class:`ApiError`.

    An ``ApiError`` passes through untouched.  Otherwise the message is
    classified and ``retryable`` is set from membership in *retryable_types*.
    """
    if isinstance(error, ApiError):
        return error
    message = str(error) or type(error).__name__
    error_type = classify_error(message)
    return create_error(
        error_type,
        message,
        service,
        retryable=is_retryable(error_type, retryable_types),
        endpoint=endpoint,
        user_id=user_id,
    )


# ===========================================================================
# CALLER-FACING HELPERS
# ===========================================================================

_FRIENDLY_MESSAGES = {
    ErrorType.AUTHENTICATION: "Authentication failed. Please check your API credentials and try again.",
    ErrorType.RATE_LIMIT: "Rate limit exceeded. Please wait a moment before trying again.",
    ErrorType.SERVER_ERROR: "The service is experiencing issues. Please try again later.",
    ErrorType.NETWORK_ERROR: "Network connection issue. Please check your internet connection and try again.",
    ErrorType.TIMEOUT: "Request timed out. Please try again.",
    ErrorType.SERVICE_UNAVAILABLE: "The service is temporarily unavailable. Please try again later.",
    ErrorType.INVALID_RESPONSE: "Received an invalid response. Please try again.",
}

_HTTP_STATUS_BY_TYPE = {
    ErrorType.AUTHENTICATION: 401,
    ErrorType.RATE_LIMIT: 429,
    ErrorType.SERVER_ERROR: 503,
    ErrorType.SERVICE_UNAVAILABLE: 503,
    ErrorType.NETWORK_ERROR: 502,
    ErrorType.TIMEOUT: 502,
}


def user_friendly_message(error: ApiError) -> str:
    return _FRIENDLY_MESSAGES.get(error.type, "An unexpected error occurred. Please try again.")


def http_status_for(error: ApiError) -> int:
    """HTTP status a calling surface should answer with for *error*."""
    return _HTTP_STATUS_BY_TYPE.get(error.type, 500)


def log_api_error(error: ApiError, attempt: int) -> None:
    """Log *error* at a level matching its severity (attempt is 0-based)."""
    level = {
        ErrorSeverity.CRITICAL: logging.CRITICAL,
        ErrorSeverity.HIGH: logging.ERROR,
        ErrorSeverity.MEDIUM: logging.WARNING,
        ErrorSeverity.LOW: logging.INFO,
    }.get(error.severity, logging.WARNING)
    logger.log(
        level,
        "[API ERROR] service=%s type=%s severity=%s attempt=%d endpoint=%s user=%s: %s",
        error.service,
        error.type.value,
        error.severity.value,
        attempt + 1,
        error.endpoint,
        error.user_id,
        error.message,
    )


__all__ = [
    "ErrorType",
    "ErrorSeverity",
    "RETRYABLE_ERROR_TYPES",
    "ApiError",
    "classify_error",
    "severity_for",
    "is_retryable",
    "create_error",
    "normalize_error",
    "user_friendly_message",
    "http_status_for",
    "log_api_error",
]
