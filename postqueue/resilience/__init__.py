"""
Resilience primitives for outbound calls and client-facing endpoints.

- errors: ApiError, classify_error, normalize_error
- retry: RetryConfig, execute_with_retry
- circuit_breaker: CircuitBreaker, CircuitBreakerRegistry
- rate_limiter: SlidingWindowRateLimiter, client_identifier
- error_monitor: ErrorMonitor
- resilient_publisher: ResilientPublisher
"""

from postqueue.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
)
from postqueue.resilience.error_monitor import ErrorMonitor
from postqueue.resilience.errors import (
    ApiError,
    ErrorSeverity,
    ErrorType,
    classify_error,
    create_error,
    http_status_for,
    normalize_error,
    user_friendly_message,
)
from postqueue.resilience.rate_limiter import SlidingWindowRateLimiter, client_identifier
from postqueue.resilience.resilient_publisher import ResilientPublisher
from postqueue.resilience.retry import RetryConfig, calculate_backoff_delay, execute_with_retry

__all__ = [
    "ApiError",
    "ErrorType",
    "ErrorSeverity",
    "classify_error",
    "create_error",
    "normalize_error",
    "user_friendly_message",
    "http_status_for",
    "RetryConfig",
    "calculate_backoff_delay",
    "execute_with_retry",
    "CircuitState",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "SlidingWindowRateLimiter",
    "client_identifier",
    "ErrorMonitor",
    "ResilientPublisher",
]
