"""
Custom exception classes for the postqueue delivery pipeline.

This module defines the exception classes shared across the codebase.
Caller-facing outcomes (bad schedule time, conflicting slot, illegal
manual retry) are reported as result objects by the services; the
exceptions here are raised for infrastructure failures and for the
resilience layer's fail-fast paths.

Hierarchy:
    Exception
    +-- PostQueueError (base for all pipeline errors)
    |   +-- QueueProcessingError
    |   +-- PublishError
    |   +-- RateLimitExceededError
    +-- ValidationError (ValueError)
    |   +-- ScheduleValidationError
    +-- DatabaseError
    +-- ConfigurationError
    +-- CircuitOpenError
"""

from datetime import datetime
from typing import Optional


# =============================================================================
# BASE EXCEPTION
# =============================================================================


class PostQueueError(Exception):
    """Base exception for all delivery-pipeline errors."""

    pass


# =============================================================================
# CORE EXCEPTIONS
# =============================================================================


class ValidationError(ValueError):
    """Raised when input validation fails."""

    pass


class ScheduleValidationError(ValidationError):
    """Raised when a requested schedule time or timezone is unusable."""

    pass


class DatabaseError(Exception):
    """Raised when database operations fail."""

    pass


class ConfigurationError(Exception):
    """Raised when system configuration is invalid."""

    pass


class CircuitOpenError(Exception):
    """Raised when circuit breaker is open and request is blocked.

    Attributes:
        breaker_name: Name of the breaker that rejected the call.
    """

    def __init__(self, breaker_name: str = "default"):
        self.breaker_name = breaker_name
        super().__init__("Circuit breaker is OPEN")


# =============================================================================
# SCHEDULING / QUEUE EXCEPTIONS
# =============================================================================


class QueueProcessingError(PostQueueError):
    """Raised when a queue sweep cannot run at all (e.g. batch fetch failed)."""

    pass


class PublishError(PostQueueError):
    """Raised when the posting collaborator reports a structured failure.

    The resilience layer converts failed ``PublishResult`` values into this
    exception so that the failure message can be classified and retried.
    """

    pass


class RateLimitExceededError(PostQueueError):
    """Raised when a client identifier is blocked by the rate limiter.

    Attributes:
        client_id: The fingerprinted client identifier.
        action: Rate-limit action class (``"login"``, ``"general"``, ...).
        reset_at: When the block expires.
    """

    def __init__(
        self,
        client_id: str,
        action: str,
        reset_at: Optional[datetime] = None,
    ):
        self.client_id = client_id
        self.action = action
        self.reset_at = reset_at
        suffix = f" until {reset_at.isoformat()}" if reset_at else ""
        super().__init__(f"Rate limit exceeded for '{action}'{suffix}")


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    # Base
    "PostQueueError",
    # Core
    "ValidationError",
    "ScheduleValidationError",
    "DatabaseError",
    "ConfigurationError",
    "CircuitOpenError",
    # Scheduling / queue
    "QueueProcessingError",
    "PublishError",
    "RateLimitExceededError",
]
