"""
Classified retry with exponential backoff.

Unlike a blanket retry decorator, :func:`execute_with_retry` normalizes each
failure into an :class:`~postqueue.resilience.errors.ApiError` and only
retries the transient categories (network, timeout, server error, service
unavailable) by default.  Authentication, rate-limit, invalid-response and
unknown failures propagate on the first attempt unless the caller's
:class:`RetryConfig` opts their type into ``retryable_errors``.

This retry runs *inside* a single delivery attempt of the job queue, so its
total delay (bounded by ``max_delay`` per step) stays well below the queue's
one-minute first backoff step.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, FrozenSet, Optional, TypeVar

from postqueue.config import ResilienceConfig
from postqueue.exceptions import ConfigurationError
from postqueue.resilience.errors import (
    ApiError,
    ErrorType,
    RETRYABLE_ERROR_TYPES,
    log_api_error,
    normalize_error,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """Parameters for :func:`execute_with_retry`.

    Delays are in seconds.  ``max_retries`` counts retries, so the operation
    runs at most ``max_retries + 1`` times.
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    retryable_errors: FrozenSet[ErrorType] = field(default=RETRYABLE_ERROR_TYPES)

    @classmethod
    def from_settings(cls, config: ResilienceConfig) -> "RetryConfig":
        """Build from settings; ``retryable_errors`` holds ErrorType values.

        Raises:
            ConfigurationError: If a retryable error name is unknown.
        """
        try:
            retryable = frozenset(ErrorType(name) for name in config.retryable_errors)
        except ValueError as exc:
            raise ConfigurationError(f"Invalid resilience.retryable_errors: {exc}") from exc
        return cls(
            max_retries=config.max_retries,
            base_delay=config.base_delay_seconds,
            max_delay=config.max_delay_seconds,
            backoff_multiplier=config.backoff_multiplier,
            retryable_errors=retryable,
        )


DEFAULT_RETRY_CONFIG = RetryConfig()


def calculate_backoff_delay(attempt: int, config: RetryConfig = DEFAULT_RETRY_CONFIG) -> float:
    """Delay in seconds after the 0-based *attempt* failed.

    ``min(base_delay * backoff_multiplier ** attempt, max_delay)``
    """
    delay = config.base_delay * (config.backoff_multiplier ** attempt)
    return min(delay, config.max_delay)


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    service: str,
    config: RetryConfig = DEFAULT_RETRY_CONFIG,
    endpoint: Optional[str] = None,
    user_id: Optional[str] = None,
    on_error: Optional[Callable[[ApiError], Any]] = None,
) -> T:
    """Run *operation*, retrying classified transient failures.

    Args:
        operation: Zero-argument coroutine function performing one call.
        service: Service tag recorded on every ``ApiError``.
        config: Retry parameters.
        endpoint: Optional endpoint context for errors and logs.
        user_id: Optional user context for errors and logs.
        on_error: Optional callback receiving every normalized error
            (used to feed an :class:`~postqueue.resilience.error_monitor.ErrorMonitor`).

    Returns:
        Whatever *operation* returns on its first successful attempt.

    Raises:
        ApiError: The classified error of the last attempt, when the error
            is not retryable or retries are exhausted.
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as exc:
            api_error = normalize_error(
                exc,
                service,
                endpoint=endpoint,
                user_id=user_id,
                retryable_types=config.retryable_errors,
            )
            log_api_error(api_error, attempt)
            if on_error is not None:
                on_error(api_error)

            retryable = api_error.retryable
            if not retryable or attempt >= config.max_retries:
                if retryable:
                    logger.error(
                        "[RETRY EXHAUSTED] %s failed after %d attempts: %s",
                        service,
                        attempt + 1,
                        api_error.message,
                    )
                if api_error is exc:
                    raise
                raise api_error from exc

            delay = calculate_backoff_delay(attempt, config)
            logger.warning(
                "[RETRY] %s attempt %d/%d failed (%s). Retrying in %.1fs...",
                service,
                attempt + 1,
                config.max_retries + 1,
                api_error.type.value,
                delay,
            )
            await asyncio.sleep(delay)
            attempt += 1


__all__ = [
    "RetryConfig",
    "DEFAULT_RETRY_CONFIG",
    "calculate_backoff_delay",
    "execute_with_retry",
]
