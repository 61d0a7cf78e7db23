"""
Publisher decorator adding circuit breaking and classified retry.

Layering for one delivery attempt of the job queue::

    execute_with_retry(            # classified, short (seconds)
        breaker.execute(           # fail fast while the downstream is down
            inner.post(...)        # raises PublishError on a failed result
        )
    )

A failed :class:`~postqueue.tools.publisher.PublishResult` is raised as
:class:`~postqueue.exceptions.PublishError` so its message goes through the
classifier.  When retries are exhausted (or the error is not retryable) the
final :class:`~postqueue.resilience.errors.ApiError` propagates; the job
queue records it as a failed attempt and applies its own backoff ladder.
"""

import logging
from typing import List, Optional

from postqueue.exceptions import PublishError
from postqueue.resilience.circuit_breaker import CircuitBreaker
from postqueue.resilience.error_monitor import ErrorMonitor
from postqueue.resilience.retry import DEFAULT_RETRY_CONFIG, RetryConfig, execute_with_retry
from postqueue.tools.publisher import Publisher, PublishResult

logger = logging.getLogger(__name__)


class ResilientPublisher:
    """Wraps any :class:`~postqueue.tools.publisher.Publisher`.

    Args:
        inner: The publisher doing the actual delivery.
        breaker: Breaker guarding *inner* (one per downstream).
        retry_config: Classified-retry parameters.
        service: Service tag for classified errors.
        endpoint: Endpoint tag for classified errors.
        monitor: Optional error monitor fed with every classified failure.
    """

    def __init__(
        self,
        inner: Publisher,
        breaker: Optional[CircuitBreaker] = None,
        retry_config: RetryConfig = DEFAULT_RETRY_CONFIG,
        service: str = "x-api",
        endpoint: Optional[str] = "/tweets",
        monitor: Optional[ErrorMonitor] = None,
    ) -> None:
        self.inner = inner
        self.breaker = breaker or CircuitBreaker(name=service)
        self.retry_config = retry_config
        self.service = service
        self.endpoint = endpoint
        self.monitor = monitor

    async def post(
        self,
        content: str,
        media_refs: Optional[List[str]],
        user_id: str,
    ) -> PublishResult:
        async def attempt() -> PublishResult:
            result = await self.inner.post(content, media_refs, user_id)
            if not result.success:
                raise PublishError(result.error or "Publish failed")
            return result

        async def guarded() -> PublishResult:
            return await self.breaker.execute(attempt)

        return await execute_with_retry(
            guarded,
            self.service,
            config=self.retry_config,
            endpoint=self.endpoint,
            user_id=user_id,
            on_error=self.monitor.record_error if self.monitor else None,
        )


__all__ = ["ResilientPublisher"]
