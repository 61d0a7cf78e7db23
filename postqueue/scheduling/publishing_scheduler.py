"""
Background sweep loop that drives the job queue.

``PublishingScheduler`` runs as an asyncio background task, periodically
calling :meth:`JobQueue.process_queue` to deliver due jobs and, every few
cycles, :meth:`JobQueue.recover_stuck_jobs` to settle jobs whose worker
died mid-delivery.
"""

import asyncio
import logging
from typing import Optional

from postqueue.config import QueueConfig
from postqueue.logging.event_logger import EventLogger
from postqueue.logging.models import LogComponent
from postqueue.resilience.circuit_breaker import CircuitBreakerRegistry
from postqueue.scheduling.job_queue import JobQueue

logger = logging.getLogger(__name__)


class PublishingScheduler:
    """Background task that sweeps the job queue at a fixed interval.

    Runs an asyncio loop that periodically:
    1. Runs one :meth:`JobQueue.process_queue` sweep.
    2. Every ``recovery_interval_cycles`` sweeps, recovers stuck jobs.
    3. Stops after ``max_consecutive_errors`` failed sweeps in a row.

    Args:
        job_queue: The queue to sweep.
        config: Interval, recovery cadence and error ceiling
            (defaults to the queue's own config).
        event_logger: Optional structured event log for loop failures.
        breakers: Registry of the publisher's circuit breakers, for
            operator resets while the loop runs.
    """

    def __init__(
        self,
        job_queue: JobQueue,
        config: Optional[QueueConfig] = None,
        event_logger: Optional[EventLogger] = None,
        breakers: Optional[CircuitBreakerRegistry] = None,
    ) -> None:
        self.job_queue = job_queue
        self.config = config or job_queue.config
        self.event_logger = event_logger
        self.breakers = breakers
        self._running: bool = False
        self._cycle_count: int = 0
        self._consecutive_errors: int = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def cycle_count(self) -> int:
        return self._cycle_count

    @property
    def consecutive_errors(self) -> int:
        return self._consecutive_errors

    # ================================================================
    # LIFECYCLE
    # ================================================================

    async def start(self) -> bool:
        """Run the sweep loop until :meth:`stop` or too many failures.

        Returns:
            ``True`` on a requested stop or cancellation, ``False`` when the
            loop gave up after ``max_consecutive_errors`` failed sweeps.
        """
        self._running = True
        self._cycle_count = 0
        self._consecutive_errors = 0
        logger.info(
            "[SWEEPER] Sweep loop started (interval=%ds)",
            self.config.sweep_interval_seconds,
        )

        healthy = True
        while self._running:
            try:
                await self.run_cycle()
            except asyncio.CancelledError:
                logger.info("[SWEEPER] Sweep loop cancelled")
                break
            except Exception as exc:
                self._consecutive_errors += 1
                logger.exception(
                    "[SWEEPER] Sweep failed (%d/%d consecutive)",
                    self._consecutive_errors,
                    self.config.max_consecutive_errors,
                )
                if self.event_logger:
                    await self.event_logger.error(
                        LogComponent.SWEEPER,
                        "Sweep failed",
                        error=exc,
                        data={"consecutive_errors": self._consecutive_errors},
                    )
                if self._consecutive_errors >= self.config.max_consecutive_errors:
                    logger.critical(
                        "[SWEEPER] Giving up after %d consecutive failed sweeps",
                        self._consecutive_errors,
                    )
                    healthy = False
                    break

            if not self._running:
                break

            # Wait for next sweep
            try:
                await asyncio.sleep(self.config.sweep_interval_seconds)
            except asyncio.CancelledError:
                logger.info("[SWEEPER] Sweep loop sleep cancelled")
                break

        self._running = False
        logger.info("[SWEEPER] Sweep loop stopped after %d cycles", self._cycle_count)
        return healthy

    def reset_breakers(self) -> int:
        """Force every registered circuit breaker back to CLOSED.

        Returns:
            How many breakers were reset (0 without a registry).
        """
        if self.breakers is None:
            return 0
        count = self.breakers.reset_all()
        logger.warning("[SWEEPER] Operator reset %d circuit breaker(s)", count)
        return count

    async def stop(self) -> None:
        """Ask the loop to exit after the current sweep."""
        self._running = False
        logger.info("[SWEEPER] Sweep loop stop requested")

    # ================================================================
    # ONE CYCLE
    # ================================================================

    async def run_cycle(self) -> None:
        """Run one sweep, plus stuck-job recovery when its turn comes.

        Raises:
            QueueProcessingError: If the due batch cannot be fetched.
        """
        result = await self.job_queue.process_queue()
        self._cycle_count += 1
        self._consecutive_errors = 0

        if result.processed:
            logger.debug("[SWEEPER] Cycle %d processed %d jobs", self._cycle_count, result.processed)

        if self._cycle_count % self.config.recovery_interval_cycles == 0:
            logger.debug("[SWEEPER] Running stuck-job recovery")
            await self.job_queue.recover_stuck_jobs()


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    "PublishingScheduler",
]
