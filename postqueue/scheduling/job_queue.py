"""
Polling job queue: claim due jobs, deliver them, drive the retry ladder.

State machine over ``status``::

    draft -> scheduled | pending_approval -> approved -> processing
    processing -> published | approved (retry) | failed
    any pre-processing state -> cancelled

Claim exclusivity rests on one conditional update per job
(:meth:`SupabaseDB.claim_job`): the worker whose update returns the row
owns the job, every other worker sees no row and skips it.  Settling a
claimed job is likewise conditional on ``status = processing``.

The queue's retry is blanket: it does not inspect *why* a delivery failed.
Wrap the publisher in :class:`~postqueue.resilience.resilient_publisher.ResilientPublisher`
to add classified, in-attempt retries and a circuit breaker.
"""

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from postqueue.config import QueueConfig
from postqueue.database import SupabaseDB
from postqueue.exceptions import QueueProcessingError, ValidationError
from postqueue.logging.event_logger import EventLogger
from postqueue.logging.models import LogComponent, LogLevel
from postqueue.scheduling.models import (
    CLAIMABLE_STATUSES,
    JobOutcome,
    JobResult,
    JobStatus,
    OperationResult,
    ProcessResult,
    QueueMetrics,
    ScheduledJob,
    status_values,
)
from postqueue.tools.publisher import Publisher
from postqueue.utils import Clock, SystemClock, parse_timestamp

logger = logging.getLogger(__name__)

DEFAULT_RETRY_DELAYS_SECONDS: Sequence[int] = (60, 300, 1800)

CANCELLABLE_STATUSES = frozenset(s for s in JobStatus if s.is_cancellable)

CLAIMED_ELSEWHERE = "Job already claimed by another worker"


# =============================================================================
# RETRY POLICY
# =============================================================================


def calculate_retry_delay(
    retry_count: int,
    ladder: Sequence[int] = DEFAULT_RETRY_DELAYS_SECONDS,
) -> int:
    """Backoff in milliseconds before retry number *retry_count*.

    *retry_count* is the value after incrementing, so the first retry waits
    ``ladder[0]``; counts past the end of the ladder stay on its last step.
    """
    index = min(max(retry_count - 1, 0), len(ladder) - 1)
    return ladder[index] * 1000


def should_retry(retry_count: int, max_retries: int) -> bool:
    """Whether a job that has now failed *retry_count* times gets another attempt."""
    return retry_count < max_retries


# =============================================================================
# JOB QUEUE
# =============================================================================


class JobQueue:
    """Claims and delivers due scheduled posts.

    Args:
        db: Database client (:class:`~postqueue.database.SupabaseDB`).
        publisher: Posting collaborator (optionally resilience-wrapped).
        config: Batch size, backoff ladder and recovery settings.
        clock: Time source; every "now" comes from here.
        event_logger: Optional structured event log receiving every outcome.
    """

    def __init__(
        self,
        db: SupabaseDB,
        publisher: Publisher,
        config: Optional[QueueConfig] = None,
        clock: Optional[Clock] = None,
        event_logger: Optional[EventLogger] = None,
    ) -> None:
        self.db = db
        self.publisher = publisher
        self.config = config or QueueConfig()
        self.clock = clock or SystemClock()
        self.event_logger = event_logger

    def calculate_retry_delay(self, retry_count: int) -> int:
        return calculate_retry_delay(retry_count, self.config.retry_delays_seconds)

    @staticmethod
    def should_retry(retry_count: int, max_retries: int) -> bool:
        return should_retry(retry_count, max_retries)

    # ================================================================
    # ENQUEUE / SWEEP
    # ================================================================

    async def enqueue_job(self, job_id: str) -> OperationResult:
        """Approve a job for delivery and reset its retry count.

        Legal from any status that has not been claimed or settled.
        """
        now = self.clock.now()
        row = await self.db.transition_job(
            job_id,
            {"status": JobStatus.APPROVED.value, "retry_count": 0, "updated_at": now.isoformat()},
            status_values(CANCELLABLE_STATUSES),
        )
        if row is None:
            return await self._rejection(job_id, "enqueue")

        logger.info("[QUEUE] Job %s enqueued (approved)", job_id)
        return OperationResult(success=True, job=ScheduledJob.from_row(row))

    async def process_queue(self) -> ProcessResult:
        """Run one sweep over due jobs.

        Fetches up to ``batch_size`` jobs in ``approved`` / ``pending_approval``
        with ``scheduled_at <= now``, oldest first, and processes each one
        independently.

        Returns:
            ``ProcessResult`` with one :class:`JobResult` per fetched job.

        Raises:
            QueueProcessingError: If the batch itself cannot be fetched.
        """
        now = self.clock.now()
        try:
            rows = await self.db.get_due_jobs(
                now, status_values(CLAIMABLE_STATUSES), limit=self.config.batch_size
            )
        except Exception as exc:
            raise QueueProcessingError(f"Failed to fetch due jobs: {exc}") from exc

        if not rows:
            return ProcessResult(processed=0)

        logger.info("[QUEUE] Found %d jobs due for delivery", len(rows))

        results: List[JobResult] = []
        for row in rows:
            try:
                result = await self._process_job(row["id"])
            except Exception as exc:
                # One job's infrastructure failure never aborts the batch
                logger.exception("[QUEUE] Unexpected error processing job %s", row["id"])
                result = JobResult(
                    job_id=row["id"],
                    outcome=JobOutcome.SKIPPED,
                    message=f"Processing error: {exc}",
                )
            results.append(result)
            await self._emit(result, row.get("user_id"))

        process_result = ProcessResult(processed=len(rows), results=results)
        logger.info(
            "[QUEUE] Sweep complete: %d processed (published=%d, retry=%d, failed=%d, skipped=%d)",
            process_result.processed,
            process_result.count(JobOutcome.PUBLISHED),
            process_result.count(JobOutcome.SCHEDULED_RETRY),
            process_result.count(JobOutcome.FAILED),
            process_result.count(JobOutcome.SKIPPED),
        )
        return process_result

    async def _process_job(self, job_id: str) -> JobResult:
        """Claim one job, deliver it, and settle the outcome."""
        claimed = await self.db.claim_job(
            job_id, self.clock.now(), status_values(CLAIMABLE_STATUSES)
        )
        if claimed is None:
            logger.debug("[QUEUE] Job %s already claimed, skipping", job_id)
            return JobResult(job_id=job_id, outcome=JobOutcome.SKIPPED, message=CLAIMED_ELSEWHERE)

        job = ScheduledJob.from_row(claimed)
        logger.info(
            "[QUEUE] Delivering job %s (user=%s, attempt=%d, text_len=%d)",
            job.id,
            job.user_id,
            job.retry_count + 1,
            len(job.content),
        )

        try:
            result = await self.publisher.post(job.content, job.media_refs or None, job.user_id)
        except Exception as exc:
            # Raised errors count exactly like structured failures
            return await self._settle_failure(job, str(exc) or type(exc).__name__)

        if not result.success:
            return await self._settle_failure(job, result.error or "Unknown error")
        if not result.external_id:
            return await self._settle_failure(job, "Invalid response: publisher returned no post id")

        return await self._settle_published(job, result.external_id)

    async def _settle_published(self, job: ScheduledJob, posted_ref: str) -> JobResult:
        now = self.clock.now()
        settled = await self.db.settle_job(
            job.id,
            {
                "status": JobStatus.PUBLISHED.value,
                "posted_tweet_id": posted_ref,
                "retry_count": 0,
                "error": None,
                "published_at": now.isoformat(),
                "updated_at": now.isoformat(),
            },
        )
        if not settled:
            logger.warning("[QUEUE] Job %s delivered but no longer in processing", job.id)

        logger.info("[QUEUE] Job %s published (ref=%s)", job.id, posted_ref)
        return JobResult(job_id=job.id, outcome=JobOutcome.PUBLISHED, posted_ref=posted_ref)

    async def _settle_failure(self, job: ScheduledJob, message: str) -> JobResult:
        """Apply the backoff ladder or fail the job for good."""
        now = self.clock.now()
        retry_count = job.retry_count + 1

        if self.should_retry(retry_count, job.max_retries):
            next_attempt_at = now + timedelta(milliseconds=self.calculate_retry_delay(retry_count))
            settled = await self.db.settle_job(
                job.id,
                {
                    "status": JobStatus.APPROVED.value,
                    "retry_count": retry_count,
                    "scheduled_at": next_attempt_at.isoformat(),
                    "last_retry_at": now.isoformat(),
                    "error": message,
                    "updated_at": now.isoformat(),
                },
            )
            if not settled:
                logger.warning("[QUEUE] Job %s left processing before its retry was armed", job.id)
            logger.warning(
                "[QUEUE] Job %s failed (retry %d/%d at %s): %s",
                job.id,
                retry_count,
                job.max_retries,
                next_attempt_at.isoformat(),
                message,
            )
            return JobResult(
                job_id=job.id,
                outcome=JobOutcome.SCHEDULED_RETRY,
                message=f"Retry {retry_count}/{job.max_retries}: {message}",
                next_attempt_at=next_attempt_at,
            )

        settled = await self.db.settle_job(
            job.id,
            {
                "status": JobStatus.FAILED.value,
                "retry_count": retry_count,
                "error": message,
                "updated_at": now.isoformat(),
            },
        )
        if not settled:
            logger.warning("[QUEUE] Job %s left processing before it could be failed", job.id)
        logger.error(
            "[QUEUE] Job %s permanently failed after %d attempts: %s",
            job.id,
            retry_count,
            message,
        )
        return JobResult(
            job_id=job.id,
            outcome=JobOutcome.FAILED,
            message=f"Max retries exceeded: {message}",
        )

    # ================================================================
    # MANUAL OPERATIONS
    # ================================================================

    async def retry_failed_job(self, job_id: str) -> OperationResult:
        """Re-arm a failed job with the next retry count's backoff.

        Only legal when the job is ``failed`` and ``retry_count < max_retries``.
        """
        row = await self.db.get_job(job_id)
        if row is None:
            return OperationResult(success=False, error="Job not found")

        job = ScheduledJob.from_row(row)
        if job.status is not JobStatus.FAILED:
            return OperationResult(success=False, error="Job is not in failed status", job=job)
        if job.retry_count >= job.max_retries:
            return OperationResult(success=False, error="Max retries exceeded", job=job)

        now = self.clock.now()
        retry_count = job.retry_count + 1
        next_attempt_at = now + timedelta(milliseconds=self.calculate_retry_delay(retry_count))
        updated = await self.db.transition_job(
            job_id,
            {
                "status": JobStatus.APPROVED.value,
                "retry_count": retry_count,
                "scheduled_at": next_attempt_at.isoformat(),
                "last_retry_at": now.isoformat(),
                "error": None,
                "updated_at": now.isoformat(),
            },
            [JobStatus.FAILED.value],
        )
        if updated is None:
            return OperationResult(success=False, error="Job is not in failed status", job=job)

        logger.info(
            "[QUEUE] Job %s manually re-armed (retry %d/%d at %s)",
            job_id,
            retry_count,
            job.max_retries,
            next_attempt_at.isoformat(),
        )
        return OperationResult(success=True, job=ScheduledJob.from_row(updated))

    async def retry_failed_jobs(
        self,
        job_ids: Optional[List[str]] = None,
        retry_all: bool = False,
        limit: Optional[int] = None,
    ) -> List[str]:
        """Operator bulk recovery: put failed jobs back in line right away.

        Resets ``retry_count`` to 0 and makes the jobs due now.

        Args:
            job_ids: Specific failed jobs to reset.
            retry_all: Reset any failed jobs (up to *limit*).
            limit: Maximum jobs to reset; defaults to ``retry_all_limit``.

        Returns:
            Ids of the jobs that were reset.

        Raises:
            ValidationError: If neither *job_ids* nor *retry_all* is given.
        """
        if not job_ids and not retry_all:
            raise ValidationError("Provide job_ids or set retry_all=True")

        now = self.clock.now()
        reset_ids = await self.db.reset_failed_jobs(
            {
                "status": JobStatus.APPROVED.value,
                "retry_count": 0,
                "scheduled_at": now.isoformat(),
                "error": None,
                "updated_at": now.isoformat(),
            },
            job_ids=None if retry_all and not job_ids else list(job_ids or []),
            limit=limit or self.config.retry_all_limit,
        )
        logger.info("[QUEUE] Bulk retry reset %d failed jobs", len(reset_ids))
        return reset_ids

    async def cancel_job(self, job_id: str, user_id: str) -> OperationResult:
        """Cancel a job that has not been claimed or settled yet.

        Scoped to the owning user.  A job already ``processing`` runs to
        completion; cancellation only prevents future claims.
        """
        now = self.clock.now()
        row = await self.db.transition_job(
            job_id,
            {"status": JobStatus.CANCELLED.value, "updated_at": now.isoformat()},
            status_values(CANCELLABLE_STATUSES),
            user_id=user_id,
        )
        if row is None:
            return await self._rejection(job_id, "cancel", user_id=user_id)

        logger.info("[QUEUE] Job %s cancelled by user %s", job_id, user_id)
        return OperationResult(success=True, job=ScheduledJob.from_row(row))

    async def _rejection(
        self, job_id: str, action: str, user_id: Optional[str] = None
    ) -> OperationResult:
        row = await self.db.get_job(job_id, user_id=user_id)
        if row is None:
            return OperationResult(success=False, error="Job not found")
        job = ScheduledJob.from_row(row)
        return OperationResult(
            success=False,
            error=f"Cannot {action} job with status '{job.status.value}'",
            job=job,
        )

    # ================================================================
    # RECOVERY
    # ================================================================

    async def recover_stuck_jobs(self) -> List[JobResult]:
        """Settle jobs stuck in ``processing`` through the failure path.

        A job is stuck when its claim is older than ``stuck_timeout_minutes``
        (e.g. the worker crashed mid-delivery).
        """
        now = self.clock.now()
        timeout = self.config.stuck_timeout_minutes
        rows = await self.db.get_stuck_jobs(now - timedelta(minutes=timeout))
        if not rows:
            return []

        results: List[JobResult] = []
        for row in rows:
            job = ScheduledJob.from_row(row)
            result = await self._settle_failure(
                job, f"Processing stuck for more than {timeout} minutes"
            )
            results.append(result)
            await self._emit(result, job.user_id)

        logger.warning("[QUEUE] Recovered %d stuck jobs", len(results))
        return results

    # ================================================================
    # METRICS
    # ================================================================

    async def get_queue_metrics(self) -> QueueMetrics:
        """Aggregate queue depth and recent failures.  Read-only."""
        now = self.clock.now()
        status_rows = await self.db.get_status_rows()
        counts = Counter(row.get("status") for row in status_rows)

        oldest = await self.db.get_oldest_due(status_values(CLAIMABLE_STATUSES))
        oldest_pending_at: Optional[datetime] = (
            parse_timestamp(oldest["scheduled_at"]) if oldest else None
        )

        return QueueMetrics(
            total_jobs=len(status_rows),
            pending=counts[JobStatus.APPROVED.value] + counts[JobStatus.PENDING_APPROVAL.value],
            processing=counts[JobStatus.PROCESSING.value],
            failed=counts[JobStatus.FAILED.value],
            published=counts[JobStatus.PUBLISHED.value],
            oldest_pending_at=oldest_pending_at,
            failures_last_hour=await self.db.count_failures_since(now - timedelta(hours=1)),
        )

    # ================================================================
    # EVENTS
    # ================================================================

    async def _emit(self, result: JobResult, user_id: Optional[str]) -> None:
        if self.event_logger is None:
            return
        level = {
            JobOutcome.PUBLISHED: LogLevel.INFO,
            JobOutcome.SCHEDULED_RETRY: LogLevel.WARNING,
            JobOutcome.FAILED: LogLevel.ERROR,
            JobOutcome.SKIPPED: LogLevel.DEBUG,
        }[result.outcome]
        data = {"outcome": result.outcome.value}
        if result.message:
            data["message"] = result.message
        if result.posted_ref:
            data["posted_ref"] = result.posted_ref
        if result.next_attempt_at:
            data["next_attempt_at"] = result.next_attempt_at.isoformat()
        await self.event_logger.log(
            level,
            LogComponent.JOB_QUEUE,
            f"Job {result.outcome.value}",
            job_id=result.job_id,
            user_id=user_id,
            data=data,
        )


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    "DEFAULT_RETRY_DELAYS_SECONDS",
    "CANCELLABLE_STATUSES",
    "calculate_retry_delay",
    "should_retry",
    "JobQueue",
]
