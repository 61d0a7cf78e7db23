"""
Scheduling service: timezone-aware post scheduling with conflict avoidance.

``SchedulingService`` turns a user's local ``(date, time, timezone)`` into a
UTC instant, validates it against the business rules, rejects it when the
user already has a post inside the conflict window, and writes the job row
in its initial status.

Caller-facing outcomes (bad time, conflict, unknown job) come back as
:class:`~postqueue.scheduling.models.ScheduleResult` values; database
failures propagate.

All database interactions go through the ``db`` parameter (a
:class:`~postqueue.database.SupabaseDB` instance).
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from postqueue.config import SchedulingConfig, Settings
from postqueue.database import SupabaseDB
from postqueue.exceptions import ScheduleValidationError
from postqueue.logging.event_logger import EventLogger
from postqueue.logging.models import LogComponent
from postqueue.scheduling.bulk import (
    BulkPost,
    BulkPostResult,
    BulkScheduleConfig,
    BulkScheduleResult,
    calculate_bulk_schedule,
    validate_bulk_config,
)
from postqueue.scheduling.models import (
    CONFLICT_STATUSES,
    ConflictCheck,
    ConflictingJob,
    JobStatus,
    ScheduledJob,
    SchedulePostInput,
    ScheduleResult,
    ValidationResult,
    status_values,
)
from postqueue.scheduling.timezones import convert_to_utc
from postqueue.utils import Clock, SystemClock, ensure_utc, generate_id, parse_timestamp, truncate

logger = logging.getLogger(__name__)

# Statuses a caller may request for a brand-new job
INITIAL_STATUSES = frozenset({JobStatus.DRAFT, JobStatus.SCHEDULED, JobStatus.PENDING_APPROVAL})

# Statuses from which a job may still be moved to another slot
RESCHEDULABLE_STATUSES = frozenset({
    JobStatus.DRAFT,
    JobStatus.SCHEDULED,
    JobStatus.PENDING_APPROVAL,
    JobStatus.APPROVED,
})


class SchedulingService:
    """Validates, conflict-checks and persists scheduled posts.

    Args:
        db: Database client (:class:`~postqueue.database.SupabaseDB`).
        config: Scheduling rules (conflict window, horizon, approval rules).
        clock: Time source; every "now" comes from here.
        default_max_retries: ``max_retries`` written on new jobs.
        event_logger: Optional structured event log.
    """

    def __init__(
        self,
        db: SupabaseDB,
        config: Optional[SchedulingConfig] = None,
        clock: Optional[Clock] = None,
        default_max_retries: int = 3,
        event_logger: Optional[EventLogger] = None,
    ) -> None:
        self.db = db
        self.config = config or SchedulingConfig()
        self.clock = clock or SystemClock()
        self.default_max_retries = default_max_retries
        self.event_logger = event_logger

    @classmethod
    def from_settings(
        cls,
        db: SupabaseDB,
        settings: Settings,
        clock: Optional[Clock] = None,
        event_logger: Optional[EventLogger] = None,
    ) -> "SchedulingService":
        """Build a service from loaded settings (scheduling rules and retry ceiling)."""
        return cls(
            db,
            config=settings.scheduling,
            clock=clock,
            default_max_retries=settings.queue.default_max_retries,
            event_logger=event_logger,
        )

    # ================================================================
    # VALIDATION
    # ================================================================

    def validate_schedule_time(self, scheduled_at: datetime) -> ValidationResult:
        """Reject instants that are not strictly in the future or too far out.

        Naive datetimes are treated as UTC.
        """
        scheduled_at = ensure_utc(scheduled_at)
        now = self.clock.now()

        if scheduled_at <= now:
            return ValidationResult(False, "Scheduled time must be in the future")

        if scheduled_at > now + timedelta(days=self.config.max_days_ahead):
            return ValidationResult(False, "Scheduled time cannot be more than 1 year in the future")

        return ValidationResult(True)

    def requires_approval(self, content: str, media_refs: Optional[List[str]] = None) -> bool:
        """Long, promotional, or media-bearing posts are routed to approval."""
        if len(content) > self.config.approval_length_threshold:
            return True
        lowered = content.lower()
        if any(term.lower() in lowered for term in self.config.flagged_terms):
            return True
        return bool(media_refs)

    # ================================================================
    # CONFLICT DETECTION
    # ================================================================

    async def detect_conflicts(
        self,
        user_id: str,
        scheduled_at: datetime,
        exclude_job_id: Optional[str] = None,
        window_minutes: Optional[int] = None,
    ) -> ConflictCheck:
        """Find the user's active jobs within ``window_minutes`` of *scheduled_at*.

        The window is symmetric and inclusive at both ends.

        Args:
            user_id: Owner whose jobs are checked.
            scheduled_at: Proposed instant (UTC).
            exclude_job_id: Job being rescheduled, ignored by the check.
            window_minutes: Defaults to the configured conflict window.

        Returns:
            ``ConflictCheck`` listing colliding jobs with truncated content.
        """
        window = timedelta(
            minutes=window_minutes if window_minutes is not None else self.config.conflict_window_minutes
        )
        rows = await self.db.find_jobs_in_window(
            user_id,
            scheduled_at - window,
            scheduled_at + window,
            status_values(CONFLICT_STATUSES),
            exclude_job_id=exclude_job_id,
        )

        conflicts = [
            ConflictingJob(
                id=row["id"],
                scheduled_at=parse_timestamp(row["scheduled_at"]),
                content=truncate(row.get("content") or "", 50),
            )
            for row in rows
        ]

        if conflicts:
            logger.debug(
                "[SCHEDULER] Conflict detected at %s for user %s (%d nearby posts)",
                scheduled_at.isoformat(),
                user_id,
                len(conflicts),
            )

        return ConflictCheck(has_conflict=bool(conflicts), conflicts=conflicts)

    def _conflict_message(self) -> str:
        return (
            "Scheduling conflict detected. Another post is scheduled within "
            f"{self.config.conflict_window_minutes} minutes."
        )

    # ================================================================
    # POST MANAGEMENT
    # ================================================================

    async def schedule_post(self, request: SchedulePostInput) -> ScheduleResult:
        """Schedule a post at a local date and time.

        Steps: convert to UTC, validate, detect conflicts (abort without
        writing on conflict), derive the initial status, persist.

        Args:
            request: The caller's scheduling request.

        Returns:
            ``ScheduleResult`` with the created job on success.
        """
        tz_name = request.timezone or self.config.default_timezone

        try:
            scheduled_at = convert_to_utc(request.scheduled_date, request.scheduled_time, tz_name)
        except ScheduleValidationError as exc:
            return ScheduleResult(success=False, error=str(exc))

        validation = self.validate_schedule_time(scheduled_at)
        if not validation.valid:
            return ScheduleResult(success=False, error=validation.error)

        content = (request.content or "").strip()
        if not content:
            return ScheduleResult(success=False, error="Content cannot be empty")

        if request.status is not None and request.status not in INITIAL_STATUSES:
            return ScheduleResult(
                success=False,
                error=f"Invalid initial status '{request.status.value}'",
            )

        conflict_check = await self.detect_conflicts(request.user_id, scheduled_at)
        if conflict_check.has_conflict:
            return ScheduleResult(
                success=False,
                error=self._conflict_message(),
                conflict_check=conflict_check,
            )

        now = self.clock.now()
        needs_approval = request.requires_approval or self.requires_approval(content, request.media_refs)
        status = JobStatus.PENDING_APPROVAL if needs_approval else (request.status or JobStatus.SCHEDULED)

        job = ScheduledJob(
            id=generate_id(),
            user_id=request.user_id,
            content=content,
            scheduled_at=scheduled_at,
            media_refs=list(request.media_refs or []),
            user_timezone=tz_name,
            status=status,
            max_retries=request.max_retries or self.default_max_retries,
            conflict_window_minutes=self.config.conflict_window_minutes,
            requires_approval=needs_approval,
            submitted_for_approval_at=now if status is JobStatus.PENDING_APPROVAL else None,
            created_at=now,
            updated_at=now,
        )

        row = await self.db.insert_job(job.to_row())
        job = ScheduledJob.from_row(row)

        logger.info(
            "[SCHEDULER] Post %s scheduled for %s (user=%s, tz=%s, status=%s)",
            job.id,
            job.scheduled_at.isoformat(),
            job.user_id,
            tz_name,
            job.status.value,
        )
        if self.event_logger:
            await self.event_logger.info(
                LogComponent.SCHEDULER,
                "Post scheduled",
                job_id=job.id,
                user_id=job.user_id,
                data={"scheduled_at": job.scheduled_at.isoformat(), "status": job.status.value},
            )

        return ScheduleResult(success=True, job=job, conflict_check=conflict_check)

    async def reschedule_post(
        self,
        job_id: str,
        user_id: str,
        new_date: str,
        new_time: str,
        timezone: Optional[str] = None,
    ) -> ScheduleResult:
        """Move an existing job to a new local date and time.

        Runs the same validation and conflict pipeline as
        :meth:`schedule_post`, ignoring the job itself.  The update is
        scoped to the owning user and conditional on the job still being
        reschedulable.
        """
        existing = await self.get_post(job_id, user_id)
        if existing is None:
            return ScheduleResult(success=False, error="Post not found")

        if existing.status not in RESCHEDULABLE_STATUSES:
            return ScheduleResult(
                success=False,
                error=f"Cannot reschedule a post with status '{existing.status.value}'",
            )

        tz_name = timezone or existing.user_timezone or self.config.default_timezone
        try:
            scheduled_at = convert_to_utc(new_date, new_time, tz_name)
        except ScheduleValidationError as exc:
            return ScheduleResult(success=False, error=str(exc))

        validation = self.validate_schedule_time(scheduled_at)
        if not validation.valid:
            return ScheduleResult(success=False, error=validation.error)

        conflict_check = await self.detect_conflicts(user_id, scheduled_at, exclude_job_id=job_id)
        if conflict_check.has_conflict:
            return ScheduleResult(
                success=False,
                error=self._conflict_message(),
                conflict_check=conflict_check,
            )

        row = await self.db.transition_job(
            job_id,
            {
                "scheduled_at": scheduled_at.isoformat(),
                "user_timezone": tz_name,
                "updated_at": self.clock.now().isoformat(),
            },
            status_values(RESCHEDULABLE_STATUSES),
            user_id=user_id,
        )
        if row is None:
            return ScheduleResult(success=False, error="Post could not be rescheduled (status changed)")

        job = ScheduledJob.from_row(row)
        logger.info(
            "[SCHEDULER] Post %s rescheduled to %s (tz=%s)",
            job.id,
            job.scheduled_at.isoformat(),
            tz_name,
        )
        return ScheduleResult(success=True, job=job, conflict_check=conflict_check)

    async def get_post(self, job_id: str, user_id: str) -> Optional[ScheduledJob]:
        """Fetch a job owned by *user_id*, or ``None``."""
        row = await self.db.get_job(job_id, user_id=user_id)
        return ScheduledJob.from_row(row) if row else None

    # ================================================================
    # BULK SCHEDULING
    # ================================================================

    async def schedule_bulk(
        self,
        user_id: str,
        posts: List[BulkPost],
        config: BulkScheduleConfig,
    ) -> BulkScheduleResult:
        """Distribute *posts* over the configured range and schedule each.

        Per-post failures (conflicts, past slots) are reported in the
        result and do not stop the remaining posts.
        """
        validation = validate_bulk_config(config, len(posts), self.config.bulk_min_interval_minutes)
        if not validation.valid:
            return BulkScheduleResult(success=False, error=validation.error)

        slots = calculate_bulk_schedule(posts, config)
        results: List[BulkPostResult] = []

        for index, slot in enumerate(slots):
            result = await self.schedule_post(
                SchedulePostInput(
                    user_id=user_id,
                    content=slot.post.content,
                    scheduled_date=slot.scheduled_date,
                    scheduled_time=slot.scheduled_time,
                    timezone=config.timezone,
                    media_refs=list(slot.post.media_refs),
                )
            )
            results.append(BulkPostResult(index=index, result=result))

        for index in range(len(slots), len(posts)):
            results.append(
                BulkPostResult(
                    index=index,
                    result=ScheduleResult(success=False, error="No slot available in the selected range"),
                )
            )

        outcome = BulkScheduleResult(success=True, results=results)
        logger.info(
            "[SCHEDULER] Bulk schedule for user %s: %d scheduled, %d failed",
            user_id,
            outcome.scheduled_count,
            outcome.failed_count,
        )
        return outcome


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    "INITIAL_STATUSES",
    "RESCHEDULABLE_STATUSES",
    "SchedulingService",
]
