"""
Scheduling data models: JobStatus, ScheduledJob, and the result types
returned by the scheduling service and the job queue.

- ``JobStatus``: Lifecycle status of a scheduled post job.
- ``ScheduledJob``: A row of the ``scheduled_posts`` table.
- ``ConflictCheck`` / ``ScheduleResult``: Scheduling service outcomes.
- ``JobOutcome`` / ``JobResult`` / ``ProcessResult``: One queue sweep.
- ``QueueMetrics``: Read-only queue aggregation.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from postqueue.utils import parse_timestamp, utc_now


# =============================================================================
# JOB STATUS ENUM
# =============================================================================


class JobStatus(Enum):
    """Lifecycle status of a scheduled post job.

    Transitions:
        DRAFT -> SCHEDULED | PENDING_APPROVAL -> APPROVED -> PROCESSING
        PROCESSING -> PUBLISHED | APPROVED (retry) | FAILED
        any pre-processing state -> CANCELLED
        PENDING_APPROVAL -> REJECTED
    """

    DRAFT = "draft"
    SCHEDULED = "scheduled"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    PROCESSING = "processing"
    PUBLISHED = "published"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        """Check if status is terminal (no further automatic transitions)."""
        return self in TERMINAL_STATUSES

    @property
    def is_cancellable(self) -> bool:
        """A job can be cancelled until it is claimed or settled."""
        return not self.is_terminal and self is not JobStatus.PROCESSING


TERMINAL_STATUSES: FrozenSet[JobStatus] = frozenset({
    JobStatus.PUBLISHED,
    JobStatus.FAILED,
    JobStatus.CANCELLED,
    JobStatus.REJECTED,
})

# Statuses the queue may claim once due
CLAIMABLE_STATUSES: FrozenSet[JobStatus] = frozenset({
    JobStatus.APPROVED,
    JobStatus.PENDING_APPROVAL,
})

# Statuses that occupy a slot for conflict detection
CONFLICT_STATUSES: FrozenSet[JobStatus] = frozenset({
    JobStatus.SCHEDULED,
    JobStatus.PENDING_APPROVAL,
    JobStatus.APPROVED,
})


def status_values(statuses: FrozenSet[JobStatus]) -> List[str]:
    """Sorted string values, for ``in_`` filters."""
    return sorted(s.value for s in statuses)


# =============================================================================
# SCHEDULED JOB
# =============================================================================


@dataclass
class ScheduledJob:
    """A post scheduled for delivery (one ``scheduled_posts`` row).

    Attributes:
        id: Unique identifier (UUID).
        user_id: Owning user.
        content: Post text (stripped).
        media_refs: Opaque media identifiers (column ``media_urls``).
        scheduled_at: When the job becomes due (timezone-aware UTC).
        user_timezone: IANA zone the user scheduled in.
        status: Current lifecycle status.
        retry_count: Failed delivery attempts so far.
        max_retries: Attempts allowed before the job is failed.
        last_retry_at: When the last retry was armed.
        error: Last failure message (cleared on claim).
        posted_ref: Downstream id on success (column ``posted_tweet_id``).
        conflict_window_minutes: Window used when this job was scheduled.
        requires_approval: Whether the job was routed to approval.
        submitted_for_approval_at: When it entered ``pending_approval``.
        claimed_at: When the current claim was taken.
        published_at: When delivery succeeded.
        created_at: Row creation time.
        updated_at: Last row update time.
    """

    # Required fields
    id: str
    user_id: str
    content: str
    scheduled_at: datetime

    media_refs: List[str] = field(default_factory=list)
    user_timezone: str = "UTC"

    # Status tracking
    status: JobStatus = JobStatus.SCHEDULED
    retry_count: int = 0
    max_retries: int = 3
    last_retry_at: Optional[datetime] = None
    error: Optional[str] = None
    posted_ref: Optional[str] = None
    conflict_window_minutes: int = 5

    # Approval
    requires_approval: bool = False
    submitted_for_approval_at: Optional[datetime] = None

    # Metadata
    claimed_at: Optional[datetime] = None
    published_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ScheduledJob":
        """Convert a Supabase row dict to a ``ScheduledJob``."""
        return cls(
            id=row["id"],
            user_id=row.get("user_id", ""),
            content=row.get("content", ""),
            scheduled_at=parse_timestamp(row["scheduled_at"]),
            media_refs=list(row.get("media_urls") or []),
            user_timezone=row.get("user_timezone") or "UTC",
            status=JobStatus(row.get("status", JobStatus.DRAFT.value)),
            retry_count=int(row.get("retry_count") or 0),
            max_retries=int(row.get("max_retries") or 3),
            last_retry_at=parse_timestamp(row.get("last_retry_at")),
            error=row.get("error"),
            posted_ref=row.get("posted_tweet_id"),
            conflict_window_minutes=int(row.get("conflict_window_minutes") or 5),
            requires_approval=bool(row.get("requires_approval", False)),
            submitted_for_approval_at=parse_timestamp(row.get("submitted_for_approval_at")),
            claimed_at=parse_timestamp(row.get("claimed_at")),
            published_at=parse_timestamp(row.get("published_at")),
            created_at=parse_timestamp(row.get("created_at")) or utc_now(),
            updated_at=parse_timestamp(row.get("updated_at")),
        )

    def to_row(self) -> Dict[str, Any]:
        """Convert to a Supabase row dict (ISO-8601 timestamps)."""

        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value is not None else None

        return {
            "id": self.id,
            "user_id": self.user_id,
            "content": self.content,
            "media_urls": list(self.media_refs),
            "scheduled_at": iso(self.scheduled_at),
            "user_timezone": self.user_timezone,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "last_retry_at": iso(self.last_retry_at),
            "error": self.error,
            "posted_tweet_id": self.posted_ref,
            "conflict_window_minutes": self.conflict_window_minutes,
            "requires_approval": self.requires_approval,
            "submitted_for_approval_at": iso(self.submitted_for_approval_at),
            "claimed_at": iso(self.claimed_at),
            "published_at": iso(self.published_at),
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }


# =============================================================================
# SCHEDULING RESULTS
# =============================================================================


@dataclass
class ValidationResult:
    valid: bool
    error: Optional[str] = None


@dataclass
class ConflictingJob:
    """A job occupying the conflict window (content already truncated)."""

    id: str
    scheduled_at: datetime
    content: str


@dataclass
class ConflictCheck:
    has_conflict: bool
    conflicts: List[ConflictingJob] = field(default_factory=list)


@dataclass
class SchedulePostInput:
    """Caller request for :meth:`SchedulingService.schedule_post`.

    ``scheduled_date`` is ``YYYY-MM-DD`` and ``scheduled_time`` is ``HH:MM``,
    both local to ``timezone`` (defaults to the configured timezone).
    """

    user_id: str
    content: str
    scheduled_date: str
    scheduled_time: str
    timezone: Optional[str] = None
    media_refs: List[str] = field(default_factory=list)
    status: Optional[JobStatus] = None
    requires_approval: bool = False
    max_retries: Optional[int] = None


@dataclass
class ScheduleResult:
    """Outcome of scheduling or rescheduling.

    On conflict, ``success`` is ``False`` and ``conflict_check`` lists the
    colliding jobs; nothing was written.
    """

    success: bool
    job: Optional[ScheduledJob] = None
    error: Optional[str] = None
    conflict_check: Optional[ConflictCheck] = None


# =============================================================================
# QUEUE RESULTS
# =============================================================================


class JobOutcome(Enum):
    PUBLISHED = "published"
    SCHEDULED_RETRY = "scheduled_retry"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class JobResult:
    """Per-job outcome of one :meth:`JobQueue.process_queue` sweep."""

    job_id: str
    outcome: JobOutcome
    message: Optional[str] = None
    posted_ref: Optional[str] = None
    next_attempt_at: Optional[datetime] = None


@dataclass
class ProcessResult:
    processed: int
    results: List[JobResult] = field(default_factory=list)

    def count(self, outcome: JobOutcome) -> int:
        return sum(1 for r in self.results if r.outcome is outcome)


@dataclass
class OperationResult:
    """``{success, error}`` outcome of a manual queue operation."""

    success: bool
    error: Optional[str] = None
    job: Optional[ScheduledJob] = None


@dataclass
class QueueMetrics:
    """Queue depth and failure counts.

    ``pending`` counts ``approved`` + ``pending_approval`` jobs.
    """

    total_jobs: int = 0
    pending: int = 0
    processing: int = 0
    failed: int = 0
    published: int = 0
    oldest_pending_at: Optional[datetime] = None
    failures_last_hour: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_jobs": self.total_jobs,
            "pending": self.pending,
            "processing": self.processing,
            "failed": self.failed,
            "published": self.published,
            "oldest_pending_at": self.oldest_pending_at.isoformat() if self.oldest_pending_at else None,
            "failures_last_hour": self.failures_last_hour,
        }


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    "JobStatus",
    "TERMINAL_STATUSES",
    "CLAIMABLE_STATUSES",
    "CONFLICT_STATUSES",
    "status_values",
    "ScheduledJob",
    "ValidationResult",
    "ConflictingJob",
    "ConflictCheck",
    "SchedulePostInput",
    "ScheduleResult",
    "JobOutcome",
    "JobResult",
    "ProcessResult",
    "OperationResult",
    "QueueMetrics",
]
