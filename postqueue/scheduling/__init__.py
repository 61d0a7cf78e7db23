"""Scheduling subsystem: timezone-aware scheduling, the job queue, the sweep loop."""

from postqueue.scheduling.job_queue import JobQueue, calculate_retry_delay, should_retry
from postqueue.scheduling.models import (
    JobOutcome,
    JobResult,
    JobStatus,
    ProcessResult,
    QueueMetrics,
    ScheduledJob,
    SchedulePostInput,
    ScheduleResult,
)
from postqueue.scheduling.publishing_scheduler import PublishingScheduler
from postqueue.scheduling.scheduling_service import SchedulingService

__all__ = [
    "JobStatus",
    "ScheduledJob",
    "SchedulePostInput",
    "ScheduleResult",
    "JobOutcome",
    "JobResult",
    "ProcessResult",
    "QueueMetrics",
    "JobQueue",
    "calculate_retry_delay",
    "should_retry",
    "PublishingScheduler",
    "SchedulingService",
]
