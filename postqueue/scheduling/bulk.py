"""
Bulk scheduling: distribute many posts over a local date/time range.

Slots are computed on naive local wall-clock datetimes; each slot is then
scheduled through :meth:`SchedulingService.schedule_post`, which applies the
zone conversion, validation and conflict rules per post.

Frequencies:
    even    N posts spread evenly inside (start, end), endpoints excluded
    daily   one post per day at the start time, until end
    weekly  one post per week at the start time, until end
    custom  one post every ``custom_interval_minutes`` from start, until end
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional

from postqueue.exceptions import ScheduleValidationError
from postqueue.scheduling.models import ScheduleResult, ValidationResult
from postqueue.scheduling.timezones import DATE_FORMAT, TIME_FORMAT, parse_local


class BulkFrequency(Enum):
    EVEN = "even"
    DAILY = "daily"
    WEEKLY = "weekly"
    CUSTOM = "custom"


@dataclass
class BulkScheduleConfig:
    start_date: str
    start_time: str
    end_date: str
    end_time: str
    frequency: BulkFrequency = BulkFrequency.EVEN
    custom_interval_minutes: Optional[int] = None
    timezone: Optional[str] = None

    @property
    def start(self) -> datetime:
        return parse_local(self.start_date, self.start_time)

    @property
    def end(self) -> datetime:
        return parse_local(self.end_date, self.end_time)


@dataclass
class BulkPost:
    content: str
    media_refs: List[str] = field(default_factory=list)


@dataclass
class ScheduledSlot:
    post: BulkPost
    scheduled_date: str
    scheduled_time: str


@dataclass
class BulkPostResult:
    index: int
    result: ScheduleResult


@dataclass
class BulkScheduleResult:
    """Per-post outcomes; a conflict on one post does not abort the rest."""

    success: bool
    results: List[BulkPostResult] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def scheduled_count(self) -> int:
        return sum(1 for r in self.results if r.result.success)

    @property
    def failed_count(self) -> int:
        return sum(1 for r in self.results if not r.result.success)


def _slot(post: BulkPost, when: datetime) -> ScheduledSlot:
    return ScheduledSlot(
        post=post,
        scheduled_date=when.strftime(DATE_FORMAT),
        scheduled_time=when.strftime(TIME_FORMAT),
    )


def _total_minutes(config: BulkScheduleConfig) -> int:
    return math.floor((config.end - config.start).total_seconds() / 60)


def calculate_even_distribution(posts: List[BulkPost], config: BulkScheduleConfig) -> List[ScheduledSlot]:
    start, end = config.start, config.end
    if end < start or not posts:
        return []

    interval = _total_minutes(config) / (len(posts) + 1)
    # Round half up so slot minutes match what users see in the preview
    return [
        _slot(post, start + timedelta(minutes=math.floor(interval * (index + 1) + 0.5)))
        for index, post in enumerate(posts)
    ]


def _calculate_stepped(posts: List[BulkPost], config: BulkScheduleConfig, step: timedelta) -> List[ScheduledSlot]:
    end = config.end
    current = config.start
    slots: List[ScheduledSlot] = []
    for post in posts:
        if current > end:
            break
        slots.append(_slot(post, current))
        current = current + step
    return slots


def calculate_daily_schedule(posts: List[BulkPost], config: BulkScheduleConfig) -> List[ScheduledSlot]:
    return _calculate_stepped(posts, config, timedelta(days=1))


def calculate_weekly_schedule(posts: List[BulkPost], config: BulkScheduleConfig) -> List[ScheduledSlot]:
    return _calculate_stepped(posts, config, timedelta(weeks=1))


def calculate_custom_interval_schedule(posts: List[BulkPost], config: BulkScheduleConfig) -> List[ScheduledSlot]:
    if not config.custom_interval_minutes or config.custom_interval_minutes <= 0:
        return []
    return _calculate_stepped(posts, config, timedelta(minutes=config.custom_interval_minutes))


def calculate_bulk_schedule(posts: List[BulkPost], config: BulkScheduleConfig) -> List[ScheduledSlot]:
    """Compute local slots for *posts*; may return fewer slots than posts."""
    calculators = {
        BulkFrequency.EVEN: calculate_even_distribution,
        BulkFrequency.DAILY: calculate_daily_schedule,
        BulkFrequency.WEEKLY: calculate_weekly_schedule,
        BulkFrequency.CUSTOM: calculate_custom_interval_schedule,
    }
    return calculators[config.frequency](posts, config)


def validate_bulk_config(
    config: BulkScheduleConfig,
    post_count: int,
    min_interval_minutes: int = 5,
) -> ValidationResult:
    """Check that *post_count* posts fit the range at the required spacing."""
    if post_count == 0:
        return ValidationResult(False, "At least one post is required")

    try:
        start, end = config.start, config.end
    except ScheduleValidationError as exc:
        return ValidationResult(False, str(exc))

    if end <= start:
        return ValidationResult(False, "End date/time must be after start date/time")

    custom = config.frequency is BulkFrequency.CUSTOM
    if custom and (not config.custom_interval_minutes or config.custom_interval_minutes <= 0):
        return ValidationResult(False, "Custom interval must be greater than 0")

    total_minutes = _total_minutes(config)
    if custom:
        if config.custom_interval_minutes * (post_count - 1) > total_minutes:
            return ValidationResult(
                False,
                "Not enough time in range to schedule all posts with the specified interval",
            )
    elif post_count > 1 and total_minutes < min_interval_minutes * (post_count - 1):
        return ValidationResult(
            False,
            f"Not enough time in range to schedule {post_count} posts "
            f"(minimum {min_interval_minutes} minutes between posts)",
        )

    return ValidationResult(True)


__all__ = [
    "BulkFrequency",
    "BulkScheduleConfig",
    "BulkPost",
    "ScheduledSlot",
    "BulkPostResult",
    "BulkScheduleResult",
    "calculate_even_distribution",
    "calculate_daily_schedule",
    "calculate_weekly_schedule",
    "calculate_custom_interval_schedule",
    "calculate_bulk_schedule",
    "validate_bulk_config",
]
