"""
Shared utility functions used throughout the postqueue codebase.

Provides:
    - utc_now(): Timezone-aware UTC datetime (for Supabase TIMESTAMPTZ columns)
    - generate_id(): UUID4 string generator (for database primary keys)
    - ensure_utc(dt): Convert any datetime to timezone-aware UTC
    - parse_timestamp(value): Parse a TIMESTAMPTZ value coming back from Supabase
    - truncate(text, limit): Shorten text for previews and conflict reports
    - Clock / SystemClock / ManualClock: the single injectable time source
"""

from datetime import datetime, timedelta, timezone
import uuid
from typing import Optional, Protocol, Union


# ===========================================================================
# TIMEZONE UTILITIES
# All timestamps stored in Supabase must be timezone-aware (TIMESTAMPTZ)
# ===========================================================================


def utc_now() -> datetime:
    """
    Get current UTC time as timezone-aware datetime.

    ALWAYS use this (or an injected :class:`Clock`) instead of
    ``datetime.now()`` or ``datetime.utcnow()`` for Supabase compatibility
    (TIMESTAMPTZ columns).

    Returns:
        Timezone-aware datetime in UTC.
    """
    return datetime.now(timezone.utc)


def generate_id() -> str:
    """
    Generate a unique ID for database records.

    Returns:
        A unique UUID string (compatible with Supabase UUID type).
    """
    return str(uuid.uuid4())


def ensure_utc(dt: datetime) -> datetime:
    """
    Ensure a datetime is timezone-aware in UTC.

    Args:
        dt: Datetime to convert (naive or aware).

    Returns:
        Timezone-aware datetime in UTC.
    """
    if dt.tzinfo is None:
        # Assume naive datetime is UTC
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """
    Parse a TIMESTAMPTZ value returned by PostgREST into an aware UTC datetime.

    PostgREST emits ISO-8601 strings, sometimes with a trailing ``Z`` that
    older ``datetime.fromisoformat`` implementations reject.

    Args:
        value: ISO string, datetime, or ``None``.

    Returns:
        Timezone-aware UTC datetime, or ``None`` when *value* is empty.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))


def truncate(text: str, limit: int = 50) -> str:
    """Shorten *text* to *limit* characters, appending ``...`` when cut."""
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


# ===========================================================================
# CLOCK
# Every "now" in the scheduling service, job queue, circuit breaker and
# rate limiter comes from one of these, so tests can move time explicitly.
# ===========================================================================


class Clock(Protocol):
    """Time source protocol: ``now()`` returns an aware UTC datetime."""

    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall-clock time source backed by :func:`utc_now`."""

    def now(self) -> datetime:
        return utc_now()


class ManualClock:
    """Deterministic time source that only moves when told to.

    Usage::

        clock = ManualClock(datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc))
        clock.advance(minutes=1)
    """

    def __init__(self, start: Optional[datetime] = None) -> None:
        self._now = ensure_utc(start) if start is not None else utc_now()

    def now(self) -> datetime:
        return self._now

    def set(self, value: datetime) -> None:
        self._now = ensure_utc(value)

    def advance(self, delta: Optional[timedelta] = None, **kwargs: float) -> datetime:
        """Move the clock forward by *delta* (or ``timedelta(**kwargs)``)."""
        step = delta if delta is not None else timedelta(**kwargs)
        self._now = self._now + step
        return self._now


__all__ = [
    "utc_now",
    "generate_id",
    "ensure_utc",
    "parse_timestamp",
    "truncate",
    "Clock",
    "SystemClock",
    "ManualClock",
]
