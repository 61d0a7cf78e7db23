"""
Timezone conversion for user-facing schedule times.

Users pick a local date (``YYYY-MM-DD``) and time (``HH:MM``) in an IANA
zone; jobs store the UTC instant.  Local times that do not exist (spring
forward gap) or exist twice (fall back overlap) are resolved with PEP 495
``fold=0``:

- gap: the wall time is read with the pre-transition offset, which lands
  the instant after the gap (``02:30`` in New York on a spring-forward
  day becomes ``03:30`` EDT).
- overlap: the first occurrence wins (``01:30`` on a fall-back day is EDT),
  so a post never goes out later than the first time the clock reads the
  chosen wall time.
"""

from datetime import datetime, timezone
from typing import List, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from postqueue.exceptions import ScheduleValidationError
from postqueue.utils import ensure_utc

DATE_FORMAT = "%Y-%m-%d"
TIME_FORMAT = "%H:%M"

COMMON_TIMEZONES: List[Tuple[str, str]] = [
    ("UTC", "UTC"),
    ("America/New_York", "Eastern Time (ET)"),
    ("America/Chicago", "Central Time (CT)"),
    ("America/Denver", "Mountain Time (MT)"),
    ("America/Los_Angeles", "Pacific Time (PT)"),
    ("America/Sao_Paulo", "Brasilia Time (BRT)"),
    ("Europe/London", "Greenwich Mean Time (GMT)"),
    ("Europe/Paris", "Central European Time (CET)"),
    ("Europe/Berlin", "Central European Time (CET)"),
    ("Asia/Dubai", "Gulf Standard Time (GST)"),
    ("Asia/Kolkata", "India Standard Time (IST)"),
    ("Asia/Tokyo", "Japan Standard Time (JST)"),
    ("Asia/Shanghai", "China Standard Time (CST)"),
    ("Australia/Sydney", "Australian Eastern Time (AET)"),
]


def get_zone(name: str) -> ZoneInfo:
    """Resolve an IANA zone name.

    Raises:
        ScheduleValidationError: If *name* is not a known zone.
    """
    if not name or not isinstance(name, str):
        raise ScheduleValidationError(f"Invalid timezone: {name!r}")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ScheduleValidationError(f"Invalid timezone: {name}") from exc


def is_valid_timezone(name: str) -> bool:
    try:
        get_zone(name)
    except ScheduleValidationError:
        return False
    return True


def parse_local(date_string: str, time_string: str) -> datetime:
    """Parse ``YYYY-MM-DD`` + ``HH:MM`` into a naive local datetime."""
    try:
        return datetime.strptime(f"{date_string} {time_string}", f"{DATE_FORMAT} {TIME_FORMAT}")
    except (TypeError, ValueError) as exc:
        raise ScheduleValidationError(
            f"Invalid date/time '{date_string} {time_string}': expected YYYY-MM-DD and HH:MM"
        ) from exc


def convert_to_utc(date_string: str, time_string: str, tz_name: str = "UTC") -> datetime:
    """Convert a local date and time in *tz_name* to an aware UTC datetime.

    Raises:
        ScheduleValidationError: On a malformed date/time or unknown zone.
    """
    zone = get_zone(tz_name)
    local = parse_local(date_string, time_string).replace(tzinfo=zone, fold=0)
    return local.astimezone(timezone.utc)


def convert_from_utc(instant: datetime, tz_name: str = "UTC") -> Tuple[str, str]:
    """Split a UTC instant into the local ``(date, time)`` strings of *tz_name*."""
    local = ensure_utc(instant).astimezone(get_zone(tz_name))
    return local.strftime(DATE_FORMAT), local.strftime(TIME_FORMAT)


def format_in_timezone(
    instant: datetime,
    tz_name: str = "UTC",
    fmt: str = "%Y-%m-%d %H:%M",
) -> str:
    return ensure_utc(instant).astimezone(get_zone(tz_name)).strftime(fmt)


__all__ = [
    "COMMON_TIMEZONES",
    "get_zone",
    "is_valid_timezone",
    "parse_local",
    "convert_to_utc",
    "convert_from_utc",
    "format_in_timezone",
]
