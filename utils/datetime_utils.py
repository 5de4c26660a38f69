"""
Datetime utilities for consistent timezone handling across the application.
All datetime operations should use timezone-aware datetimes.
"""

from datetime import date, datetime, time, timezone
from typing import Union
from zoneinfo import ZoneInfo


def utc_now() -> datetime:
    """
    Get current UTC time as timezone-aware datetime.

    Returns:
        Current UTC datetime with timezone info
    """
    return datetime.now(timezone.utc)


def local_now(tz_name: str) -> datetime:
    """Current wall-clock time in the studio's timezone."""
    return datetime.now(ZoneInfo(tz_name))


def parse_iso_datetime(iso_string: str) -> datetime:
    """
    Parse ISO format datetime string to timezone-aware datetime.
    Handles both 'Z' suffix and '+00:00' timezone formats.

    Raises:
        ValueError: If datetime string cannot be parsed
    """
    normalized = iso_string.replace("Z", "+00:00")

    try:
        dt = datetime.fromisoformat(normalized)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    except ValueError as e:
        raise ValueError(f"Invalid datetime string: {iso_string}") from e


def to_iso_string(dt: datetime) -> str:
    """
    Convert datetime to ISO format string.
    Naive datetimes are assumed to be UTC.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)

    return dt.isoformat()


def from_unix_timestamp(ts: Union[int, float]) -> datetime:
    """Convert a provider epoch timestamp (seconds) to an aware UTC datetime."""
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def parse_date(value: Union[str, date]) -> date:
    """Parse a YYYY-MM-DD string (dates pass through unchanged)."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(value.strip())
    except (AttributeError, ValueError) as e:
        raise ValueError(f"Invalid date: {value!r}") from e


def parse_time_of_day(value: Union[str, time]) -> time:
    """Parse an HH:MM (or HH:MM:SS) string into a time of day."""
    if isinstance(value, time):
        return value.replace(second=0, microsecond=0)
    try:
        parsed = time.fromisoformat(value.strip())
    except (AttributeError, ValueError) as e:
        raise ValueError(f"Invalid time of day: {value!r}") from e
    return parsed.replace(second=0, microsecond=0)


def format_time_of_day(value: time) -> str:
    """Format a time of day as HH:MM."""
    return value.strftime("%H:%M")
