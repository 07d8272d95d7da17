"""General utility functions and helpers."""

import logging
from datetime import date, datetime, timezone
from typing import Optional

import pytz

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    """Get the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Normalize a datetime to timezone-aware UTC.

    Naive datetimes are treated as already being in UTC.

    Args:
        dt: Datetime to normalize

    Returns:
        Timezone-aware datetime in UTC
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def date_to_utc(value: date) -> datetime:
    """Convert a calendar date to UTC midnight of that date."""
    return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)


def to_timezone(dt: datetime, tz_name: Optional[str] = None) -> datetime:
    """Convert a datetime into a named timezone for display.

    Args:
        dt: Datetime to convert
        tz_name: IANA timezone name (e.g., 'America/Los_Angeles'); UTC when None

    Returns:
        Datetime expressed in the requested timezone
    """
    if not tz_name:
        return ensure_utc(dt)

    try:
        tz = pytz.timezone(tz_name)
    except pytz.UnknownTimeZoneError:
        logger.warning(f"Unknown timezone '{tz_name}', falling back to UTC")
        return ensure_utc(dt)

    return ensure_utc(dt).astimezone(tz)


def format_duration(seconds: int) -> str:
    """Format duration in seconds to human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted duration string
    """
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        minutes, remaining = divmod(seconds, 60)
        return f"{minutes}m" if remaining == 0 else f"{minutes}m {remaining}s"
    hours = seconds // 3600
    remaining_minutes = (seconds % 3600) // 60
    return f"{hours}h" if remaining_minutes == 0 else f"{hours}h {remaining_minutes}m"


def parse_iso_datetime(dt_string: Optional[str]) -> Optional[datetime]:
    """Parse an ISO datetime string into a UTC datetime.

    Args:
        dt_string: ISO datetime string (a trailing 'Z' is accepted)

    Returns:
        Parsed datetime or None if parsing fails
    """
    if not dt_string:
        return None

    try:
        if dt_string.endswith("Z"):
            dt_string = dt_string[:-1] + "+00:00"
        return ensure_utc(datetime.fromisoformat(dt_string))
    except (ValueError, TypeError) as e:
        logger.debug(f"Failed to parse datetime '{dt_string}': {e}")
        return None
