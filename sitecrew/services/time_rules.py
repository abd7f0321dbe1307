"""
Time and timezone helpers.
Work days are calendar dates in the project's timezone.
"""
from datetime import date, datetime, time
from typing import Optional
import pytz
from ..config import settings


def utc_now() -> datetime:
    return datetime.now(pytz.UTC)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Make a datetime timezone-aware UTC.
    Naive values (as returned by SQLite) are assumed to already be UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=pytz.UTC)
    return dt.astimezone(pytz.UTC)


def project_timezone(tz_name: Optional[str]) -> str:
    """Return a valid timezone name, falling back to TZ_DEFAULT."""
    if tz_name:
        try:
            pytz.timezone(tz_name)
            return tz_name
        except pytz.UnknownTimeZoneError:
            pass
    return settings.tz_default


def local_today(tz_name: Optional[str], now: Optional[datetime] = None) -> date:
    """
    Calendar date in the given timezone.

    Args:
        tz_name: Timezone name (falls back to TZ_DEFAULT)
        now: Reference instant (defaults to the current UTC time)

    Returns:
        Local date
    """
    tz = pytz.timezone(project_timezone(tz_name))
    return as_utc(now or utc_now()).astimezone(tz).date()


def is_within_quiet_hours(start: str, end: str, tz_name: str, now: Optional[datetime] = None) -> bool:
    """
    Check if the local time falls in a HH:MM-HH:MM window.
    Windows that span midnight are supported.
    """
    tz = pytz.timezone(project_timezone(tz_name))
    current = as_utc(now or utc_now()).astimezone(tz).time()
    start_time = time.fromisoformat(start)
    end_time = time.fromisoformat(end)
    if start_time <= end_time:
        return start_time <= current <= end_time
    return current >= start_time or current <= end_time
