"""
Timezone utilities for gym-local attendance days.

Attendance rows are keyed by the calendar day in the gym's own timezone, while
every stored timestamp stays in UTC.
"""

import calendar
import os
from datetime import date, datetime, timezone
from typing import Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

load_dotenv()


def get_default_timezone() -> str:
    """
    Get the timezone used for gyms that have none configured.

    Returns:
        str: IANA timezone name, from DEFAULT_GYM_TIMEZONE or Asia/Kolkata
    """
    return os.getenv("DEFAULT_GYM_TIMEZONE", "Asia/Kolkata")


def validate_timezone(tz: Optional[str]) -> bool:
    if not tz:
        return False
    try:
        ZoneInfo(tz)
        return True
    except (ZoneInfoNotFoundError, ValueError):
        return False


def ensure_timezone_aware(dt: datetime) -> datetime:
    """
    Ensure a datetime is timezone-aware, treating naive values as UTC.

    SQLite hands back naive datetimes even for columns written with tzinfo.
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def from_utc_to_local(utc_dt: datetime, tz: Optional[str]) -> datetime:
    """
    Convert a UTC datetime to local time in the given timezone.

    Args:
        utc_dt: UTC datetime (naive values are assumed UTC)
        tz: IANA timezone string; falls back to the default gym timezone if invalid

    Returns:
        datetime: Local, timezone-aware datetime
    """
    if not validate_timezone(tz):
        tz = get_default_timezone()
    return ensure_timezone_aware(utc_dt).astimezone(ZoneInfo(tz))


def local_date(utc_dt: datetime, tz: Optional[str]) -> date:
    return from_utc_to_local(utc_dt, tz).date()


def local_hhmm(utc_dt: datetime, tz: Optional[str]) -> str:
    return from_utc_to_local(utc_dt, tz).strftime("%H:%M")


def month_bounds(year: int, month: int) -> Tuple[date, date]:
    """First and last calendar day of a month."""
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last_day)


def format_utc_datetime(dt: Optional[datetime]) -> Optional[str]:
    """
    Format a datetime as ISO 8601 in UTC with a 'Z' suffix.

    Naive datetimes are assumed to already be UTC.
    """
    if dt is None:
        return None

    iso_string = ensure_timezone_aware(dt).astimezone(timezone.utc).isoformat()
    if iso_string.endswith("+00:00"):
        return iso_string[:-6] + "Z"
    return iso_string
