"""
Operating-hours gating for automatic attendance.

Times of day are handled as minutes since local midnight. A window whose end
is earlier than its start wraps past midnight (e.g. 22:00 - 02:00).
"""

import re
from datetime import datetime
from datetime import time as datetime_time
from typing import Optional, Tuple, Union

DEFAULT_OPEN_MINUTES = 5 * 60  # 05:00
DEFAULT_CLOSE_MINUTES = 23 * 60  # 23:00

_TWELVE_HOUR = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*(AM|PM)\s*$", re.IGNORECASE)
_TWENTY_FOUR_HOUR = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*$")


def parse_time_of_day(value: Optional[str]) -> Optional[int]:
    """
    Parse "HH:MM" (24h) or "HH:MM AM/PM" into minutes since midnight.

    Returns None for empty or unparseable input.
    """
    if not value:
        return None

    match = _TWELVE_HOUR.match(value)
    if match:
        hours, minutes = int(match.group(1)), int(match.group(2))
        if not 1 <= hours <= 12 or minutes > 59:
            return None
        period = match.group(3).upper()
        if period == "PM" and hours != 12:
            hours += 12
        if period == "AM" and hours == 12:
            hours = 0
        return hours * 60 + minutes

    match = _TWENTY_FOUR_HOUR.match(value)
    if match:
        hours, minutes = int(match.group(1)), int(match.group(2))
        if hours > 23 or minutes > 59:
            return None
        return hours * 60 + minutes

    return None


def minutes_since_midnight(now: Union[datetime, datetime_time]) -> int:
    return now.hour * 60 + now.minute


def format_minutes(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def resolve_window(start: Optional[str], end: Optional[str]) -> Tuple[int, int]:
    """Return the (open, close) minutes for a configured window, or the 05:00-23:00 default."""
    open_minutes = parse_time_of_day(start)
    close_minutes = parse_time_of_day(end)
    if open_minutes is None or close_minutes is None:
        return DEFAULT_OPEN_MINUTES, DEFAULT_CLOSE_MINUTES
    return open_minutes, close_minutes


def is_within_window(
    start: Optional[str],
    end: Optional[str],
    now_local: Union[datetime, datetime_time],
) -> bool:
    """Check a local wall-clock time against an inclusive, possibly overnight, window."""
    open_minutes, close_minutes = resolve_window(start, end)
    current = minutes_since_midnight(now_local)

    if close_minutes < open_minutes:
        return current >= open_minutes or current <= close_minutes

    return open_minutes <= current <= close_minutes


def describe_window(start: Optional[str], end: Optional[str]) -> str:
    open_minutes, close_minutes = resolve_window(start, end)
    return f"{format_minutes(open_minutes)} - {format_minutes(close_minutes)}"
