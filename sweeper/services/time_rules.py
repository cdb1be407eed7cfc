"""
Time rules for pricing and tracking.
Handles weekend/holiday/rush-hour classification and UTC normalisation.
"""
from datetime import date, datetime, time
from typing import Iterable, Tuple, Union
import pytz


def utc_now() -> datetime:
    return datetime.now(pytz.UTC)


def ensure_utc(dt: datetime) -> datetime:
    """
    Normalise a datetime to timezone-aware UTC.

    Naive datetimes are assumed to already be UTC.
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=pytz.UTC)
    return dt.astimezone(pytz.UTC)


def parse_date(value: Union[str, date]) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(value.split('T')[0])


def parse_time(value: Union[str, time]) -> time:
    if isinstance(value, time):
        return value
    return time.fromisoformat(value)


def is_weekend(day: date) -> bool:
    """Saturday or Sunday."""
    return day.weekday() >= 5


def is_holiday(day: date, holidays: Iterable[date]) -> bool:
    return day in set(holidays)


def is_rush_hour(at: time, windows: Iterable[Tuple[int, int]]) -> bool:
    """
    Check if a local time falls inside any rush window.

    Windows are whole hours, start inclusive and end exclusive, so (6, 9)
    covers 06:00 through 08:59.
    """
    for start, end in windows:
        if start <= at.hour < end:
            return True
    return False


def combine_date_time(date_val: date, time_val: time, timezone_str: str) -> datetime:
    """
    Combine a local date and time, then convert to UTC.

    Args:
        date_val: Date object
        time_val: Time object
        timezone_str: Timezone string (e.g., "America/Chicago")

    Returns:
        UTC datetime (timezone-aware)
    """
    tz = pytz.timezone(timezone_str)
    local_dt = tz.localize(datetime.combine(date_val, time_val))
    return local_dt.astimezone(pytz.UTC)
