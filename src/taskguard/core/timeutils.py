"""
TaskGuard time helpers
All timestamps handled by the core are timezone-aware UTC.
"""

from datetime import datetime, time, timedelta, timezone
from typing import Callable

Clock = Callable[[], datetime]

# Returned as the reset time of quotas that never reset
UNLIMITED_RESET_TIME = datetime.max.replace(tzinfo=timezone.utc)


def utc_now() -> datetime:
    """Current time as an aware UTC datetime"""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def start_of_utc_day(value: datetime) -> datetime:
    """Midnight (UTC) of the day containing value"""
    return datetime.combine(ensure_utc(value).date(), time.min, tzinfo=timezone.utc)


def next_utc_midnight(value: datetime) -> datetime:
    return start_of_utc_day(value) + timedelta(days=1)
