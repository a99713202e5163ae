"""Domain Utilities - time and normalization helpers.

All timestamps in the domain are timezone-aware UTC. Naive datetimes coming
from callers or storage are interpreted as UTC.

Security Impact:
    - No security impact - pure utility functions
"""

import re
from datetime import date, datetime, timezone
from typing import Optional

_NON_DIGITS = re.compile(r"\D")


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime.

    Naive values are assumed to already be in UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Strip tzinfo after converting to UTC (for TIMESTAMP columns)."""
    if value is None:
        return None
    return ensure_utc(value).replace(tzinfo=None)


def add_years(value: datetime, years: int) -> datetime:
    """Shift ``value`` by whole calendar years.

    February 29th maps to February 28th in non-leap target years.
    """
    try:
        return value.replace(year=value.year + years)
    except ValueError:
        return value.replace(year=value.year + years, day=28)


def years_between(start: date, end: date) -> int:
    """Completed years between two dates (age arithmetic)."""
    years = end.year - start.year
    if (end.month, end.day) < (start.month, start.day):
        years -= 1
    return years


def digits_only(value: str) -> str:
    return _NON_DIGITS.sub("", value or "")


def is_future(value, now: Optional[datetime] = None) -> bool:
    """True when a date or datetime lies after the current moment."""
    now = now or utc_now()
    if isinstance(value, datetime):
        return ensure_utc(value) > now
    return value > now.date()
