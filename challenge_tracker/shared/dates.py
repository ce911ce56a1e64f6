"""Calendar helpers shared by the scoring and lifecycle code.

Challenge days are counted from the challenge start date: day 1 is the start
date itself, week 1 spans days 1-7.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Union

DateLike = Union[date, datetime, str]


def to_day(value: DateLike) -> date:
    """Truncate a datetime, date or ISO string to a calendar day.

    Datetimes keep the calendar day of their own offset; the time of day
    is dropped without converting to UTC.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return to_day(datetime.fromisoformat(value))
        except ValueError:
            return date.fromisoformat(value[:10])
    raise TypeError(f"Cannot interpret {value!r} as a date")


def days_since_start(start_date: date, day: date) -> int:
    return (day - start_date).days


def challenge_day_number(start_date: date, day: date) -> int:
    """1-based day number within the challenge."""
    return days_since_start(start_date, day) + 1


def challenge_week(start_date: date, day: date) -> int:
    """1-based week number within the challenge, 0 before the start."""
    offset = days_since_start(start_date, day)
    if offset < 0:
        return 0
    return offset // 7 + 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
