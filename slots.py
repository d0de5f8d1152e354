"""Time slicing: map a date and a time-of-day range onto discrete slot numbers.

A slot is ``floor(minutes_since_midnight_utc / granularity)``. The range
``[start, end)`` covers slots ``floor(start / g)`` through ``ceil(end / g) - 1``.
Everything here is pure and timezone-free: aware inputs are converted to UTC,
naive inputs are taken to already be UTC.
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Iterator, Optional, Union

SLOT_MINUTES = 15
MINUTES_PER_DAY = 24 * 60

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

TimeLike = Union[time, datetime, str]
DateLike = Union[date, datetime, str]


def _parse_time(value: str) -> Union[time, datetime]:
    text = value.strip()
    if "T" in text:
        return datetime.fromisoformat(text)
    return time.fromisoformat(text)


def minutes_since_midnight(value: TimeLike) -> int:
    """Minutes since midnight UTC for a time, datetime or ISO string."""
    if isinstance(value, str):
        value = _parse_time(value)

    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.hour * 60 + value.minute

    minutes = value.hour * 60 + value.minute
    offset = value.utcoffset()
    if offset is not None:
        minutes = (minutes - int(offset.total_seconds() // 60)) % MINUTES_PER_DAY
    return minutes


def date_key(value: DateLike) -> str:
    """Canonical ``YYYY-MM-DD`` (UTC) for a date, datetime or ISO string."""
    if isinstance(value, str):
        text = value.strip()
        value = datetime.fromisoformat(text) if "T" in text else date.fromisoformat(text)
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        value = value.date()
    return value.isoformat()


def slots_for(
    day: DateLike,
    start: TimeLike,
    end: TimeLike,
    granularity: int = SLOT_MINUTES,
) -> tuple[int, ...]:
    """Ordered, contiguous slot numbers covering ``[start, end)`` on ``day``.

    The date does not change the numbering; it is accepted so that callers
    always slice a concrete (date, range) pair. An empty or inverted range
    yields an empty tuple, which callers must treat as a validation error.
    """
    if granularity <= 0:
        raise ValueError("granularity must be positive")
    date_key(day)

    start_minutes = minutes_since_midnight(start)
    end_minutes = minutes_since_midnight(end)
    if start_minutes >= end_minutes:
        return ()

    first = start_minutes // granularity
    last = -(-end_minutes // granularity)  # ceil
    return tuple(range(first, last))


def slot_bounds(slot: int, granularity: int = SLOT_MINUTES) -> tuple[time, time]:
    start = slot * granularity
    end = min(start + granularity, MINUTES_PER_DAY - 1)
    return time(start // 60, start % 60), time(end // 60, end % 60)


def slots_per_day(granularity: int = SLOT_MINUTES) -> int:
    return -(-MINUTES_PER_DAY // granularity)


def dates_between(start: date, end: date, weekday: Optional[str] = None) -> Iterator[date]:
    """Every date in ``[start, end]``, optionally only those on ``weekday``."""
    wanted = None
    if weekday:
        wanted = WEEKDAYS.index(weekday.strip().lower())

    current = start
    while current <= end:
        if wanted is None or current.weekday() == wanted:
            yield current
        current += timedelta(days=1)
