"""Calendar arithmetic shared by loans, subscriptions and the sweep."""
from __future__ import annotations

import calendar
import math
from datetime import date, datetime, time, timedelta

SECONDS_PER_DAY = 86400


def _require_int(n) -> int:
    if isinstance(n, bool) or not isinstance(n, int):
        raise TypeError(f"expected an integer count, got {n!r}")
    return n


def days_between(start: datetime, end: datetime) -> int:
    """Whole days from ``start`` to ``end``, rounding any partial day up.

    ``ceil((end - start) / 86400s)``: 1 second past a day boundary is a full day.
    """
    if not isinstance(start, datetime) or not isinstance(end, datetime):
        raise TypeError("days_between expects two datetime values")
    return math.ceil((end - start).total_seconds() / SECONDS_PER_DAY)


def add_days(value: date, n: int) -> date:
    if not isinstance(value, date):
        raise TypeError(f"expected a date or datetime, got {value!r}")
    return value + timedelta(days=_require_int(n))


def add_months(value: date, n: int) -> date:
    """Add ``n`` calendar months.

    A day that does not exist in the target month rolls forward into the next
    month (Jan 31 + 1 month is Mar 3 in a common year).
    """
    if not isinstance(value, date):
        raise TypeError(f"expected a date or datetime, got {value!r}")
    _require_int(n)
    month_index = value.year * 12 + (value.month - 1) + n
    year, month = divmod(month_index, 12)
    month += 1
    if not 1 <= year <= 9999:
        raise ValueError(f"adding {n} months to {value} leaves the supported range")
    first = value.replace(year=year, month=month, day=1)
    days_in_month = calendar.monthrange(year, month)[1]
    if value.day <= days_in_month:
        return first.replace(day=value.day)
    return first + timedelta(days=value.day - 1)


def start_of_day(value: datetime) -> datetime:
    if not isinstance(value, datetime):
        raise TypeError(f"expected a datetime, got {value!r}")
    return datetime.combine(value.date(), time.min, tzinfo=value.tzinfo)


def to_date(value) -> date:
    """Normalize a date, datetime or ISO string to a ``date``."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        return date.fromisoformat(value[:10])
    raise TypeError(f"cannot interpret {value!r} as a date")


def to_datetime(value) -> datetime:
    """Normalize a datetime or ISO string to a ``datetime``."""
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        return datetime.fromisoformat(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min)
    raise TypeError(f"cannot interpret {value!r} as a datetime")
