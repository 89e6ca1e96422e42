from __future__ import annotations

from datetime import date, timedelta
from typing import Iterable

DAY_NAMES = [
    "Sunday",
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
]


def day_of_week(value: date) -> int:
    """Day number with Sunday as 0, the numbering recurrence rules store."""
    return (value.weekday() + 1) % 7


def day_name(dow: int) -> str:
    if 0 <= dow < len(DAY_NAMES):
        return DAY_NAMES[dow]
    return "Unknown"


def generate_dates_for_day(start_date: date, end_date: date, dow: int) -> list[date]:
    """Every ``dow`` weekday in ``[start_date, end_date]``, both ends inclusive."""
    if not 0 <= dow <= 6:
        raise ValueError(f"day of week must be 0-6, got {dow}")
    offset = (dow - day_of_week(start_date)) % 7
    current = start_date + timedelta(days=offset)
    dates = []
    while current <= end_date:
        dates.append(current)
        current += timedelta(days=7)
    return dates


def count_lessons(
    start_date: date,
    end_date: date,
    days_of_week: Iterable[int],
    closures: set[date] | frozenset[date] = frozenset(),
) -> int:
    """Lessons a weekly recurrence yields in a date range once closure dates are removed."""
    total = 0
    for dow in days_of_week:
        total += sum(1 for d in generate_dates_for_day(start_date, end_date, dow) if d not in closures)
    return total
