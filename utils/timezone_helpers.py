from __future__ import annotations

from datetime import date, datetime, time, timezone
from typing import Any


def utc_now() -> datetime:
    """Current UTC time as a naive datetime (the form stored in the database)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utc_today() -> date:
    return utc_now().date()


def parse_date(value: Any) -> date | None:
    """Parse a ``YYYY-MM-DD`` string (or pass a date through). Returns None when invalid."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError:
        return None


def day_start(value: date) -> datetime:
    return datetime.combine(value, time.min)


def day_end(value: date) -> datetime:
    return datetime.combine(value, time(23, 59, 59))


def format_long_date(value: date | None) -> str:
    """Render a date the way letters to parents show it, e.g. ``Thursday 5 March 2026``."""
    if not value:
        return ""
    return f"{value.strftime('%A')} {value.day} {value.strftime('%B %Y')}"


def isoformat_or_none(value: Any) -> str | None:
    if not value:
        return None
    return value.isoformat()
