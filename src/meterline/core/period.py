"""
Period Clock

A billing period is a calendar month identified by its first day. All period
arithmetic runs in UTC; naive datetimes are interpreted as UTC so a tenant's
periods never mix conventions.
"""

from datetime import date, datetime, timezone
from typing import Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(now: datetime) -> datetime:
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def current_period_start(now: Optional[datetime] = None) -> date:
    """First day of the calendar month containing ``now``."""
    current = as_utc(now or utcnow())
    return date(current.year, current.month, 1)


def next_period_start(period_start: date) -> date:
    if period_start.month == 12:
        return date(period_start.year + 1, 1, 1)
    return date(period_start.year, period_start.month + 1, 1)


def period_bounds(period_start: date) -> Tuple[date, date]:
    """Half-open bounds [start, end) of the period beginning at ``period_start``."""
    start = date(period_start.year, period_start.month, 1)
    return start, next_period_start(start)


def previous_period(now: Optional[datetime] = None) -> Tuple[date, date]:
    """Bounds of the most recently closed period."""
    end = current_period_start(now)
    if end.month == 1:
        start = date(end.year - 1, 12, 1)
    else:
        start = date(end.year, end.month - 1, 1)
    return start, end


def period_start_datetime(period_start: date) -> datetime:
    return datetime(period_start.year, period_start.month, period_start.day, tzinfo=timezone.utc)
