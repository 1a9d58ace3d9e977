"""
UTC time helpers shared by partitioning, rollups and retention.

All timestamps inside the core are timezone-aware UTC. Naive values coming
from the boundary are interpreted as UTC.

CHANGELOG:
- 2026-10-05: Initial creation
"""

from datetime import UTC, date, datetime, timedelta


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(tz=UTC)


def ensure_utc(ts: datetime) -> datetime:
    """Return *ts* as an aware UTC datetime (naive input is taken as UTC)."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=UTC)
    return ts.astimezone(UTC)


def month_start(ts: datetime) -> datetime:
    """Return midnight UTC of the first day of the month containing *ts*."""
    ts = ensure_utc(ts)
    return ts.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def add_months(start: datetime, months: int) -> datetime:
    """Shift a month start by *months* calendar months."""
    index = start.year * 12 + (start.month - 1) + months
    return start.replace(year=index // 12, month=index % 12 + 1, day=1)


def floor_hour(ts: datetime) -> datetime:
    """Truncate *ts* to the start of its hour."""
    return ensure_utc(ts).replace(minute=0, second=0, microsecond=0)


def floor_day(ts: datetime) -> datetime:
    """Truncate *ts* to midnight UTC."""
    return ensure_utc(ts).replace(hour=0, minute=0, second=0, microsecond=0)


def day_bounds(day: date) -> tuple[datetime, datetime]:
    """Return the ``[start, end)`` UTC datetimes of a calendar day."""
    start = datetime(day.year, day.month, day.day, tzinfo=UTC)
    return start, start + timedelta(days=1)
