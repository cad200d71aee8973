"""Time helpers shared by models and services."""

from datetime import date, datetime, timedelta, timezone


def utcnow() -> datetime:
    """Return the current timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat those as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_today(now: datetime | None = None) -> date:
    """Calendar day (UTC) used to bucket mileage readings."""
    return (as_utc(now) if now else utcnow()).date()


def days_between(start: date, end: date) -> list[date]:
    """Days strictly after ``start`` and strictly before ``end``."""
    days = []
    current = start + timedelta(days=1)
    while current < end:
        days.append(current)
        current += timedelta(days=1)
    return days
