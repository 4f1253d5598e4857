"""
UTC helpers shared by models and services.

SQLite drops tzinfo on DateTime(timezone=True) columns, so values read back
are naive. Everything in this project is stored in UTC, which makes
re-attaching the zone safe.
"""

from datetime import date, datetime, time, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Return `value` as an aware UTC datetime."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def start_of_day(value: date | datetime) -> datetime:
    if isinstance(value, datetime):
        value = as_utc(value).date()
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def end_of_day(value: date | datetime) -> datetime:
    if isinstance(value, datetime):
        value = as_utc(value).date()
    return datetime.combine(value, time.max, tzinfo=timezone.utc)
