"""
Time helpers — the engine works in aware UTC datetimes throughout.
"""
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """
    Normalise a datetime read back from the database to aware UTC.

    SQLite drops tzinfo on TIMESTAMP columns; values are always written in UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
