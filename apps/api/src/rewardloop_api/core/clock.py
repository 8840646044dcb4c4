"""UTC time helpers shared by services, jobs and workers."""

from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Normalise database timestamps; SQLite hands back naive values."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def start_of_day(value: datetime) -> datetime:
    aware = as_utc(value)
    assert aware is not None
    return aware.replace(hour=0, minute=0, second=0, microsecond=0)


__all__ = ["as_utc", "start_of_day", "utcnow"]
