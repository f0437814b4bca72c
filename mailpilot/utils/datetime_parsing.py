"""Datetime helpers for Gmail values and database round-trips."""

from __future__ import annotations

from datetime import datetime, timezone


def as_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes as UTC (SQLite drops tzinfo on read)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_gmail_millis(value: object | None) -> datetime | None:
    """Parse Gmail epoch-millisecond strings (watch expiration, internalDate)."""
    if value is None:
        return None
    try:
        millis = int(str(value))
    except (TypeError, ValueError):
        return None
    try:
        return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None
