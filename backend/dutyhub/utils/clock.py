"""Single UTC clock used for audit fields and code expiry checks.

SQLite hands datetimes back without tzinfo, so values read from the
database are interpreted as UTC before comparison.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive values; convert aware ones."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def expires_in(seconds: int, now: Optional[datetime] = None) -> datetime:
    return (now or utcnow()) + timedelta(seconds=seconds)


def is_expired(expiration: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """Return True when `expiration` is missing or already in the past."""
    if expiration is None:
        return True
    return as_utc(expiration) < (now or utcnow())
