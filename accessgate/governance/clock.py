"""UTC time helpers shared by the governance stores."""

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalise to aware UTC.

    Naive values (e.g. read back from SQLite) are taken to be UTC; aware
    values with any other offset are converted, since SQLite stores the
    wall-clock time and drops the offset.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
