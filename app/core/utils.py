"""
Utility functions for the application.
"""
from datetime import datetime, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalise a datetime loaded from the database to aware UTC.

    Some drivers (SQLite) hand back naive values even for timezone-aware
    columns; everything we store is UTC, so naive values are tagged as such.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_iso_datetime(value: Any) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp as returned by the marketplace/payment APIs.

    Accepts a trailing 'Z' and returns aware UTC, or None when unparseable.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def truncate(text: Optional[str], limit: int = 2000) -> Optional[str]:
    if text is None:
        return None
    return text[:limit]
