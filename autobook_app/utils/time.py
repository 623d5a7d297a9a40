"""
Timestamp utilities for session bookkeeping.

Persisted timestamps are always timezone-aware UTC datetimes serialized as
ISO8601 strings. Deadline arithmetic is done on the event loop clock and does
not go through these helpers.
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Return the current wall-clock time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def format_timestamp(ts: Optional[datetime]) -> Optional[str]:
    """
    Format a timestamp for persistence and logging.

    Args:
        ts: Timestamp to format, naive values are assumed to be UTC

    Returns:
        ISO8601 formatted string, or None when no timestamp is given
    """
    if ts is None:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.isoformat()


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    Parse a persisted ISO8601 timestamp.

    Args:
        value: ISO8601 string as written by format_timestamp

    Returns:
        Aware UTC datetime, or None for empty values
    """
    if not value:
        return None
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts

