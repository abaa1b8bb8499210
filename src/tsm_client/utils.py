"""
Utility functions for the time-series store client.

Includes time parsing helpers used to derive the row timestamp of a point.
"""

from datetime import datetime, timezone
from typing import Optional, Union

# Epoch values above this are taken as milliseconds
_EPOCH_MS_THRESHOLD = 100_000_000_000


def parse_datetime(dt: Union[str, datetime]) -> datetime:
    """Parse datetime from string or return datetime object."""
    if isinstance(dt, str):
        return datetime.fromisoformat(dt.replace("Z", "+00:00"))
    return dt


def parse_point_time(raw: Optional[str]) -> Optional[datetime]:
    """Parse a point timestamp given as ISO-8601 or epoch seconds/milliseconds.

    Naive values are taken as UTC. Returns None when the value is missing or
    cannot be parsed.
    """
    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None

    try:
        epoch = float(value)
    except ValueError:
        epoch = None

    try:
        if epoch is not None:
            if abs(epoch) >= _EPOCH_MS_THRESHOLD:
                epoch = epoch / 1000.0
            return datetime.fromtimestamp(epoch, tz=timezone.utc)
        parsed = parse_datetime(value)
    except (ValueError, OverflowError, OSError):
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
