"""Datetime utilities for consistent timezone handling across the application.

Billing timestamps are stored as naive UTC (``TIMESTAMP WITHOUT TIME ZONE``), so
application logic compares naive UTC datetimes as well.
"""

from datetime import datetime, timezone
from typing import Optional, Union


def utc_now() -> datetime:
    """Get current UTC time as an aware datetime.

    Returns:
        Current datetime in UTC timezone.
    """
    return datetime.now(timezone.utc)


def utc_now_naive() -> datetime:
    """Get current UTC time as naive datetime for database operations.

    Returns:
        Current datetime in UTC as naive datetime (no timezone info).
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to naive UTC; naive input is assumed to already be UTC."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def from_timestamp(ts: Optional[Union[int, float]]) -> Optional[datetime]:
    """Convert a provider unix timestamp (seconds) to naive UTC."""
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


def to_timestamp(dt: datetime) -> int:
    """Convert a naive UTC (or aware) datetime to a unix timestamp in seconds."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())
