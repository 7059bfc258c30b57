"""
Datetime helper utilities to ensure consistent timezone handling across the application.

All session, subscription and wallet timestamps are stored as naive UTC
(DateTime(timezone=False)). These helpers keep timezone-aware values from
leaking into those columns and comparisons.
"""

from datetime import datetime, timezone
from typing import Optional
import logging

logger = logging.getLogger(__name__)


def ensure_naive_datetime(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Convert timezone-aware datetime to naive UTC datetime.

    Args:
        dt: Datetime that may be timezone-aware or naive

    Returns:
        Naive datetime in UTC, or None if input is None

    Example:
        >>> aware_dt = datetime.now(timezone.utc)
        >>> naive_dt = ensure_naive_datetime(aware_dt)
        >>> assert naive_dt.tzinfo is None
    """
    if dt is None:
        return None

    if dt.tzinfo is not None:
        utc_dt = dt.astimezone(timezone.utc)
        return utc_dt.replace(tzinfo=None)

    return dt


def get_naive_utc_now() -> datetime:
    """Current UTC time without timezone info"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def whole_minutes_between(start: Optional[datetime], end: Optional[datetime]) -> int:
    """
    Whole minutes elapsed from start to end, floored, never negative.

    Returns 0 when start is missing (e.g. a session that was never activated).
    """
    if start is None or end is None:
        return 0
    seconds = (ensure_naive_datetime(end) - ensure_naive_datetime(start)).total_seconds()
    if seconds <= 0:
        return 0
    return int(seconds // 60)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    """Serialize a naive UTC datetime as ISO-8601 with a Z suffix"""
    if dt is None:
        return None
    return ensure_naive_datetime(dt).isoformat() + "Z"
