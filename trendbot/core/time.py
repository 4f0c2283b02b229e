"""Time and timezone utilities."""

from datetime import datetime, timezone
from typing import Optional


def normalize_timezone(dt: datetime, target_tz: timezone = timezone.utc) -> datetime:
    """
    Normalize datetime to target timezone.

    Naive datetimes (e.g. read back from SQLite) are assumed to be UTC.

    Args:
        dt: Input datetime
        target_tz: Target timezone (default UTC)

    Returns:
        Datetime in target timezone
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)

    return dt.astimezone(target_tz)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Normalize an optional datetime to UTC."""
    if dt is None:
        return None
    return normalize_timezone(dt)


def get_current_utc_time() -> datetime:
    """Get current time in UTC."""
    return datetime.now(timezone.utc)


def hours_between(earlier: datetime, later: datetime) -> float:
    """Hours elapsed from ``earlier`` to ``later`` (negative if reversed)."""
    delta = normalize_timezone(later) - normalize_timezone(earlier)
    return delta.total_seconds() / 3600
