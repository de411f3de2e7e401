"""UTC timestamp helpers shared across components."""

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Tuple


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Return dt in UTC; naive values are taken to already be UTC.

    Example:
        >>> ensure_utc(datetime(2025, 11, 4, 12, 0)).tzinfo == timezone.utc
        True
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_iso_datetime(iso_string: str) -> Optional[datetime]:
    """Parse ``2025-11-04``, ``2025-11-04T12:00:00`` or ``...Z`` / ``...+02:00``.

    Returns:
        Aware UTC datetime, or None if the string is empty or unparseable
    """
    if not iso_string or not iso_string.strip():
        return None

    cleaned = iso_string.strip()
    if cleaned.endswith("Z"):
        cleaned = cleaned[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(cleaned))
    except ValueError:
        return None


def format_timestamp(dt: datetime) -> str:
    """ISO 8601 UTC with a Z suffix and no microseconds."""
    return ensure_utc(dt).strftime("%Y-%m-%dT%H:%M:%SZ")


def day_bounds(start_day: date, end_day: date) -> Tuple[datetime, datetime]:
    """UTC datetimes covering start_day 00:00 up to (not including) the day after end_day."""
    start = datetime.combine(start_day, time.min, tzinfo=timezone.utc)
    end = datetime.combine(end_day + timedelta(days=1), time.min, tzinfo=timezone.utc)
    return start, end
