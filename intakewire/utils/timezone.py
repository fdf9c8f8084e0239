"""
Timezone utilities for scheduling.
All persisted timestamps are UTC. Some drivers (SQLite) hand back naive
datetimes, so comparisons against "now" go through ensure_utc().
"""
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes; convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def seconds_until(when: Optional[datetime], now: Optional[datetime] = None) -> float:
    """Seconds from now until `when`, never negative. None means due now."""
    if when is None:
        return 0.0
    now = now or utcnow()
    return max(0.0, (ensure_utc(when) - now).total_seconds())
