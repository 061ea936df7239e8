from datetime import datetime, timezone
from typing import Optional


def get_utc_now() -> datetime:
    """Get current time in UTC."""
    return datetime.now(timezone.utc)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to aware UTC. Naive values (SQLite drops the offset)
    are assumed to already be UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def age_seconds(dt: datetime, now: Optional[datetime] = None) -> float:
    now = now or get_utc_now()
    return (as_utc(now) - as_utc(dt)).total_seconds()
