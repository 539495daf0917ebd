from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; every stored timestamp is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def is_past(value: Optional[datetime], now: Optional[datetime] = None) -> bool:
    if value is None:
        return False
    return ensure_aware(value) <= (now or utcnow())


def seconds_from_now(seconds: float, now: Optional[datetime] = None) -> datetime:
    return (now or utcnow()) + timedelta(seconds=seconds)
