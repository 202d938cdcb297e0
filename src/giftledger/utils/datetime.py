"""Date-time helpers; the database stores naive UTC timestamps."""

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalise an aware timestamp to naive UTC; naive input is assumed UTC."""

    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def is_expired(expiry_date: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """Return True when the expiry date lies strictly in the past."""

    if expiry_date is None:
        return False
    current = to_naive_utc(now) if now else utcnow()
    return to_naive_utc(expiry_date) < current
