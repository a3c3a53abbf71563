"""
Helper utilities
"""
from datetime import date, datetime, timedelta, timezone
from typing import Optional


def utc_now() -> datetime:
    """Current UTC time as a naive datetime (the form stored in the database)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def yesterday_utc(now: Optional[datetime] = None) -> date:
    """The previous calendar day in UTC"""
    now = now or utc_now()
    return (now - timedelta(days=1)).date()


def elapsed_ms(start: datetime, end: datetime) -> int:
    """Milliseconds between two datetimes"""
    return int((end - start).total_seconds() * 1000)


def safe_divide(numerator: float, denominator: float, default: float = 0.0) -> float:
    """Safely divide two numbers"""
    try:
        return numerator / denominator if denominator != 0 else default
    except (TypeError, ZeroDivisionError):
        return default


def isoformat_or_none(value: Optional[datetime]) -> Optional[str]:
    """ISO 8601 string for a datetime, or None"""
    return value.isoformat() if value else None
