"""
Time helpers shared by the scheduler, the monitor and the notifications.
"""
from datetime import date, datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_valid_timezone(tz_name) -> bool:
    """True when tz_name is a known IANA zone."""
    if not tz_name or not isinstance(tz_name, str):
        return False
    try:
        ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        return False
    return True


def local_date(now: datetime, tz_name: str) -> date:
    """Calendar date of `now` in the given IANA timezone."""
    return ensure_utc(now).astimezone(ZoneInfo(tz_name)).date()


def minutes_since(timestamp: Optional[datetime], now: datetime) -> int:
    """Whole minutes elapsed; 0 for a missing timestamp or one in the future."""
    if timestamp is None:
        return 0
    delta = ensure_utc(now) - ensure_utc(timestamp)
    return max(0, int(delta.total_seconds() // 60))


def format_job_date(value: Optional[date]) -> str:
    """'Tue, Mar 4' style label used in owner and customer texts."""
    if value is None:
        return "TBD"
    return f"{value.strftime('%a, %b')} {value.day}"
