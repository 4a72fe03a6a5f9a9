"""
Datetime helpers for terminal wall-clock values.
- Terminals report naive local time; it is stored verbatim, never converted.
- Server-side comparisons (realtime window) use naive local now().
"""
from datetime import date, datetime, timezone
from typing import Any, Optional

UTC = timezone.utc

LOCAL_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def now_local() -> datetime:
    """Current naive local time, comparable with terminal timestamps."""
    return datetime.now()


def now_utc() -> datetime:
    """Current time in UTC (timezone-aware)."""
    return datetime.now(UTC)


def format_local_timestamp(value: Any) -> str:
    """
    Render a device timestamp as "YYYY-MM-DD HH:MM:SS.fff".

    Structured dates keep their wall-clock reading (tzinfo is ignored, not converted);
    anything else passes through as its string form.
    """
    if isinstance(value, datetime):
        millis = value.microsecond // 1000
        return f"{value.strftime(LOCAL_TIMESTAMP_FORMAT)}.{millis:03d}"
    if isinstance(value, date):
        return f"{value.isoformat()} 00:00:00.000"
    return str(value)


def parse_device_time(value: Any) -> Optional[datetime]:
    """Best-effort conversion of a raw timestamp to naive datetime; None when unparseable."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=None) if value.tzinfo else value
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed.replace(tzinfo=None) if parsed.tzinfo else parsed
    return None


def date_prefix(timestamp_local: str) -> str:
    """The YYYY-MM-DD part of a stored timestamp."""
    return timestamp_local[:10]


def in_date_range(timestamp_local: str, date_from: Optional[date], date_to: Optional[date]) -> bool:
    """Inclusive date-range check on the date prefix; open bounds pass."""
    day = date_prefix(timestamp_local)
    if date_from is not None and day < date_from.isoformat():
        return False
    if date_to is not None and day > date_to.isoformat():
        return False
    return True
