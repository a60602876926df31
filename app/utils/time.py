"""Time utilities (UTC now, ISO round-trips, month keys)."""
from __future__ import annotations
from datetime import datetime, timezone

def utc_now() -> datetime:
    return datetime.now(timezone.utc)

def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes (sqlite round-trips drop tzinfo) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

def to_iso(value: datetime) -> str:
    """UTC ISO-8601 with millisecond precision and a ``Z`` suffix."""
    value = ensure_utc(value)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"

def parse_iso(value: str | None) -> datetime | None:
    """Parse an ISO timestamp; returns None for empty or unparseable input."""
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        return None

def coerce_datetime(value: object) -> datetime | None:
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        return parse_iso(value)
    return None

def month_key(value: datetime) -> str:
    value = ensure_utc(value)
    return f"{value.year:04d}-{value.month:02d}"

def month_start(value: datetime) -> datetime:
    value = ensure_utc(value)
    return value.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

def shift_months(value: datetime, months: int) -> datetime:
    """Move a month-start datetime by ``months`` (negative goes back)."""
    index = value.year * 12 + (value.month - 1) + months
    return value.replace(year=index // 12, month=index % 12 + 1)

__all__ = [
    "utc_now",
    "ensure_utc",
    "to_iso",
    "parse_iso",
    "coerce_datetime",
    "month_key",
    "month_start",
    "shift_months",
]
