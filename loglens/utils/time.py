"""Time helpers. All engine timestamps are timezone-aware UTC."""

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]

# Keyed by Granularity value
_BUCKET_LABEL_FORMATS = {
    "minute": "%Y-%m-%d %H:%M",
    "hour": "%Y-%m-%d %H:00",
    "day": "%Y-%m-%d",
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Interpret naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def truncate(value: datetime, granularity: str) -> datetime:
    """Truncate a timestamp to the start of its UTC bucket."""
    value = ensure_utc(value)
    if granularity == "minute":
        return value.replace(second=0, microsecond=0)
    if granularity == "hour":
        return value.replace(minute=0, second=0, microsecond=0)
    if granularity == "day":
        return value.replace(hour=0, minute=0, second=0, microsecond=0)
    raise ValueError(f"Unsupported granularity: {granularity}")


def bucket_label(bucket: datetime, granularity: str) -> str:
    fmt = _BUCKET_LABEL_FORMATS[getattr(granularity, "value", granularity)]
    return ensure_utc(bucket).strftime(fmt)
