import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Optional

from timekeeper.core.errors import ValidationError
from timekeeper.models.time_entry import EntryStatus, TimeEntry

logger = logging.getLogger(__name__)

MAX_DURATION_SECONDS = 2**31 - 1
MIN_STOPPED_SPAN = timedelta(seconds=1)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes (SQLite round-trips) are treated as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def elapsed_since(start: datetime, now: datetime) -> int:
    """Whole seconds from ``start`` to ``now``, clamped at zero for clock skew."""
    raw = (as_utc(now) - as_utc(start)).total_seconds()
    if raw < 0:
        logger.warning(
            "Negative elapsed time; check clock synchronization",
            extra={"start": as_utc(start).isoformat(), "now": as_utc(now).isoformat(), "raw_seconds": raw},
        )
        return 0
    return int(math.floor(raw))


def seconds_between(start: datetime, end: datetime) -> int:
    """Whole seconds of an explicit, caller-supplied range. Negative is an error."""
    raw = (as_utc(end) - as_utc(start)).total_seconds()
    if raw < 0:
        raise ValidationError(
            "Computed duration is negative",
            start_time=as_utc(start).isoformat(),
            end_time=as_utc(end).isoformat(),
        )
    return check_duration_bounds(int(math.floor(raw)))


def check_duration_bounds(value: int) -> int:
    if value is None:
        raise ValidationError("Duration is required")
    value = int(value)
    if value < 0:
        raise ValidationError("Duration must not be negative", duration=value)
    if value > MAX_DURATION_SECONDS:
        raise ValidationError("Duration exceeds the maximum", duration=value)
    return value


def effective_duration(entry: TimeEntry, now: datetime) -> int:
    stored = int(entry.duration or 0)
    if entry.status != EntryStatus.RUNNING:
        return stored
    return check_duration_bounds(stored + elapsed_since(entry.start_time, now))


def stop_time(start: datetime, now: datetime) -> datetime:
    """End time for stopping at ``now``; always strictly after ``start``."""
    return max(as_utc(now), as_utc(start) + MIN_STOPPED_SPAN)
