"""
Half-open time ranges and calendar-grid helpers.

All instants are compared as naive UTC datetimes. Aware datetimes are
converted on the way in, so ISO strings with offsets ("...Z", "+10:00")
and naive values from the DB can be mixed safely.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Union

from skybook.config import SLOT_GRANULARITY_MINUTES


CALENDAR_START_HOUR = 6      # grid opens at 06:00
CALENDAR_SLOT_MINUTES = 30


class InvalidRange(ValueError):
    """end <= start"""

    def __init__(self, start: datetime, end: datetime):
        super().__init__(f"End time {end.isoformat()} must be after start time {start.isoformat()}")
        self.start = start
        self.end = end


def to_utc_naive(dt: datetime) -> datetime:
    """Aware datetime → naive UTC. Naive values are assumed to be UTC already."""
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class TimeRange:
    start: datetime
    end: datetime

    def __post_init__(self):
        start, end = to_utc_naive(self.start), to_utc_naive(self.end)
        if end <= start:
            raise InvalidRange(start, end)
        # frozen dataclass: bypass __setattr__ to store the normalised values
        object.__setattr__(self, "start", start)
        object.__setattr__(self, "end", end)

    @property
    def duration_hours(self) -> float:
        return (self.end - self.start).total_seconds() / 3600

    def to_dict(self) -> dict:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


def overlaps(a: TimeRange, b: TimeRange) -> bool:
    """
    Half-open overlap: 11:00-12:00 and 12:00-13:00 do NOT overlap.
    """
    return a.start < b.end and b.start < a.end


def normalize_to_granularity(
    time: Union[datetime, str],
    granularity_minutes: int = SLOT_GRANULARITY_MINUTES,
) -> Union[datetime, str]:
    """
    Round down to the nearest granularity boundary.

    datetime → datetime (seconds dropped)
    '10:52'  → '10:45'
    '27:10'  → '23:00' (hour clamped to 0-23)

    Boundaries count from midnight, so a 120-minute grid snaps 11:20 to 10:00.
    """
    if granularity_minutes <= 0:
        raise ValueError(f"granularity must be positive, got {granularity_minutes}")

    if isinstance(time, datetime):
        total = _snap(time.hour * 60 + time.minute, granularity_minutes)
        return time.replace(hour=total // 60, minute=total % 60, second=0, microsecond=0)

    h, m = time.split(":")
    hour = min(max(int(h), 0), 23)
    minute = min(max(int(m), 0), 59)
    total = _snap(hour * 60 + minute, granularity_minutes)
    return f"{total // 60:02d}:{total % 60:02d}"


def _snap(minutes_since_midnight: int, granularity_minutes: int) -> int:
    return minutes_since_midnight - minutes_since_midnight % granularity_minutes


def calendar_slot_index(instant: datetime) -> int:
    """
    Position on the day grid (30-minute rows from 06:00).
    Returns -1 before the grid opens.
    """
    minutes = instant.hour * 60 + instant.minute
    start = CALENDAR_START_HOUR * 60
    if minutes < start:
        return -1
    return (minutes - start) // CALENDAR_SLOT_MINUTES
