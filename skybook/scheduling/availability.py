"""
Utility functions for rule checks that need day/time arithmetic.
"""
from datetime import date, datetime

from skybook.scheduling.timerange import TimeRange


def days_ahead(r: TimeRange, now: datetime) -> float:
    """How far in the future the range starts, in days (negative if past)."""
    return (r.start - now).total_seconds() / 86400


def count_on_day(bookings, student_id: str, d: date, exclude_id: str = None) -> int:
    """Confirmed bookings a student already holds that start on day d."""
    return sum(
        1 for b in bookings
        if b.student_id == student_id
        and b.is_confirmed
        and b.id != exclude_id
        and b.range.start.date() == d
    )


def gap_minutes(a: TimeRange, b: TimeRange) -> float:
    """Minutes between two non-overlapping ranges (0 if they touch or overlap)."""
    if a.end <= b.start:
        return (b.start - a.end).total_seconds() / 60
    if b.end <= a.start:
        return (a.start - b.end).total_seconds() / 60
    return 0.0
