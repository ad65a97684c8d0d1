"""
Club booking rules (booking-rules settings page).
Keeps validator.py clean — all rule logic lives here.

Rules only bind the roles they apply to (students by default); staff
booking on behalf of the club are not limited by them.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from skybook.scheduling.availability import count_on_day, days_ahead, gap_minutes


@dataclass(frozen=True)
class BookingRules:
    max_advance_booking_days: Optional[int] = 30
    max_booking_duration_hours: Optional[float] = 4.0
    max_daily_bookings_per_student: Optional[int] = 3
    min_time_between_bookings_minutes: int = 0
    applies_to_roles: tuple = ("student",)

    def applies_to(self, role) -> bool:
        value = role.value if hasattr(role, "value") else str(role)
        return value in self.applies_to_roles


@dataclass(frozen=True)
class RuleBreach:
    rule: str
    limit: float
    actual: float
    message: str


def check_rules(candidate, bookings, rules: BookingRules, now: datetime) -> list[RuleBreach]:
    """
    Evaluate a candidate booking against the club rules.
    `bookings` is the snapshot booking set; only confirmed ones count.
    """
    breaches = []
    r = candidate.range

    if rules.max_booking_duration_hours is not None and r.duration_hours > rules.max_booking_duration_hours:
        breaches.append(RuleBreach(
            "max_booking_duration", rules.max_booking_duration_hours, round(r.duration_hours, 2),
            f"Booking is {r.duration_hours:.1f}h, limit is {rules.max_booking_duration_hours}h",
        ))

    if rules.max_advance_booking_days is not None:
        ahead = days_ahead(r, now)
        if ahead > rules.max_advance_booking_days:
            breaches.append(RuleBreach(
                "max_advance_booking", rules.max_advance_booking_days, round(ahead, 1),
                f"Bookings open {rules.max_advance_booking_days} days ahead",
            ))

    if rules.max_daily_bookings_per_student is not None:
        held = count_on_day(bookings, candidate.student_id, r.start.date(), exclude_id=candidate.id)
        if held + 1 > rules.max_daily_bookings_per_student:
            breaches.append(RuleBreach(
                "max_daily_bookings", rules.max_daily_bookings_per_student, held + 1,
                f"Student already holds {held} booking(s) on {r.start.date().isoformat()}",
            ))

    if rules.min_time_between_bookings_minutes > 0:
        too_close = [
            b for b in bookings
            if b.is_confirmed and b.id != candidate.id
            and b.student_id == candidate.student_id
            and gap_minutes(b.range, r) < rules.min_time_between_bookings_minutes
        ]
        if too_close:
            closest = min(gap_minutes(b.range, r) for b in too_close)
            breaches.append(RuleBreach(
                "min_time_between_bookings", rules.min_time_between_bookings_minutes, closest,
                f"Needs {rules.min_time_between_bookings_minutes} min between bookings",
            ))

    return breaches
