"""
Booking validator decisions per role.
No DB needed — snapshots are built in memory.

  python skybook/scheduling/test_validator.py
"""
import sys
sys.path.insert(0, ".")

from datetime import datetime, timezone

import pytest

from skybook.scheduling.entities import (
    AircraftState, AircraftStatus, Booking, ConflictType, MaintenanceWindow,
)
from skybook.scheduling.field_policy import FieldPolicy
from skybook.scheduling.rules import BookingRules
from skybook.scheduling.state import ScheduleSnapshot
from skybook.scheduling.timerange import TimeRange
from skybook.scheduling.validator import (
    BookingRequest, ValidationContext, validate_booking,
)

NOW = datetime(2025, 7, 1, 8, 0)


def at(hour: float, day: int = 7) -> datetime:
    return datetime(2025, 7, day, int(hour), int(round((hour % 1) * 60)))


FLEET = [
    AircraftState("AC01", AircraftStatus.SERVICEABLE, "VH-SKA"),
    AircraftState("AC02", AircraftStatus.SERVICEABLE, "VH-SKB"),
    AircraftState("AC03", AircraftStatus.MAINTENANCE, "VH-SKC"),
    AircraftState("AC04", AircraftStatus.UNSERVICEABLE, "VH-SKD"),
]


def existing(id, start, end, aircraft="AC01", student="S2", instructor=None, day=7) -> Booking:
    return Booking(id=id, student_id=student, aircraft_id=aircraft, instructor_id=instructor,
                   range=TimeRange(at(start, day), at(end, day)))


def context(bookings=(), actor="S1", rules=None, policy=None, windows=()) -> ValidationContext:
    snapshot = ScheduleSnapshot.of(bookings=bookings, aircraft=FLEET,
                                   maintenance_windows=windows, taken_at=NOW)
    return ValidationContext(snapshot=snapshot, actor_id=actor, rules=rules,
                             policy=policy or FieldPolicy.default(), now=NOW)


def request(start=10, end=12, aircraft="AC01", student="S1", **kw) -> BookingRequest:
    return BookingRequest(student_id=student, aircraft_id=aircraft,
                          start=at(start) if start is not None else None,
                          end=at(end) if end is not None else None,
                          payment_type=kw.pop("payment_type", "prepaid"), **kw)


# ── Acceptance ───────────────────────────────────────────────────────────────

def test_clean_request_becomes_confirmed_booking():
    result = validate_booking(request(), "student", context())

    assert result.accepted
    assert result.errors == []
    assert result.conflicts == []
    assert result.booking.is_confirmed
    assert result.booking.range == TimeRange(at(10), at(12))


def test_student_and_payment_defaults_applied():
    req = BookingRequest(aircraft_id="AC01", start=at(10), end=at(12))
    result = validate_booking(req, "student", context(actor="S1"))

    assert result.accepted
    assert result.booking.student_id == "S1"
    assert result.booking.payment_type == "prepaid"


def test_edit_does_not_conflict_with_itself():
    ctx = context(bookings=[existing("B1", 9, 11, student="S1")])
    result = validate_booking(request(10, 12, booking_id="B1"), "student", ctx)

    assert result.accepted
    assert result.booking.id == "B1"


# ── Role-dependent conflict handling ─────────────────────────────────────────

def test_student_rejected_on_conflict():
    ctx = context(bookings=[existing("B1", 9, 11)])
    result = validate_booking(request(10, 12), "student", ctx)

    assert not result.accepted
    assert result.codes == ["scheduling_conflict"]
    assert [c.conflict_type for c in result.conflicts] == [ConflictType.DOUBLE_BOOKING]
    assert result.errors[0].conflicts[0].details["conflicting_booking_id"] == "B1"


def test_admin_overrides_same_conflict():
    ctx = context(bookings=[existing("B1", 9, 11)], actor="A1")
    result = validate_booking(request(10, 12), "admin", ctx)

    assert result.accepted
    assert result.overridden
    assert result.errors == []
    assert result.conflicts[0].details["conflicting_booking_id"] == "B1"
    assert result.to_dict()["warnings"][0]["conflict_type"] == "double_booking"


def test_instructor_overrides_too():
    ctx = context(bookings=[existing("B1", 9, 11)], actor="I045")
    assert validate_booking(request(10, 12), "instructor", ctx).accepted


def test_maintenance_window_blocks_students():
    windows = [MaintenanceWindow("AC01", TimeRange(at(11), at(15)), "Annual")]
    result = validate_booking(request(10, 12), "student", context(windows=windows))
    assert result.codes == ["scheduling_conflict"]
    assert result.conflicts[0].conflict_type == ConflictType.AIRCRAFT_MAINTENANCE


# ── Structural errors ────────────────────────────────────────────────────────

def test_unserviceable_aircraft_blocks_everyone():
    for role, actor in (("student", "S1"), ("admin", "A1")):
        result = validate_booking(request(aircraft="AC04"), role, context(actor=actor))
        assert not result.accepted
        assert result.codes == ["aircraft_unserviceable"]
        assert result.errors[0].status == "unserviceable"
        assert result.conflicts == []


def test_aircraft_in_maintenance_status_is_unserviceable():
    result = validate_booking(request(aircraft="AC03"), "admin", context(actor="A1"))
    assert result.errors[0].to_dict() == {
        "code": "aircraft_unserviceable", "field": "aircraft_id",
        "aircraft_id": "AC03", "status": "maintenance",
    }


def test_unknown_aircraft_is_unserviceable():
    result = validate_booking(request(aircraft="NOPE"), "admin", context(actor="A1"))
    assert result.codes == ["aircraft_unserviceable"]
    assert result.errors[0].status == "unknown"


def test_all_missing_fields_reported_together():
    req = BookingRequest(student_id="S1", end=at(12))
    result = validate_booking(req, "student", context())

    assert not result.accepted
    assert [e.field for e in result.errors] == ["aircraft_id", "start_time"]


def test_blank_strings_count_as_missing():
    result = validate_booking(request(aircraft="   "), "student", context())
    assert [e.to_dict() for e in result.errors] == [
        {"code": "missing_required_field", "field": "aircraft_id"},
    ]


def test_essential_fields_required_even_when_policy_relaxes_them():
    relaxed = FieldPolicy.default().override("aircraft_id", is_required=False)
    result = validate_booking(request(aircraft=None), "admin", context(actor="A1", policy=relaxed))
    assert [e.field for e in result.errors] == ["aircraft_id"]


def test_policy_can_require_extra_fields():
    strict = FieldPolicy.default().override("notes", is_required=True)
    result = validate_booking(request(), "student", context(policy=strict))
    assert [e.field for e in result.errors] == ["notes"]


def test_invalid_range_stops_further_checks():
    result = validate_booking(request(12, 10, aircraft="AC04"), "student", context())
    assert result.codes == ["invalid_range"]
    assert result.errors[0].to_dict()["field"] == "end_time"


def test_zero_length_booking_rejected():
    result = validate_booking(request(10, 10), "admin", context(actor="A1"))
    assert result.codes == ["invalid_range"]


def test_student_cannot_book_for_someone_else():
    result = validate_booking(request(student="S2"), "student", context(actor="S1"))
    assert result.codes == ["student_mismatch"]


def test_staff_may_book_for_any_student():
    assert validate_booking(request(student="S2"), "instructor", context(actor="I045")).accepted


def test_unknown_payment_type():
    result = validate_booking(request(payment_type="bitcoin"), "student", context())
    assert result.codes == ["invalid_field_value"]
    assert result.errors[0].value == "bitcoin"


def test_structural_errors_skip_the_detector():
    ctx = context(bookings=[existing("B1", 9, 11)])
    result = validate_booking(request(10, 12, student="S9"), "student", ctx)
    assert result.codes == ["student_mismatch"]
    assert result.conflicts == []


# ── Club rules ───────────────────────────────────────────────────────────────

def test_duration_rule_binds_students():
    result = validate_booking(request(8, 13), "student", context(rules=BookingRules()))
    assert result.codes == ["rule_violation"]
    assert result.errors[0].rule == "max_booking_duration"
    assert result.errors[0].actual == 5.0


def test_rules_do_not_bind_staff():
    result = validate_booking(request(8, 13), "admin", context(actor="A1", rules=BookingRules()))
    assert result.accepted


def test_daily_booking_limit():
    held = [existing(f"B{i}", 7 + i * 2, 8 + i * 2, aircraft="AC02", student="S1") for i in range(3)]
    result = validate_booking(request(15, 16), "student", context(bookings=held, rules=BookingRules()))
    assert [e.rule for e in result.errors] == ["max_daily_bookings"]


def test_advance_booking_window():
    req = BookingRequest(student_id="S1", aircraft_id="AC01", payment_type="prepaid",
                         start=datetime(2025, 9, 1, 10), end=datetime(2025, 9, 1, 11))
    result = validate_booking(req, "student", context(rules=BookingRules()))
    assert [e.rule for e in result.errors] == ["max_advance_booking"]


def test_minimum_gap_between_own_bookings():
    rules = BookingRules(min_time_between_bookings_minutes=30)
    held = [existing("B1", 8, 9.75, aircraft="AC02", student="S1")]
    result = validate_booking(request(10, 11), "student", context(bookings=held, rules=rules))
    assert [e.rule for e in result.errors] == ["min_time_between_bookings"]
    assert result.errors[0].actual == 15


# ── Request + snapshot plumbing ──────────────────────────────────────────────

def test_provided_fields_for_edits():
    assert request(notes=None).provided() == {"student_id", "aircraft_id", "start", "end", "payment_type"}

    explicit = BookingRequest(instructor_id=None, fields_set=frozenset({"instructor_id", "booking_id"}))
    assert explicit.provided() == {"instructor_id"}


def test_snapshot_clock_is_naive_utc():
    before = datetime.now(timezone.utc).replace(tzinfo=None)
    taken_at = ScheduleSnapshot().taken_at

    assert taken_at.tzinfo is None
    assert before <= taken_at <= datetime.now(timezone.utc).replace(tzinfo=None)


if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-q"]))
