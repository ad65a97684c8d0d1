"""
Conflict detector — candidate booking vs. current schedule.

Pure function: no DB, no clock, no counters. Same snapshot in, same
conflicts out, whatever order the inputs arrive in.

Checks, in the order results are returned:
  1. aircraft_grounded       roster status != serviceable
  2. double_booking          one per confirmed overlapping booking on the aircraft
  3. instructor_unavailable  one per confirmed overlapping booking with the
                             same instructor, then one per declared
                             unavailability period
  4. aircraft_maintenance    one per scheduled maintenance window hit

Only confirmed bookings take part; a cancelled booking frees its slot.
The candidate's own prior version is skipped by id (editing).
"""
from typing import Iterable, Mapping, Optional

from skybook.scheduling.entities import (
    AircraftState, AircraftStatus, Booking, ConflictType, DetectedConflict,
)
from skybook.scheduling.state import maintenance_for, unavailability_for
from skybook.scheduling.timerange import overlaps


def detect_conflicts(
    candidate: Booking,
    bookings: Iterable[Booking],
    aircraft: Mapping[str, AircraftState],
    maintenance_windows: Optional[Iterable] = None,
    instructor_unavailability: Optional[Iterable] = None,
) -> list[DetectedConflict]:
    others = _ordered(
        b for b in bookings
        if b.is_confirmed and b.id != candidate.id
    )

    conflicts = []
    conflicts += _grounded(candidate, aircraft)
    conflicts += _double_bookings(candidate, others)
    conflicts += _instructor_clashes(candidate, others)
    conflicts += _instructor_unavailable(candidate, instructor_unavailability or ())
    conflicts += _maintenance(candidate, maintenance_windows or ())
    return conflicts


# ── Checks ───────────────────────────────────────────────────────────────────

def _grounded(candidate: Booking, aircraft: Mapping[str, AircraftState]) -> list[DetectedConflict]:
    ac = aircraft.get(candidate.aircraft_id)
    status = _status_of(ac)
    if status == AircraftStatus.SERVICEABLE.value:
        return []
    return [DetectedConflict(
        booking_id=candidate.id,
        conflict_type=ConflictType.AIRCRAFT_GROUNDED,
        details={"aircraft_id": candidate.aircraft_id, "status": status},
    )]


def _double_bookings(candidate: Booking, others: list[Booking]) -> list[DetectedConflict]:
    return [
        DetectedConflict(
            booking_id=candidate.id,
            conflict_type=ConflictType.DOUBLE_BOOKING,
            details={
                "aircraft_id": candidate.aircraft_id,
                "conflicting_booking_id": b.id,
                **b.range.to_dict(),
            },
        )
        for b in others
        if b.aircraft_id == candidate.aircraft_id and overlaps(b.range, candidate.range)
    ]


def _instructor_clashes(candidate: Booking, others: list[Booking]) -> list[DetectedConflict]:
    if not candidate.instructor_id:
        return []
    return [
        DetectedConflict(
            booking_id=candidate.id,
            conflict_type=ConflictType.INSTRUCTOR_UNAVAILABLE,
            details={
                "instructor_id": candidate.instructor_id,
                "conflicting_booking_id": b.id,
                **b.range.to_dict(),
            },
        )
        for b in others
        if b.instructor_id == candidate.instructor_id and overlaps(b.range, candidate.range)
    ]


def _instructor_unavailable(candidate: Booking, periods) -> list[DetectedConflict]:
    if not candidate.instructor_id:
        return []
    hits = [
        p for p in unavailability_for(periods, candidate.instructor_id)
        if overlaps(p.range, candidate.range)
    ]
    return [
        DetectedConflict(
            booking_id=candidate.id,
            conflict_type=ConflictType.INSTRUCTOR_UNAVAILABLE,
            details={
                "instructor_id": candidate.instructor_id,
                "reason": p.reason,
                **p.range.to_dict(),
            },
        )
        for p in sorted(hits, key=lambda p: (p.range.start, p.range.end, p.reason or ""))
    ]


def _maintenance(candidate: Booking, windows) -> list[DetectedConflict]:
    hits = [
        w for w in maintenance_for(windows, candidate.aircraft_id)
        if overlaps(w.range, candidate.range)
    ]
    return [
        DetectedConflict(
            booking_id=candidate.id,
            conflict_type=ConflictType.AIRCRAFT_MAINTENANCE,
            details={
                "aircraft_id": candidate.aircraft_id,
                "reason": w.reason,
                **w.range.to_dict(),
            },
        )
        for w in sorted(hits, key=lambda w: (w.range.start, w.range.end, w.reason or ""))
    ]


# ── Helpers ──────────────────────────────────────────────────────────────────

def _ordered(bookings) -> list[Booking]:
    return sorted(bookings, key=lambda b: (b.range.start, b.id))


def _status_of(ac: Optional[AircraftState]) -> str:
    """Unknown aircraft count as not serviceable."""
    if ac is None:
        return "unknown"
    return AircraftStatus(ac.status).value
