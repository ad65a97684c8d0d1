"""
Point-in-time view of everything the validator needs.
Built from the stores right before validation; never mutated afterwards.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from skybook.scheduling.entities import (
    AircraftState, Booking, InstructorUnavailability, MaintenanceWindow,
)
from skybook.scheduling.timerange import TimeRange, overlaps


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class ScheduleSnapshot:
    bookings: tuple = ()                     # Booking
    aircraft: tuple = ()                     # AircraftState
    maintenance_windows: tuple = ()          # MaintenanceWindow
    instructor_unavailability: tuple = ()    # InstructorUnavailability
    taken_at: datetime = field(default_factory=_now)

    @classmethod
    def of(cls, bookings=(), aircraft=(), maintenance_windows=(),
           instructor_unavailability=(), taken_at: Optional[datetime] = None) -> "ScheduleSnapshot":
        kwargs = dict(
            bookings=tuple(bookings),
            aircraft=tuple(aircraft),
            maintenance_windows=tuple(maintenance_windows),
            instructor_unavailability=tuple(instructor_unavailability),
        )
        if taken_at is not None:
            kwargs["taken_at"] = taken_at
        return cls(**kwargs)

    def aircraft_roster(self) -> dict[str, AircraftState]:
        return {ac.id: ac for ac in self.aircraft}

    def confirmed_overlapping(self, r: TimeRange, aircraft_id: Optional[str] = None,
                              instructor_id: Optional[str] = None,
                              exclude_id: Optional[str] = None) -> list[Booking]:
        """Confirmed bookings sharing the aircraft or the instructor within r."""
        hits = []
        for b in self.bookings:
            if not b.is_confirmed or b.id == exclude_id:
                continue
            same_ac = aircraft_id is not None and b.aircraft_id == aircraft_id
            same_inst = instructor_id is not None and b.instructor_id == instructor_id
            if (same_ac or same_inst) and overlaps(b.range, r):
                hits.append(b)
        return hits


def maintenance_for(windows, aircraft_id: str) -> list[MaintenanceWindow]:
    return [w for w in windows if w.aircraft_id == aircraft_id]


def unavailability_for(periods, instructor_id: str) -> list[InstructorUnavailability]:
    return [p for p in periods if p.instructor_id == instructor_id]
