"""
Scheduling-side views of bookings, aircraft and collaborator windows.

These are plain frozen dataclasses: the detector and validator never touch
the DB. booking/store.py converts ORM rows into them.
"""
import enum
from dataclasses import dataclass, field
from typing import Optional

from skybook.scheduling.timerange import TimeRange


# ── Enums ────────────────────────────────────────────────────────────────────

class Role(str, enum.Enum):
    ADMIN = "admin"
    INSTRUCTOR = "instructor"
    STUDENT = "student"

class BookingStatus(str, enum.Enum):
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    NO_SHOW = "no-show"

class PaymentType(str, enum.Enum):
    PREPAID = "prepaid"
    PAYG = "payg"
    ACCOUNT = "account"

class AircraftStatus(str, enum.Enum):
    SERVICEABLE = "serviceable"
    UNSERVICEABLE = "unserviceable"
    MAINTENANCE = "maintenance"

class ConflictType(str, enum.Enum):
    INSTRUCTOR_UNAVAILABLE = "instructor_unavailable"
    AIRCRAFT_GROUNDED = "aircraft_grounded"
    DOUBLE_BOOKING = "double_booking"
    AIRCRAFT_MAINTENANCE = "aircraft_maintenance"


# ── Entities ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Booking:
    id: str
    student_id: str
    aircraft_id: str
    range: TimeRange
    payment_type: PaymentType = PaymentType.PREPAID
    instructor_id: Optional[str] = None
    notes: Optional[str] = None
    status: BookingStatus = BookingStatus.CONFIRMED

    @property
    def is_confirmed(self) -> bool:
        return self.status == BookingStatus.CONFIRMED

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "student_id": self.student_id,
            "instructor_id": self.instructor_id,
            "aircraft_id": self.aircraft_id,
            "start_time": self.range.start.isoformat(),
            "end_time": self.range.end.isoformat(),
            "payment_type": PaymentType(self.payment_type).value,
            "notes": self.notes,
            "status": BookingStatus(self.status).value,
        }


@dataclass(frozen=True)
class AircraftState:
    id: str
    status: AircraftStatus
    registration: Optional[str] = None


@dataclass(frozen=True)
class MaintenanceWindow:
    """Scheduled maintenance supplied by the maintenance board."""
    aircraft_id: str
    range: TimeRange
    reason: Optional[str] = None
    id: Optional[str] = None


@dataclass(frozen=True)
class InstructorUnavailability:
    instructor_id: str
    range: TimeRange
    reason: Optional[str] = None
    id: Optional[str] = None


@dataclass(frozen=True)
class DetectedConflict:
    """A conflict as produced by the detector, before it reaches the ledger."""
    booking_id: str
    conflict_type: ConflictType
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "booking_id": self.booking_id,
            "conflict_type": ConflictType(self.conflict_type).value,
            "details": self.details,
        }
