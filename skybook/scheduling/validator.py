"""
Booking validator — single entry point for deciding whether a booking
request may become a confirmed booking.

Decision flow:
  apply field defaults (policy)
  missing required fields          → MissingRequiredField (all of them)
  student booking for someone else → StudentMismatch
  end <= start                     → InvalidTimeRange, stop here
  aircraft not serviceable         → AircraftUnserviceable
  club rules (if supplied)         → RuleViolation
  any structural error             → rejected, detector not run
  conflicts found                  → SchedulingConflict
        student                    → rejected
        admin / instructor         → accepted, conflicts returned as warnings
  nothing found                    → accepted, confirmed Booking

Errors are returned, not raised, and every applicable one is reported in
a single pass.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from skybook.scheduling.detector import detect_conflicts
from skybook.scheduling.entities import (
    AircraftStatus, Booking, BookingStatus, PaymentType, Role,
)
from skybook.scheduling.field_policy import BOOKING_FIELDS, FieldPolicy
from skybook.scheduling.rules import BookingRules, check_rules
from skybook.scheduling.state import ScheduleSnapshot
from skybook.scheduling.timerange import InvalidRange, TimeRange


# A Booking cannot be built without these, whatever the policy says
ESSENTIAL_FIELDS = ("student_id", "aircraft_id", "start_time", "end_time")


# ── Request ──────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class BookingRequest:
    student_id: Optional[str] = None
    aircraft_id: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    instructor_id: Optional[str] = None
    payment_type: Optional[str] = None
    notes: Optional[str] = None
    booking_id: Optional[str] = None       # set when editing an existing booking
    # attribute names the caller supplied; None means "every non-None one"
    fields_set: Optional[frozenset] = None

    def provided(self) -> set[str]:
        """Attributes an edit should overwrite, explicit None included."""
        if self.fields_set is not None:
            return set(self.fields_set) & set(BOOKING_FIELDS.values())
        return {attr for attr in BOOKING_FIELDS.values() if getattr(self, attr) is not None}

    def value_of(self, field_name: str):
        value = getattr(self, BOOKING_FIELDS[field_name])
        if isinstance(value, str) and not value.strip():
            return None
        return value


@dataclass(frozen=True)
class ValidationContext:
    snapshot: ScheduleSnapshot
    actor_id: Optional[str] = None
    policy: FieldPolicy = field(default_factory=FieldPolicy.default)
    rules: Optional[BookingRules] = None
    now: Optional[datetime] = None


# ── Errors ───────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ValidationError:
    code = "validation_error"
    structural = True

    def to_dict(self) -> dict:
        return {"code": self.code}


@dataclass(frozen=True)
class MissingRequiredField(ValidationError):
    field: str
    code = "missing_required_field"

    def to_dict(self) -> dict:
        return {"code": self.code, "field": self.field}


@dataclass(frozen=True)
class StudentMismatch(ValidationError):
    student_id: str
    actor_id: Optional[str]
    code = "student_mismatch"

    def to_dict(self) -> dict:
        return {"code": self.code, "field": "student_id",
                "student_id": self.student_id, "actor_id": self.actor_id}


@dataclass(frozen=True)
class InvalidFieldValue(ValidationError):
    field: str
    value: str
    code = "invalid_field_value"

    def to_dict(self) -> dict:
        return {"code": self.code, "field": self.field, "value": self.value}


@dataclass(frozen=True)
class InvalidTimeRange(ValidationError):
    start: datetime
    end: datetime
    code = "invalid_range"

    def to_dict(self) -> dict:
        return {"code": self.code, "field": "end_time",
                "start": self.start.isoformat(), "end": self.end.isoformat()}


@dataclass(frozen=True)
class AircraftUnserviceable(ValidationError):
    aircraft_id: str
    status: str
    code = "aircraft_unserviceable"

    def to_dict(self) -> dict:
        return {"code": self.code, "field": "aircraft_id",
                "aircraft_id": self.aircraft_id, "status": self.status}


@dataclass(frozen=True)
class RuleViolation(ValidationError):
    rule: str
    message: str
    limit: float = 0
    actual: float = 0
    code = "rule_violation"

    def to_dict(self) -> dict:
        return {"code": self.code, "rule": self.rule, "message": self.message,
                "limit": self.limit, "actual": self.actual}


@dataclass(frozen=True)
class SchedulingConflict(ValidationError):
    conflicts: tuple
    code = "scheduling_conflict"
    structural = False

    def to_dict(self) -> dict:
        return {"code": self.code, "conflicts": [c.to_dict() for c in self.conflicts]}


# ── Result ───────────────────────────────────────────────────────────────────

@dataclass
class ValidationResult:
    booking: Optional[Booking] = None
    errors: list = field(default_factory=list)
    conflicts: list = field(default_factory=list)     # DetectedConflict, also set when overridden

    @property
    def accepted(self) -> bool:
        return self.booking is not None

    @property
    def overridden(self) -> bool:
        """Accepted despite conflicts (privileged role)."""
        return self.accepted and bool(self.conflicts)

    @property
    def codes(self) -> list[str]:
        return [e.code for e in self.errors]

    def to_dict(self) -> dict:
        return {
            "accepted": self.accepted,
            "booking": self.booking.to_dict() if self.booking else None,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [c.to_dict() for c in self.conflicts] if self.accepted else [],
        }


# ── Entry point ──────────────────────────────────────────────────────────────

def validate_booking(request: BookingRequest, role, context: ValidationContext) -> ValidationResult:
    policy = context.policy
    snapshot = context.snapshot
    role = Role(role.value if isinstance(role, Role) else role)
    request = policy.apply_defaults(request, role, context.actor_id)

    errors: list[ValidationError] = []

    # 1. Required fields, all of them
    missing = [f for f in BOOKING_FIELDS if policy.is_field_required(f, role) and request.value_of(f) is None]
    missing += [f for f in ESSENTIAL_FIELDS if f not in missing and request.value_of(f) is None]
    errors += [MissingRequiredField(f) for f in _in_form_order(missing)]

    if (role == Role.STUDENT and request.student_id
            and context.actor_id and request.student_id != context.actor_id):
        errors.append(StudentMismatch(request.student_id, context.actor_id))

    payment_type = getattr(request.payment_type, "value", request.payment_type)
    if payment_type not in {p.value for p in PaymentType}:
        errors.append(InvalidFieldValue("payment_type", str(payment_type)))

    if request.start is None or request.end is None:
        return ValidationResult(errors=errors)

    # 2. Time range — nothing else is checked against an invalid range
    try:
        time_range = TimeRange(request.start, request.end)
    except InvalidRange as e:
        errors.append(InvalidTimeRange(e.start, e.end))
        return ValidationResult(errors=errors)

    # 3. Aircraft serviceability (hard block at creation time)
    roster = snapshot.aircraft_roster()
    if request.aircraft_id:
        ac = roster.get(request.aircraft_id)
        status = AircraftStatus(ac.status).value if ac else "unknown"
        if status != AircraftStatus.SERVICEABLE.value:
            errors.append(AircraftUnserviceable(request.aircraft_id, status))

    if any(isinstance(e, (MissingRequiredField, InvalidFieldValue)) for e in errors):
        return ValidationResult(errors=errors)

    candidate = Booking(
        id=request.booking_id or str(uuid.uuid4()),
        student_id=request.student_id,
        instructor_id=request.value_of("instructor_id"),
        aircraft_id=request.aircraft_id,
        range=time_range,
        payment_type=PaymentType(payment_type),
        notes=request.value_of("notes"),
        status=BookingStatus.CONFIRMED,
    )

    # 3b. Club rules
    if context.rules is not None and context.rules.applies_to(role):
        now = context.now or snapshot.taken_at
        errors += [
            RuleViolation(b.rule, b.message, b.limit, b.actual)
            for b in check_rules(candidate, snapshot.bookings, context.rules, now)
        ]

    if errors:
        return ValidationResult(errors=errors)

    # 4. Conflicts
    conflicts = detect_conflicts(
        candidate,
        snapshot.bookings,
        roster,
        maintenance_windows=snapshot.maintenance_windows,
        instructor_unavailability=snapshot.instructor_unavailability,
    )
    if conflicts and not policy.can_override_conflicts(role):
        return ValidationResult(errors=[SchedulingConflict(tuple(conflicts))], conflicts=conflicts)

    # 5. Accepted (possibly with warnings)
    return ValidationResult(booking=candidate, conflicts=conflicts)


def _in_form_order(fields: list[str]) -> list[str]:
    order = list(BOOKING_FIELDS)
    return sorted(fields, key=order.index)
