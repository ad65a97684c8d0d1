"""
DB-backed stores the scheduling core reads from and writes to.

Rows are converted into the frozen dataclasses in scheduling/entities.py
on the way out, so nothing downstream of a store holds an ORM object.
Stores flush; the caller commits and then calls `notify` so listeners only
see data that is durable.
"""
import logging
from typing import Callable, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from skybook.errors import BookingNotFoundError, StaleSnapshotError
from skybook.models import (
    Aircraft as AircraftDB,
    Booking as BookingDB,
    BookingFieldSetting,
    InstructorUnavailability as InstructorUnavailabilityDB,
    MaintenanceWindow as MaintenanceWindowDB,
)
from skybook.scheduling.entities import (
    AircraftState, Booking, BookingStatus, InstructorUnavailability,
    MaintenanceWindow, PaymentType,
)
from skybook.scheduling.field_policy import ALL_ROLES, DEFAULT_FIELD_SETTINGS, FieldPolicy
from skybook.scheduling.state import ScheduleSnapshot
from skybook.scheduling.timerange import TimeRange

logger = logging.getLogger(__name__)

# booking attributes update() may change, mapped to columns
_UPDATABLE = {
    "student_id": "student_id",
    "instructor_id": "instructor_id",
    "aircraft_id": "aircraft_id",
    "payment_type": "payment_type",
    "notes": "notes",
    "status": "status",
}


def to_booking(row: BookingDB) -> Booking:
    return Booking(
        id=row.id,
        student_id=row.student_id,
        instructor_id=row.instructor_id,
        aircraft_id=row.aircraft_id,
        range=TimeRange(row.start_time, row.end_time),
        payment_type=PaymentType(row.payment_type),
        notes=row.notes,
        status=BookingStatus(row.status),
    )


class BookingStore:
    def __init__(self, db: Session):
        self.db = db
        self._listeners: list[Callable[[dict], None]] = []

    # ── Reads ────────────────────────────────────────────────────────────────

    def list(self, include_cancelled: bool = True) -> list[Booking]:
        query = self.db.query(BookingDB)
        if not include_cancelled:
            query = query.filter(BookingDB.status != BookingStatus.CANCELLED)
        return [to_booking(r) for r in query.order_by(BookingDB.start_time.desc()).all()]

    def get(self, booking_id: str) -> Booking:
        return to_booking(self._row(booking_id))

    # ── Writes ───────────────────────────────────────────────────────────────

    def insert(self, booking: Booking, created_by: Optional[str] = None) -> str:
        row = BookingDB(
            id=booking.id,
            student_id=booking.student_id,
            instructor_id=booking.instructor_id,
            aircraft_id=booking.aircraft_id,
            start_time=booking.range.start,
            end_time=booking.range.end,
            payment_type=PaymentType(booking.payment_type),
            notes=booking.notes,
            status=BookingStatus(booking.status),
            created_by=created_by,
        )
        self.db.add(row)
        self.db.flush()
        return row.id

    def insert_if_unchanged(self, booking: Booking, snapshot: ScheduleSnapshot,
                            created_by: Optional[str] = None) -> str:
        """
        Optimistic write: refuse if a confirmed booking for the same aircraft
        or instructor, overlapping this one, exists that the snapshot did
        not contain. The caller re-validates and tries again.
        """
        self._lock_aircraft(booking.aircraft_id)
        self._ensure_unchanged(booking, snapshot)
        return self.insert(booking, created_by=created_by)

    def update(self, booking_id: str, time_range: Optional[TimeRange] = None, **partial) -> Booking:
        row = self._row(booking_id)
        unknown = set(partial) - set(_UPDATABLE)
        if unknown:
            raise ValueError(f"Cannot update booking fields: {sorted(unknown)}")
        for key, value in partial.items():
            setattr(row, _UPDATABLE[key], value)
        if time_range is not None:
            row.start_time, row.end_time = time_range.start, time_range.end
        self.db.flush()
        return to_booking(row)

    def update_if_unchanged(self, booking: Booking, snapshot: ScheduleSnapshot) -> Booking:
        """Optimistic edit of an existing booking (same rule as insert_if_unchanged)."""
        self._lock_aircraft(booking.aircraft_id)
        self._ensure_unchanged(booking, snapshot)
        return self.update(
            booking.id,
            time_range=booking.range,
            student_id=booking.student_id,
            instructor_id=booking.instructor_id,
            aircraft_id=booking.aircraft_id,
            payment_type=PaymentType(booking.payment_type),
            notes=booking.notes,
        )

    # ── Change notification ──────────────────────────────────────────────────

    def subscribe(self, listener: Callable[[dict], None]) -> Callable[[], None]:
        """Register a change listener; returns the unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def notify(self, event: str, booking_id: str):
        """Call after commit."""
        payload = {"event": event, "booking_id": booking_id}
        for listener in list(self._listeners):
            listener(payload)

    # ── Helpers ──────────────────────────────────────────────────────────────

    def _row(self, booking_id: str) -> BookingDB:
        row = self.db.get(BookingDB, booking_id)
        if row is None:
            raise BookingNotFoundError(f"Booking {booking_id} not found")
        return row

    def _lock_aircraft(self, aircraft_id: str):
        # Serialises writers per aircraft on Postgres; no-op on SQLite
        self.db.query(AircraftDB).filter(AircraftDB.id == aircraft_id).with_for_update().first()

    def _ensure_unchanged(self, booking: Booking, snapshot: ScheduleSnapshot):
        r = booking.range
        same_resource = BookingDB.aircraft_id == booking.aircraft_id
        if booking.instructor_id:
            same_resource = or_(same_resource, BookingDB.instructor_id == booking.instructor_id)

        current = (
            self.db.query(BookingDB)
            .filter(
                BookingDB.status == BookingStatus.CONFIRMED,
                BookingDB.id != booking.id,
                BookingDB.start_time < r.end,
                BookingDB.end_time > r.start,
                same_resource,
            )
            .all()
        )
        seen = {b.id for b in snapshot.confirmed_overlapping(
            r, aircraft_id=booking.aircraft_id, instructor_id=booking.instructor_id,
            exclude_id=booking.id,
        )}
        new_ids = sorted(row.id for row in current if row.id not in seen)
        if new_ids:
            logger.warning("Snapshot from %s is stale for booking %s: new overlaps %s",
                           snapshot.taken_at.isoformat(), booking.id, new_ids)
            raise StaleSnapshotError(
                f"Overlapping bookings {new_ids} were confirmed after the snapshot was read",
                booking_ids=new_ids,
            )


class AircraftStore:
    def __init__(self, db: Session):
        self.db = db

    def list(self) -> list[AircraftState]:
        return [
            AircraftState(id=a.id, registration=a.registration, status=a.status)
            for a in self.db.query(AircraftDB).order_by(AircraftDB.registration).all()
        ]

    def set_status(self, aircraft_id: str, status) -> AircraftState:
        row = self.db.get(AircraftDB, aircraft_id)
        if row is None:
            raise KeyError(aircraft_id)
        row.status = status
        self.db.flush()
        return AircraftState(id=row.id, registration=row.registration, status=row.status)


class CollaboratorStore:
    """Maintenance windows and instructor unavailability, read-only."""

    def __init__(self, db: Session):
        self.db = db

    def maintenance_windows(self) -> list[MaintenanceWindow]:
        return [
            MaintenanceWindow(aircraft_id=w.aircraft_id, range=TimeRange(w.start_time, w.end_time),
                              reason=w.reason, id=w.id)
            for w in self.db.query(MaintenanceWindowDB).all()
        ]

    def instructor_unavailability(self) -> list[InstructorUnavailability]:
        return [
            InstructorUnavailability(instructor_id=p.instructor_id,
                                     range=TimeRange(p.start_time, p.end_time),
                                     reason=p.reason, id=p.id)
            for p in self.db.query(InstructorUnavailabilityDB).all()
        ]


class FieldSettingStore:
    def __init__(self, db: Session):
        self.db = db

    def load_policy(self) -> FieldPolicy:
        """Stored settings, or the stock form settings when none are stored."""
        rows = self.db.query(BookingFieldSetting).order_by(BookingFieldSetting.display_order).all()
        return FieldPolicy.from_settings(rows) if rows else FieldPolicy.from_settings(DEFAULT_FIELD_SETTINGS)

    def seed_defaults(self) -> int:
        """Store the stock settings if the table is empty. Returns rows added."""
        if self.db.query(BookingFieldSetting).count():
            return 0
        for s in DEFAULT_FIELD_SETTINGS:
            self.db.add(_setting_row(s))
        self.db.flush()
        return len(DEFAULT_FIELD_SETTINGS)

    def update(self, field_name: str, **changes) -> BookingFieldSetting:
        # first edit materialises the stock table so other fields keep their defaults
        self.seed_defaults()
        row = self.db.get(BookingFieldSetting, field_name)
        if row is None:
            row = BookingFieldSetting(field_name=field_name, label=field_name,
                                      applies_to_roles=list(ALL_ROLES), display_order=0)
            self.db.add(row)
        for key, value in changes.items():
            if value is None:
                continue
            setattr(row, key, list(value) if key == "applies_to_roles" else value)
        self.db.flush()
        logger.info("Field setting %s updated: %s", field_name, changes)
        return row


def _setting_row(s) -> BookingFieldSetting:
    return BookingFieldSetting(
        field_name=s.field_name,
        label=s.label,
        is_required=s.is_required,
        is_visible=s.is_visible,
        applies_to_roles=list(s.applies_to_roles),
        display_order=s.display_order,
        help_text=s.help_text,
    )
