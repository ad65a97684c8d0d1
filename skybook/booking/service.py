"""
Booking service — the one place bookings are created, edited and moved
through their lifecycle.

Submission (optimistic concurrency):
  1. read a snapshot (bookings, aircraft, maintenance, unavailability)
  2. validate against it
  3. write only if no new overlapping confirmed booking appeared since (1)
  4. record overridden conflicts in the ledger; an edit also closes
     open rows that detection no longer produces; commit once
  5. on a stale snapshot: roll back and start again from (1)

Persistence errors roll back and propagate untouched; the store client
owns retry policy.
"""
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from skybook.booking.store import (
    AircraftStore, BookingStore, CollaboratorStore, FieldSettingStore,
)
from skybook.config import MAX_COMMIT_ATTEMPTS
from skybook.errors import BookingStateError, PermissionDeniedError, StaleSnapshotError
from skybook.ledger.ledger import ConflictLedger, details_hash
from skybook.scheduling.detector import detect_conflicts
from skybook.scheduling.entities import (
    Booking, BookingStatus, ConflictType, DetectedConflict, Role,
)
from skybook.scheduling.field_policy import FieldPolicy
from skybook.scheduling.rules import BookingRules
from skybook.scheduling.state import ScheduleSnapshot
from skybook.scheduling.validator import (
    BookingRequest, ValidationContext, ValidationResult, validate_booking,
)

logger = logging.getLogger(__name__)

BOOKING_CANCELLED = "booking_cancelled"
SUPERSEDED_BY_EDIT = "superseded_by_edit"

# status → statuses it may move to; nothing leaves a terminal status
TRANSITIONS = {
    BookingStatus.CONFIRMED: {BookingStatus.CANCELLED, BookingStatus.COMPLETED, BookingStatus.NO_SHOW},
}


@dataclass(frozen=True)
class Actor:
    id: str
    role: Role

    @classmethod
    def of(cls, actor_id: str, role) -> "Actor":
        return cls(id=actor_id, role=Role(role))


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class BookingService:
    def __init__(
        self,
        db: Session,
        policy: Optional[FieldPolicy] = None,
        rules: Optional[BookingRules] = None,
        max_attempts: int = MAX_COMMIT_ATTEMPTS,
        rescan_on_change: bool = False,
    ):
        self.db = db
        self.bookings = BookingStore(db)
        self.aircraft = AircraftStore(db)
        self.collaborators = CollaboratorStore(db)
        self.field_settings = FieldSettingStore(db)
        self.ledger = ConflictLedger(db)
        self.rules = rules
        self.max_attempts = max_attempts
        self._policy = policy
        if rescan_on_change:
            self.bookings.subscribe(lambda event: self.rescan())

    @property
    def policy(self) -> FieldPolicy:
        return self._policy or self.field_settings.load_policy()

    # ── Snapshot + validation ────────────────────────────────────────────────

    def snapshot(self) -> ScheduleSnapshot:
        return ScheduleSnapshot.of(
            bookings=self.bookings.list(),
            aircraft=self.aircraft.list(),
            maintenance_windows=self.collaborators.maintenance_windows(),
            instructor_unavailability=self.collaborators.instructor_unavailability(),
            taken_at=_now(),
        )

    def context(self, actor: Actor, snapshot: ScheduleSnapshot) -> ValidationContext:
        return ValidationContext(
            snapshot=snapshot,
            actor_id=actor.id,
            policy=self.policy,
            rules=self.rules,
            now=snapshot.taken_at,
        )

    def validate(self, request: BookingRequest, actor: Actor) -> ValidationResult:
        """Dry run: nothing is written."""
        snapshot = self.snapshot()
        return validate_booking(request, actor.role, self.context(actor, snapshot))

    def detect(self, candidate: Booking) -> list[DetectedConflict]:
        snapshot = self.snapshot()
        return self._detect(candidate, snapshot.bookings, snapshot)

    def _detect(self, candidate: Booking, bookings, snapshot: ScheduleSnapshot, roster=None):
        return detect_conflicts(
            candidate,
            bookings,
            roster if roster is not None else snapshot.aircraft_roster(),
            maintenance_windows=snapshot.maintenance_windows,
            instructor_unavailability=snapshot.instructor_unavailability,
        )

    # ── Create / edit ────────────────────────────────────────────────────────

    def submit(self, request: BookingRequest, actor: Actor) -> ValidationResult:
        """
        Validate and persist. Returns the ValidationResult; rejected results
        write nothing. Raises StaleSnapshotError if every attempt lost a race.
        """
        editing = request.booking_id is not None
        last_error = None

        for attempt in range(1, self.max_attempts + 1):
            snapshot = self.snapshot()
            result = validate_booking(request, actor.role, self.context(actor, snapshot))
            if not result.accepted:
                logger.info("Booking request by %s (%s) rejected: %s",
                            actor.id, actor.role.value, result.codes)
                return result

            booking = result.booking
            try:
                if editing:
                    self.bookings.update_if_unchanged(booking, snapshot)
                else:
                    self.bookings.insert_if_unchanged(booking, snapshot, created_by=actor.id)
                for conflict in result.conflicts:
                    self.ledger.acknowledge(conflict, actor_id=actor.id)
                if editing:
                    self._retire_superseded(booking, snapshot, actor)
                self.db.commit()
            except StaleSnapshotError as e:
                self.db.rollback()
                last_error = e
                logger.warning("Attempt %d/%d for booking %s lost a write race, re-validating",
                               attempt, self.max_attempts, booking.id)
                continue
            except SQLAlchemyError:
                self.db.rollback()
                raise

            if result.overridden:
                logger.info("Booking %s confirmed by %s over %d conflict(s)",
                            booking.id, actor.role.value, len(result.conflicts))
            else:
                logger.info("Booking %s confirmed", booking.id)
            self.bookings.notify("update" if editing else "insert", booking.id)
            return result

        raise last_error

    def edit(self, booking_id: str, request: BookingRequest, actor: Actor) -> ValidationResult:
        existing = self.bookings.get(booking_id)
        if existing.status != BookingStatus.CONFIRMED:
            raise BookingStateError(f"Booking {booking_id} is {existing.status.value}, only confirmed bookings can be edited")
        if actor.role == Role.STUDENT and existing.student_id != actor.id:
            raise PermissionDeniedError("Students can only edit their own bookings")
        current = BookingRequest(
            booking_id=booking_id,
            student_id=existing.student_id,
            aircraft_id=existing.aircraft_id,
            start=existing.range.start,
            end=existing.range.end,
            instructor_id=existing.instructor_id,
            payment_type=existing.payment_type.value,
            notes=existing.notes,
        )
        # fields left out of the edit keep their current values; a field sent as None is cleared
        changes = {attr: getattr(request, attr) for attr in request.provided()}
        return self.submit(replace(current, **changes), actor)

    def _retire_superseded(self, booking: Booking, snapshot: ScheduleSnapshot, actor: Actor):
        """
        Close open ledger rows about an edited booking, its own and other
        bookings' rows naming it, that detection no longer produces.
        """
        bookings = [booking if b.id == booking.id else b for b in snapshot.bookings]
        by_id = {b.id: b for b in bookings}
        roster = snapshot.aircraft_roster()
        still_detected = {}

        rows = self.ledger.list_unresolved(booking.id) + self.ledger.list_unresolved_referencing(booking.id)
        for row in rows:
            if row.booking_id not in still_detected:
                subject = by_id.get(row.booking_id)
                found = []
                if subject is not None and subject.is_confirmed:
                    found = self._detect(subject, bookings, snapshot, roster)
                still_detected[row.booking_id] = {
                    (ConflictType(c.conflict_type).value, details_hash(c.details)) for c in found
                }
            if (ConflictType(row.conflict_type).value, row.details_hash) not in still_detected[row.booking_id]:
                self.ledger.resolve(row.id, resolved_by=actor.id, resolution=SUPERSEDED_BY_EDIT)

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def cancel(self, booking_id: str, actor: Actor) -> Booking:
        return self._transition(booking_id, BookingStatus.CANCELLED, actor)

    def complete(self, booking_id: str, actor: Actor) -> Booking:
        return self._transition(booking_id, BookingStatus.COMPLETED, actor)

    def mark_no_show(self, booking_id: str, actor: Actor) -> Booking:
        return self._transition(booking_id, BookingStatus.NO_SHOW, actor)

    def _transition(self, booking_id: str, status: BookingStatus, actor: Actor) -> Booking:
        current = self.bookings.get(booking_id)
        if status not in TRANSITIONS.get(current.status, set()):
            raise BookingStateError(
                f"Cannot move booking {booking_id} from {current.status.value} to {status.value}"
            )
        if actor.role == Role.STUDENT and (status != BookingStatus.CANCELLED or current.student_id != actor.id):
            raise PermissionDeniedError("Students can only cancel their own bookings")

        try:
            updated = self.bookings.update(booking_id, status=status)
            if status == BookingStatus.CANCELLED:
                # a cancelled booking frees its slot, so open conflicts on it or naming it are moot
                rows = self.ledger.list_unresolved(booking_id) + self.ledger.list_unresolved_referencing(booking_id)
                for row in rows:
                    self.ledger.resolve(row.id, resolved_by=actor.id, resolution=BOOKING_CANCELLED)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise

        logger.info("Booking %s: %s → %s by %s", booking_id,
                    current.status.value, status.value, actor.id)
        self.bookings.notify(status.value, booking_id)
        return updated

    # ── Conflict ledger ──────────────────────────────────────────────────────

    def rescan(self, upcoming_only: bool = True) -> list[str]:
        """
        Re-run detection over confirmed bookings and record what is found.
        Recording is idempotent, so this is safe on every refresh. Bookings
        are never invalidated here; the ledger only gains entries.
        """
        snapshot = self.snapshot()
        roster = snapshot.aircraft_roster()
        ids = []
        try:
            for booking in snapshot.bookings:
                if not booking.is_confirmed:
                    continue
                if upcoming_only and booking.range.end <= snapshot.taken_at:
                    continue
                ids += self.ledger.record_all(self._detect(booking, snapshot.bookings, snapshot, roster))
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        logger.info("Rescan recorded %d conflict(s)", len(ids))
        return ids

    def list_unresolved_conflicts(self, booking_id: Optional[str] = None):
        return self.ledger.list_unresolved(booking_id)

    def resolve_conflict(self, conflict_id: str, actor: Optional[Actor] = None):
        if actor is not None and actor.role == Role.STUDENT:
            raise PermissionDeniedError("Students cannot resolve conflicts")
        try:
            row = self.ledger.resolve(conflict_id, resolved_by=actor.id if actor else None)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        return row

    def mark_conflict_notified(self, conflict_id: str):
        try:
            row = self.ledger.mark_notified(conflict_id)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        return row
