"""
Conflict ledger — durable record of detected conflicts and their resolution.

Detection runs on every refresh, so recording is idempotent on
(booking_id, conflict_type, md5(details)): the second `record` of the same
conflict returns the first row's id, resolved or not, so a dismissal
sticks. Rows are never deleted; only the resolution fields change.

Policy for repeats:
  resolve()        idempotent, first resolved_at wins
  mark_notified()  no-op once notified_at is set

Overridden conflicts (a privileged role booked anyway) are recorded and
immediately resolved with resolution="override_acknowledged", so they stay
visible in history without cluttering the unresolved queue.

The ledger flushes but does not commit; the caller owns the transaction.
Inserts run inside a SAVEPOINT so losing the unique-key race to another
writer never discards work already flushed in the caller's transaction.
"""
import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from skybook.errors import ConflictNotFoundError
from skybook.models import BookingConflict
from skybook.scheduling.entities import ConflictType, DetectedConflict

logger = logging.getLogger(__name__)

RESOLVED = "resolved"
OVERRIDE_ACKNOWLEDGED = "override_acknowledged"


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def details_hash(details: dict) -> str:
    """Key order does not matter: {"a": 1, "b": 2} == {"b": 2, "a": 1}."""
    canonical = json.dumps(details or {}, sort_keys=True, default=str)
    return hashlib.md5(canonical.encode()).hexdigest()


class ConflictLedger:
    def __init__(self, db: Session):
        self.db = db

    # ── Writes ───────────────────────────────────────────────────────────────

    def record(self, conflict: DetectedConflict) -> str:
        """Store a detected conflict, or return the id of the identical one."""
        conflict_type = ConflictType(conflict.conflict_type)
        digest = details_hash(conflict.details)

        existing = self._find(conflict.booking_id, conflict_type, digest)
        if existing:
            return existing.id

        row = BookingConflict(
            booking_id=conflict.booking_id,
            conflict_type=conflict_type,
            conflict_details=conflict.details,
            details_hash=digest,
            is_resolved=False,
        )
        try:
            with self.db.begin_nested():
                self.db.add(row)
                self.db.flush()
        except IntegrityError:
            # Lost a race against a concurrent rescan; the other row wins
            existing = self._find(conflict.booking_id, conflict_type, digest)
            if existing is None:
                raise
            return existing.id

        logger.info("Recorded %s conflict %s for booking %s",
                    conflict_type.value, row.id, conflict.booking_id)
        return row.id

    def record_all(self, conflicts: list[DetectedConflict]) -> list[str]:
        return [self.record(c) for c in conflicts]

    def mark_notified(self, conflict_id: str) -> BookingConflict:
        row = self.get(conflict_id)
        if row.notified_at is None:
            row.notified_at = _now()
            self.db.flush()
        return row

    def resolve(self, conflict_id: str, resolved_by: Optional[str] = None,
                resolution: str = RESOLVED) -> BookingConflict:
        row = self.get(conflict_id)
        if row.is_resolved:
            logger.debug("Conflict %s already resolved at %s", conflict_id, row.resolved_at)
            return row
        row.is_resolved = True
        row.resolved_at = _now()
        row.resolution = resolution
        row.resolved_by = resolved_by
        self.db.flush()
        logger.info("Conflict %s resolved (%s)", conflict_id, resolution)
        return row

    def acknowledge(self, conflict: DetectedConflict, actor_id: Optional[str] = None) -> str:
        """Record a conflict a privileged role chose to book through."""
        conflict_id = self.record(conflict)
        self.resolve(conflict_id, resolved_by=actor_id, resolution=OVERRIDE_ACKNOWLEDGED)
        return conflict_id

    # ── Reads ────────────────────────────────────────────────────────────────

    def get(self, conflict_id: str) -> BookingConflict:
        row = self.db.get(BookingConflict, conflict_id)
        if row is None:
            raise ConflictNotFoundError(f"Conflict {conflict_id} not found")
        return row

    def list_unresolved(self, booking_id: Optional[str] = None) -> list[BookingConflict]:
        query = self.db.query(BookingConflict).filter(BookingConflict.is_resolved.is_(False))
        if booking_id:
            query = query.filter(BookingConflict.booking_id == booking_id)
        return query.order_by(BookingConflict.created_at.desc(), BookingConflict.id).all()

    def list_unresolved_referencing(self, booking_id: str) -> list[BookingConflict]:
        """Open conflicts on other bookings that name booking_id as the other party."""
        return [
            row for row in self.list_unresolved()
            if (row.conflict_details or {}).get("conflicting_booking_id") == booking_id
        ]

    def list_for_booking(self, booking_id: str) -> list[BookingConflict]:
        return (
            self.db.query(BookingConflict)
            .filter(BookingConflict.booking_id == booking_id)
            .order_by(BookingConflict.created_at, BookingConflict.id)
            .all()
        )

    def _find(self, booking_id: str, conflict_type: ConflictType, digest: str) -> Optional[BookingConflict]:
        return (
            self.db.query(BookingConflict)
            .filter(
                BookingConflict.booking_id == booking_id,
                BookingConflict.conflict_type == conflict_type,
                BookingConflict.details_hash == digest,
            )
            .first()
        )


def conflict_to_dict(row: BookingConflict) -> dict:
    return {
        "id": row.id,
        "booking_id": row.booking_id,
        "conflict_type": ConflictType(row.conflict_type).value,
        "conflict_details": row.conflict_details,
        "is_resolved": row.is_resolved,
        "resolution": row.resolution,
        "resolved_by": row.resolved_by,
        "notified_at": row.notified_at.isoformat() if row.notified_at else None,
        "resolved_at": row.resolved_at.isoformat() if row.resolved_at else None,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }
