"""
Booking service end to end against an in-memory SQLite DB:
submit/edit with optimistic retries, lifecycle transitions, ledger wiring.

  python skybook/booking/test_service.py
"""
import sys
sys.path.insert(0, ".")

from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from skybook.booking.service import SUPERSEDED_BY_EDIT, Actor, BookingService
from skybook.database import init_db
from skybook.errors import (
    BookingNotFoundError, BookingStateError, PermissionDeniedError, StaleSnapshotError,
)
from skybook.ledger.ledger import OVERRIDE_ACKNOWLEDGED
from skybook.models import Aircraft, Booking as BookingDB, BookingConflict
from skybook.scheduling.entities import (
    AircraftStatus, Booking, BookingStatus, ConflictType,
)
from skybook.scheduling.timerange import TimeRange
from skybook.scheduling.validator import BookingRequest

STUDENT = Actor.of("S1", "student")
OTHER_STUDENT = Actor.of("S2", "student")
INSTRUCTOR = Actor.of("I045", "instructor")
ADMIN = Actor.of("A1", "admin")


def at(hour: float, day: int = 7) -> datetime:
    # far enough ahead that rescans treat these as upcoming
    return datetime(2030, 7, day, int(hour), int(round((hour % 1) * 60)))


@pytest.fixture
def db():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    init_db(bind=engine)
    session = sessionmaker(bind=engine, autoflush=False)()
    session.add_all([
        Aircraft(id="AC01", registration="VH-SKA", status=AircraftStatus.SERVICEABLE),
        Aircraft(id="AC02", registration="VH-SKB", status=AircraftStatus.SERVICEABLE),
        Aircraft(id="AC04", registration="VH-SKD", status=AircraftStatus.UNSERVICEABLE),
    ])
    session.commit()
    yield session
    session.close()


@pytest.fixture
def service(db):
    return BookingService(db)


def request(start=10, end=12, aircraft="AC01", student="S1", **kw) -> BookingRequest:
    return BookingRequest(student_id=student, aircraft_id=aircraft, start=at(start), end=at(end),
                          payment_type="prepaid", **kw)


def book(service, actor=STUDENT, **kw) -> str:
    result = service.submit(request(student=kw.pop("student", actor.id), **kw), actor)
    assert result.accepted, result.to_dict()
    return result.booking.id


# ── Submit ───────────────────────────────────────────────────────────────────

def test_accepted_booking_is_persisted(service):
    result = service.submit(request(), STUDENT)

    assert result.accepted
    stored = service.bookings.get(result.booking.id)
    assert stored.status == BookingStatus.CONFIRMED
    assert stored.range == TimeRange(at(10), at(12))


def test_rejected_booking_writes_nothing(service, db):
    book(service, STUDENT, start=9, end=11)
    result = service.submit(request(10, 12, student="S2"), OTHER_STUDENT)

    assert not result.accepted
    assert result.codes == ["scheduling_conflict"]
    assert db.query(BookingDB).count() == 1
    assert db.query(BookingConflict).count() == 0


def test_dry_run_validate_writes_nothing(service, db):
    assert service.validate(request(), STUDENT).accepted
    assert db.query(BookingDB).count() == 0


def test_grounded_aircraft_rejected_for_admin(service):
    result = service.submit(request(aircraft="AC04", student="S1"), ADMIN)
    assert result.codes == ["aircraft_unserviceable"]


def test_override_records_acknowledged_conflicts(service):
    first = book(service, STUDENT, start=9, end=11)
    result = service.submit(request(10, 12, student="S2"), ADMIN)

    assert result.accepted and result.overridden
    rows = service.ledger.list_for_booking(result.booking.id)
    assert len(rows) == 1
    assert rows[0].conflict_type == ConflictType.DOUBLE_BOOKING
    assert rows[0].conflict_details["conflicting_booking_id"] == first
    assert rows[0].resolution == OVERRIDE_ACKNOWLEDGED
    assert rows[0].resolved_by == "A1"
    assert service.list_unresolved_conflicts() == []


def test_policy_edits_take_effect_on_next_submit(service, db):
    service.field_settings.update("notes", is_required=True)
    db.commit()

    result = service.submit(request(), STUDENT)
    assert [e.field for e in result.errors] == ["notes"]
    assert service.submit(request(notes="Circuits"), STUDENT).accepted


# ── Concurrency ──────────────────────────────────────────────────────────────

class RacingService(BookingService):
    """Commits a competing booking right after each snapshot is read."""

    def __init__(self, db, racers, **kwargs):
        super().__init__(db, **kwargs)
        self.racers = list(racers)

    def snapshot(self):
        snap = super().snapshot()
        if self.racers:
            self.bookings.insert(self.racers.pop(0), created_by="racer")
            self.db.commit()
        return snap


def racer(id="R1", start=9, end=11, aircraft="AC01") -> Booking:
    return Booking(id=id, student_id="S2", aircraft_id=aircraft, range=TimeRange(at(start), at(end)))


def test_lost_race_revalidates_and_rejects_student(db):
    service = RacingService(db, [racer()])
    result = service.submit(request(10, 12), STUDENT)

    assert not result.accepted
    assert result.codes == ["scheduling_conflict"]
    assert result.conflicts[0].details["conflicting_booking_id"] == "R1"
    assert [b.id for b in service.bookings.list()] == ["R1"]


def test_lost_race_revalidates_and_admin_books_through(db):
    service = RacingService(db, [racer()])
    result = service.submit(request(10, 12, student="S1"), ADMIN)

    assert result.accepted and result.overridden
    assert {b.id for b in service.bookings.list()} == {"R1", result.booking.id}


def test_race_on_other_aircraft_does_not_retry(db):
    service = RacingService(db, [racer(aircraft="AC02")], max_attempts=1)
    assert service.submit(request(10, 12), STUDENT).accepted


def test_every_attempt_lost_raises(db):
    service = RacingService(db, [racer()], max_attempts=1)
    with pytest.raises(StaleSnapshotError) as exc:
        service.submit(request(10, 12), STUDENT)
    assert exc.value.booking_ids == ["R1"]
    assert [b.id for b in service.bookings.list()] == ["R1"]


# ── Edit ─────────────────────────────────────────────────────────────────────

def test_edit_can_overlap_its_own_old_slot(service):
    booking_id = book(service, STUDENT, start=9, end=11)
    result = service.edit(booking_id, BookingRequest(start=at(10), end=at(12)), STUDENT)

    assert result.accepted
    assert result.booking.id == booking_id
    assert service.bookings.get(booking_id).range == TimeRange(at(10), at(12))
    assert len(service.bookings.list()) == 1


def test_edit_into_conflict_leaves_booking_alone(service):
    book(service, OTHER_STUDENT, start=13, end=14)
    booking_id = book(service, STUDENT, start=9, end=11)

    result = service.edit(booking_id, BookingRequest(start=at(12), end=at(14)), STUDENT)

    assert result.codes == ["scheduling_conflict"]
    assert service.bookings.get(booking_id).range == TimeRange(at(9), at(11))


def test_students_edit_only_their_own(service):
    booking_id = book(service, STUDENT)
    with pytest.raises(PermissionDeniedError):
        service.edit(booking_id, BookingRequest(notes="mine now"), OTHER_STUDENT)


def test_cancelled_booking_cannot_be_edited(service):
    booking_id = book(service, STUDENT)
    service.cancel(booking_id, STUDENT)
    with pytest.raises(BookingStateError):
        service.edit(booking_id, BookingRequest(notes="late change"), ADMIN)


def test_edit_unknown_booking(service):
    with pytest.raises(BookingNotFoundError):
        service.edit("missing", BookingRequest(), ADMIN)


def test_edit_clears_fields_sent_as_none(service):
    booking_id = book(service, ADMIN, student="S1", instructor_id="I045", notes="Dual circuits")

    result = service.edit(
        booking_id,
        BookingRequest(instructor_id=None, fields_set=frozenset({"instructor_id"})),
        ADMIN,
    )

    assert result.accepted
    stored = service.bookings.get(booking_id)
    assert stored.instructor_id is None
    assert stored.notes == "Dual circuits"
    assert stored.range == TimeRange(at(10), at(12))


def test_edit_without_fields_set_keeps_unsent_values(service):
    booking_id = book(service, ADMIN, student="S1", instructor_id="I045")
    service.edit(booking_id, BookingRequest(notes="Solo check"), ADMIN)

    stored = service.bookings.get(booking_id)
    assert stored.instructor_id == "I045"
    assert stored.notes == "Solo check"


def test_edit_to_clean_slot_retires_its_old_conflicts(service):
    first = book(service, STUDENT, start=9, end=11)
    book(service, ADMIN, student="S2", start=10, end=12)
    service.rescan()
    assert [r.booking_id for r in service.list_unresolved_conflicts()] == [first]

    assert service.edit(first, BookingRequest(start=at(13), end=at(14)), STUDENT).accepted

    assert service.list_unresolved_conflicts() == []
    assert service.ledger.list_for_booking(first)[0].resolution == SUPERSEDED_BY_EDIT


def test_moving_the_other_party_retires_conflicts_naming_it(service):
    first = book(service, STUDENT, start=9, end=11)
    second = book(service, ADMIN, student="S2", start=10, end=12)
    service.rescan()

    assert service.edit(second, BookingRequest(start=at(13), end=at(14)), ADMIN).accepted

    assert service.list_unresolved_conflicts() == []
    assert service.ledger.list_for_booking(first)[0].resolved_by == "A1"


def test_edit_keeps_conflicts_that_still_apply(service):
    first = book(service, STUDENT, start=9, end=11)
    second = book(service, ADMIN, student="S2", start=10, end=12)
    service.rescan()

    assert service.edit(second, BookingRequest(notes="Still overlapping"), ADMIN).accepted

    assert [r.booking_id for r in service.list_unresolved_conflicts()] == [first]


def test_duplicate_conflict_row_does_not_undo_the_edit(service, monkeypatch):
    book(service, STUDENT, start=9, end=11)
    second = book(service, ADMIN, student="S2", start=10, end=12)

    # another writer's identical row is already there, but our lookup misses it
    lookup = service.ledger._find
    misses = [None]
    monkeypatch.setattr(service.ledger, "_find", lambda *args: misses.pop() if misses else lookup(*args))

    result = service.edit(second, BookingRequest(notes="Steep turns"), ADMIN)

    assert result.accepted and result.overridden
    assert misses == []
    assert service.bookings.get(second).notes == "Steep turns"
    assert len(service.ledger.list_for_booking(second)) == 1


# ── Lifecycle ────────────────────────────────────────────────────────────────

def test_cancel_frees_the_slot(service):
    booking_id = book(service, STUDENT, start=9, end=11)
    assert service.cancel(booking_id, STUDENT).status == BookingStatus.CANCELLED
    assert service.submit(request(10, 12, student="S2"), OTHER_STUDENT).accepted


def test_terminal_statuses_are_final(service):
    booking_id = book(service, STUDENT)
    service.complete(booking_id, INSTRUCTOR)
    with pytest.raises(BookingStateError):
        service.cancel(booking_id, ADMIN)
    with pytest.raises(BookingStateError):
        service.mark_no_show(booking_id, ADMIN)


def test_no_show_by_staff(service):
    booking_id = book(service, STUDENT)
    assert service.mark_no_show(booking_id, INSTRUCTOR).status == BookingStatus.NO_SHOW


def test_student_transition_permissions(service):
    booking_id = book(service, STUDENT)
    with pytest.raises(PermissionDeniedError):
        service.cancel(booking_id, OTHER_STUDENT)
    with pytest.raises(PermissionDeniedError):
        service.complete(booking_id, STUDENT)


def test_cancel_resolves_open_conflicts(service):
    first = book(service, STUDENT, start=9, end=11)
    book(service, ADMIN, student="S2", start=10, end=12)   # overridden
    service.rescan()

    open_rows = service.list_unresolved_conflicts()
    assert [r.booking_id for r in open_rows] == [first]

    service.cancel(first, STUDENT)
    assert service.list_unresolved_conflicts() == []
    assert service.ledger.list_for_booking(first)[0].resolution == "booking_cancelled"


def test_cancel_resolves_conflicts_naming_the_booking(service):
    first = book(service, STUDENT, start=9, end=11)
    second = book(service, ADMIN, student="S2", start=10, end=12)   # overridden
    service.rescan()

    service.cancel(second, ADMIN)

    assert service.list_unresolved_conflicts() == []
    row = service.ledger.list_for_booking(first)[0]
    assert row.conflict_details["conflicting_booking_id"] == second
    assert row.resolution == "booking_cancelled"


# ── Rescan + notifications ───────────────────────────────────────────────────

def test_rescan_is_idempotent(service, db):
    book(service, STUDENT, start=9, end=11)
    book(service, ADMIN, student="S2", start=10, end=12)

    first = service.rescan()
    count = db.query(BookingConflict).count()
    second = service.rescan()

    assert sorted(first) == sorted(second)
    assert db.query(BookingConflict).count() == count


def test_rescan_flags_grounding_without_invalidating(service, db):
    booking_id = book(service, STUDENT)
    service.aircraft.set_status("AC01", AircraftStatus.UNSERVICEABLE)
    db.commit()

    service.rescan()

    rows = service.list_unresolved_conflicts(booking_id)
    assert [r.conflict_type for r in rows] == [ConflictType.AIRCRAFT_GROUNDED]
    assert service.bookings.get(booking_id).status == BookingStatus.CONFIRMED


def test_resolve_and_notify_conflict(service):
    book(service, STUDENT, start=9, end=11)
    book(service, ADMIN, student="S2", start=10, end=12)
    service.rescan()
    conflict_id = service.list_unresolved_conflicts()[0].id

    assert service.mark_conflict_notified(conflict_id).notified_at is not None
    with pytest.raises(PermissionDeniedError):
        service.resolve_conflict(conflict_id, STUDENT)
    assert service.resolve_conflict(conflict_id, INSTRUCTOR).resolved_by == "I045"


def test_listeners_see_committed_changes(service):
    events = []
    unsubscribe = service.bookings.subscribe(events.append)

    booking_id = book(service, STUDENT)
    service.cancel(booking_id, STUDENT)
    unsubscribe()
    book(service, STUDENT, start=13, end=14)

    assert events == [
        {"event": "insert", "booking_id": booking_id},
        {"event": "cancelled", "booking_id": booking_id},
    ]


def test_rescan_on_change(db):
    service = BookingService(db, rescan_on_change=True)
    book(service, STUDENT, start=9, end=11)
    book(service, ADMIN, student="S2", start=10, end=12)

    assert len(service.list_unresolved_conflicts()) == 1


def test_unknown_role_rejected():
    with pytest.raises(ValueError):
        Actor.of("X1", "pilot-in-command")


if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-q"]))
