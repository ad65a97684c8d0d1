"""
FastAPI app — booking core endpoints:
  POST /bookings/validate          dry-run validation
  POST /bookings                   validate + commit
  PATCH /bookings/{id}             edit (re-validated)
  POST /bookings/{id}/cancel|complete|no-show
  POST /conflicts/detect           detector only
  GET  /conflicts                  unresolved ledger entries
  POST /conflicts/{id}/resolve|notify
  POST /conflicts/rescan
  GET|PUT /field-policy
  POST /ingest/run
  GET  /metrics
  GET  /calendar/{day}             day grid

The caller's identity comes from X-Actor-Id / X-Actor-Role headers;
authentication happens in front of this service.
"""
import logging
import math
from datetime import date
from typing import Optional

from fastapi import FastAPI, Depends, Header, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from skybook.api.schemas import BookingIn, CandidateIn, FieldSettingIn
from skybook.booking.service import Actor, BookingService
from skybook.config import LOG_LEVEL
from skybook.database import get_db, init_db
from skybook.errors import (
    BookingNotFoundError, BookingStateError, ConflictNotFoundError,
    PermissionDeniedError, StaleSnapshotError,
)
from skybook.ingestion.job import run_ingestion
from skybook.ledger.ledger import conflict_to_dict
from skybook.observability.metrics import get_booking_metrics, get_conflict_metrics
from skybook.scheduling.entities import Booking, BookingStatus, Role
from skybook.scheduling.rules import BookingRules
from skybook.scheduling.timerange import (
    CALENDAR_SLOT_MINUTES, CALENDAR_START_HOUR, InvalidRange, TimeRange,
    calendar_slot_index, normalize_to_granularity,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="SkyBook Scheduling API", version="1.0.0")

CLUB_RULES = BookingRules()


# Initialize DB tables on startup
@app.on_event("startup")
def startup():
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    init_db()
    logger.info("Database initialized")


# ── Dependencies ──────────────────────────────────────────────────────────────

def get_actor(
    x_actor_id: str = Header(...),
    x_actor_role: str = Header(...),
) -> Actor:
    try:
        return Actor.of(x_actor_id, x_actor_role)
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Unknown role: {x_actor_role}")


def get_service(db: Session = Depends(get_db)) -> BookingService:
    return BookingService(db, rules=CLUB_RULES)


def _require_staff(actor: Actor):
    if actor.role == Role.STUDENT:
        raise HTTPException(status_code=403, detail="Admin or instructor role required")


# ── Bookings ──────────────────────────────────────────────────────────────────

@app.get("/bookings")
def list_bookings(
    aircraft_id: Optional[str] = None,
    status: Optional[BookingStatus] = None,
    service: BookingService = Depends(get_service),
):
    bookings = service.bookings.list()
    if aircraft_id:
        bookings = [b for b in bookings if b.aircraft_id == aircraft_id]
    if status:
        bookings = [b for b in bookings if b.status == status]
    return {"total": len(bookings), "bookings": [b.to_dict() for b in bookings]}


@app.get("/calendar/{day}")
def calendar_day(
    day: date,
    aircraft_id: Optional[str] = None,
    service: BookingService = Depends(get_service),
):
    """
    Confirmed bookings for one day placed on the calendar grid
    (30-minute rows from 06:00). Times shown snapped to the selector grid.
    """
    placed = []
    for b in service.bookings.list(include_cancelled=False):
        if not b.is_confirmed or b.range.start.date() != day:
            continue
        if aircraft_id and b.aircraft_id != aircraft_id:
            continue
        placed.append({
            **b.to_dict(),
            "slot": calendar_slot_index(b.range.start),
            "slots": math.ceil(b.range.duration_hours * 60 / CALENDAR_SLOT_MINUTES),
            "display_start": normalize_to_granularity(b.range.start.strftime("%H:%M")),
            "display_end": normalize_to_granularity(b.range.end.strftime("%H:%M")),
        })
    placed.sort(key=lambda p: (p["aircraft_id"], p["start_time"]))
    return {
        "date": day.isoformat(),
        "opens": f"{CALENDAR_START_HOUR:02d}:00",
        "slot_minutes": CALENDAR_SLOT_MINUTES,
        "bookings": placed,
    }


@app.post("/bookings/validate")
def validate_booking(
    body: BookingIn,
    actor: Actor = Depends(get_actor),
    service: BookingService = Depends(get_service),
):
    """
    Run every check without writing anything. Returns all errors at once so
    the form can highlight each invalid field.
    """
    return service.validate(body.to_request(), actor).to_dict()


@app.post("/bookings")
def create_booking(
    body: BookingIn,
    actor: Actor = Depends(get_actor),
    service: BookingService = Depends(get_service),
):
    try:
        result = service.submit(body.to_request(), actor)
    except StaleSnapshotError as e:
        raise HTTPException(status_code=409, detail=str(e))

    status_code = 201 if result.accepted else 422
    return JSONResponse(status_code=status_code, content=result.to_dict())


@app.patch("/bookings/{booking_id}")
def edit_booking(
    booking_id: str,
    body: BookingIn,
    actor: Actor = Depends(get_actor),
    service: BookingService = Depends(get_service),
):
    try:
        result = service.edit(booking_id, body.to_request(), actor)
    except BookingNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except BookingStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except PermissionDeniedError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except StaleSnapshotError as e:
        raise HTTPException(status_code=409, detail=str(e))

    status_code = 200 if result.accepted else 422
    return JSONResponse(status_code=status_code, content=result.to_dict())


def _transition(booking_id: str, action, actor: Actor) -> dict:
    try:
        return action(booking_id, actor).to_dict()
    except BookingNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except BookingStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except PermissionDeniedError as e:
        raise HTTPException(status_code=403, detail=str(e))


@app.post("/bookings/{booking_id}/cancel")
def cancel_booking(booking_id: str, actor: Actor = Depends(get_actor),
                   service: BookingService = Depends(get_service)):
    return _transition(booking_id, service.cancel, actor)


@app.post("/bookings/{booking_id}/complete")
def complete_booking(booking_id: str, actor: Actor = Depends(get_actor),
                     service: BookingService = Depends(get_service)):
    return _transition(booking_id, service.complete, actor)


@app.post("/bookings/{booking_id}/no-show")
def no_show_booking(booking_id: str, actor: Actor = Depends(get_actor),
                    service: BookingService = Depends(get_service)):
    return _transition(booking_id, service.mark_no_show, actor)


# ── Conflicts ─────────────────────────────────────────────────────────────────

@app.post("/conflicts/detect")
def detect_conflicts(body: CandidateIn, service: BookingService = Depends(get_service)):
    """
    Detector only: what would this booking collide with right now?
    Nothing is recorded.
    """
    try:
        time_range = TimeRange(body.start_time, body.end_time)
    except InvalidRange as e:
        raise HTTPException(status_code=422, detail=str(e))

    candidate = Booking(
        id=body.id or "candidate",
        student_id=body.student_id,
        instructor_id=body.instructor_id,
        aircraft_id=body.aircraft_id,
        range=time_range,
        payment_type=body.payment_type,
    )
    conflicts = service.detect(candidate)
    return {"total": len(conflicts), "conflicts": [c.to_dict() for c in conflicts]}


@app.get("/conflicts")
def list_conflicts(booking_id: Optional[str] = None,
                   service: BookingService = Depends(get_service)):
    rows = service.list_unresolved_conflicts(booking_id)
    return {"total": len(rows), "conflicts": [conflict_to_dict(r) for r in rows]}


@app.post("/conflicts/rescan")
def rescan_conflicts(actor: Actor = Depends(get_actor),
                     service: BookingService = Depends(get_service)):
    _require_staff(actor)
    ids = service.rescan()
    return {"recorded": len(set(ids)), "conflict_ids": sorted(set(ids))}


@app.post("/conflicts/{conflict_id}/resolve")
def resolve_conflict(conflict_id: str, actor: Actor = Depends(get_actor),
                     service: BookingService = Depends(get_service)):
    try:
        return conflict_to_dict(service.resolve_conflict(conflict_id, actor))
    except ConflictNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PermissionDeniedError as e:
        raise HTTPException(status_code=403, detail=str(e))


@app.post("/conflicts/{conflict_id}/notify")
def notify_conflict(conflict_id: str, service: BookingService = Depends(get_service)):
    try:
        return conflict_to_dict(service.mark_conflict_notified(conflict_id))
    except ConflictNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


# ── Field policy ──────────────────────────────────────────────────────────────

@app.get("/field-policy")
def get_field_policy(role: Optional[Role] = None,
                     service: BookingService = Depends(get_service)):
    policy = service.policy
    fields = policy.to_list()
    if role:
        for f in fields:
            f["required_for_role"] = policy.is_field_required(f["field_name"], role)
            f["visible_for_role"] = policy.is_field_visible(f["field_name"], role)
    response = {"fields": fields, "override_roles": list(policy.override_roles)}
    if role:
        response["required_fields"] = policy.required_fields(role)
    return response


@app.put("/field-policy/{field_name}")
def update_field_policy(
    field_name: str,
    body: FieldSettingIn,
    actor: Actor = Depends(get_actor),
    service: BookingService = Depends(get_service),
):
    if actor.role != Role.ADMIN:
        raise HTTPException(status_code=403, detail="Admin role required")
    service.field_settings.update(field_name, **body.changes())
    service.db.commit()
    return {"fields": service.policy.to_list()}


# ── Ingestion + metrics ───────────────────────────────────────────────────────

@app.post("/ingest/run")
def ingest_run(force: bool = False, db: Session = Depends(get_db)):
    """
    Load aircraft, field settings, maintenance windows and instructor
    unavailability from the bucket. Idempotent unless force=True.
    """
    try:
        return run_ingestion(db, force=force)
    except FileNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@app.get("/metrics")
def metrics(days: int = 7, db: Session = Depends(get_db)):
    return {
        "conflicts": get_conflict_metrics(db, days=days),
        "bookings": get_booking_metrics(db),
    }


# ── Health check ──────────────────────────────────────────────────────────────

@app.get("/")
def root():
    return {
        "service": "SkyBook Scheduling API",
        "version": "1.0.0",
        "endpoints": ["/bookings", "/bookings/validate", "/conflicts",
                      "/field-policy", "/calendar/{day}", "/ingest/run", "/metrics"]
    }
