"""
Observability metrics for the booking core.

Tracks:
- Conflicts detected per type
- Unresolved / notified / overridden counts
- Mean time to resolution
- Bookings per status
"""
from datetime import datetime, timedelta, timezone
from sqlalchemy import func
from sqlalchemy.orm import Session
from skybook.ledger.ledger import OVERRIDE_ACKNOWLEDGED
from skybook.models import Booking, BookingConflict


def get_conflict_metrics(db: Session, days: int = 7) -> dict:
    """
    Conflict ledger metrics for the past N days.
    """
    cutoff = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(days=days)

    conflicts = (
        db.query(BookingConflict)
        .filter(BookingConflict.created_at >= cutoff)
        .all()
    )

    if not conflicts:
        return {
            "period_days": days,
            "total_conflicts": 0,
            "unresolved": 0,
            "notified": 0,
            "overridden": 0,
            "conflict_types": {},
            "avg_hours_to_resolution": 0.0,
        }

    conflict_types = {}
    for c in conflicts:
        key = c.conflict_type.value if hasattr(c.conflict_type, "value") else c.conflict_type
        conflict_types[key] = conflict_types.get(key, 0) + 1

    resolution_hours = [
        (c.resolved_at - c.created_at).total_seconds() / 3600
        for c in conflicts
        if c.is_resolved and c.resolved_at and c.created_at
        and c.resolution != OVERRIDE_ACKNOWLEDGED
    ]

    return {
        "period_days": days,
        "total_conflicts": len(conflicts),
        "unresolved": sum(1 for c in conflicts if not c.is_resolved),
        "notified": sum(1 for c in conflicts if c.notified_at is not None),
        "overridden": sum(1 for c in conflicts if c.resolution == OVERRIDE_ACKNOWLEDGED),
        "conflict_types": conflict_types,
        "avg_hours_to_resolution": (
            sum(resolution_hours) / len(resolution_hours) if resolution_hours else 0.0
        ),
    }


def get_booking_metrics(db: Session) -> dict:
    """
    Booking counts per status.
    """
    rows = db.query(Booking.status, func.count(Booking.id)).group_by(Booking.status).all()
    by_status = {
        (status.value if hasattr(status, "value") else status): count
        for status, count in rows
    }
    total = sum(by_status.values())

    return {
        "total_bookings": total,
        "by_status": by_status,
        "cancellation_rate": (
            by_status.get("cancelled", 0) / total * 100 if total > 0 else 0.0
        ),
    }
