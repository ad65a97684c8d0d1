"""
Ingestion pipeline — reads bucket files, validates, upserts reference data
(aircraft roster, booking field settings, maintenance windows, instructor
unavailability). Idempotent: same input = same hash = skips re-insert.
"""
import json
import hashlib
import logging
from pathlib import Path

from sqlalchemy.orm import Session

from skybook.config import BUCKET_DIR
from skybook.models import (
    Aircraft, BookingFieldSetting, MaintenanceWindow,
    InstructorUnavailability, IngestionRun
)
from skybook.ingestion.schemas import (
    AircraftSchema, FieldSettingSchema,
    MaintenanceWindowSchema, InstructorUnavailabilitySchema
)

logger = logging.getLogger(__name__)

# filename → (schema, model, primary key attribute)
SOURCES = {
    "aircraft.json": (AircraftSchema, Aircraft, "id"),
    "field_settings.json": (FieldSettingSchema, BookingFieldSetting, "field_name"),
    "maintenance_windows.json": (MaintenanceWindowSchema, MaintenanceWindow, "id"),
    "instructor_unavailability.json": (InstructorUnavailabilitySchema, InstructorUnavailability, "id"),
}


# ── Helpers ───────────────────────────────────────────────────────────────────

def _hash_file(path: Path) -> str:
    return hashlib.md5(path.read_bytes()).hexdigest()

def _bucket_hash(bucket: Path) -> str:
    """Single hash of all bucket files combined."""
    combined = "".join(
        _hash_file(f) for f in sorted(bucket.iterdir()) if f.is_file()
    )
    return hashlib.md5(combined.encode()).hexdigest()

def _load_json(bucket: Path, filename: str) -> list:
    path = bucket / filename
    if not path.exists():
        return []
    return json.loads(path.read_text())


# ── Upsert ────────────────────────────────────────────────────────────────────

def _upsert(db: Session, bucket: Path, filename: str) -> dict:
    schema, model, key = SOURCES[filename]
    raw = _load_json(bucket, filename)
    records = [schema(**r) for r in raw]  # validates
    diff = {"upserted": [], "unchanged": []}

    for r in records:
        data = r.model_dump()
        pk = data[key]
        existing = db.get(model, pk)

        if existing:
            changed = {k: v for k, v in data.items() if getattr(existing, k) != v}
            if changed:
                for k, v in changed.items():
                    setattr(existing, k, v)
                diff["upserted"].append(pk)
            else:
                diff["unchanged"].append(pk)
        else:
            db.add(model(**data))
            diff["upserted"].append(pk)

    # aircraft must exist before windows reference them
    db.flush()
    return diff


# ── Main entry point ──────────────────────────────────────────────────────────

def run_ingestion(db: Session, force: bool = False, bucket: Path = None) -> dict:
    """
    Run full ingestion. Skips if bucket hash unchanged (idempotent).
    Set force=True to re-ingest regardless.
    """
    bucket = Path(bucket or BUCKET_DIR)
    if not bucket.is_dir():
        raise FileNotFoundError(f"Bucket directory {bucket} not found")

    bucket_hash = _bucket_hash(bucket)

    # Idempotency check
    if not force:
        last_run = (
            db.query(IngestionRun)
            .filter(IngestionRun.status == "success")
            .order_by(IngestionRun.id.desc())
            .first()
        )
        if last_run and last_run.source_hash == bucket_hash:
            logger.info("Ingestion skipped, bucket %s unchanged", bucket_hash)
            return {
                "status": "skipped",
                "reason": "bucket unchanged",
                "hash": bucket_hash
            }

    # Run all upserts
    diff_summary = {}
    try:
        diff_summary["aircraft"] = _upsert(db, bucket, "aircraft.json")
        diff_summary["field_settings"] = _upsert(db, bucket, "field_settings.json")
        diff_summary["maintenance_windows"] = _upsert(db, bucket, "maintenance_windows.json")
        diff_summary["instructor_unavailability"] = _upsert(db, bucket, "instructor_unavailability.json")

        db.add(IngestionRun(
            source_hash=bucket_hash,
            status="success",
            diff_summary=diff_summary
        ))
        db.commit()

    except Exception as e:
        db.rollback()
        logger.error("Ingestion failed: %s", e)
        db.add(IngestionRun(
            source_hash=bucket_hash,
            status="failed",
            diff_summary={"error": str(e)}
        ))
        db.commit()
        raise

    logger.info("Ingestion complete (%s)", bucket_hash)
    return {
        "status": "success",
        "hash": bucket_hash,
        "diff": diff_summary
    }
