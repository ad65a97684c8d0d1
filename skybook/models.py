from sqlalchemy import (
    Column, String, Integer, Float, Boolean, DateTime,
    JSON, ForeignKey, Text, UniqueConstraint, Enum as SAEnum
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func
import uuid

from skybook.scheduling.entities import (
    AircraftStatus, BookingStatus, ConflictType, PaymentType,
)

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


def _values(enum_cls):
    # store "no-show", not "NO_SHOW"
    return [m.value for m in enum_cls]


# ── Core entities ─────────────────────────────────────────────────────────────

class Aircraft(Base):
    __tablename__ = "aircraft"

    id = Column(String, primary_key=True)              # e.g. "AC01"
    registration = Column(String, nullable=False)      # e.g. "VH-ABC"
    make = Column(String, nullable=True)
    model = Column(String, nullable=True)
    status = Column(SAEnum(AircraftStatus, values_callable=_values),
                    default=AircraftStatus.SERVICEABLE, nullable=False)
    hourly_rate = Column(Float, default=0.0)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String, primary_key=True, default=_uuid)
    student_id = Column(String, nullable=False)
    instructor_id = Column(String, nullable=True)
    aircraft_id = Column(String, ForeignKey("aircraft.id"), nullable=False)
    start_time = Column(DateTime, nullable=False, index=True)
    end_time = Column(DateTime, nullable=False)
    payment_type = Column(SAEnum(PaymentType, values_callable=_values), nullable=False)
    notes = Column(Text, nullable=True)
    status = Column(SAEnum(BookingStatus, values_callable=_values),
                    default=BookingStatus.CONFIRMED, nullable=False)
    created_by = Column(String, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


# ── Conflict ledger ───────────────────────────────────────────────────────────

class BookingConflict(Base):
    __tablename__ = "booking_conflicts"
    __table_args__ = (
        UniqueConstraint("booking_id", "conflict_type", "details_hash",
                         name="uq_booking_conflict_identity"),
    )

    id = Column(String, primary_key=True, default=_uuid)
    booking_id = Column(String, nullable=False, index=True)
    conflict_type = Column(SAEnum(ConflictType, values_callable=_values), nullable=False)
    conflict_details = Column(JSON, nullable=False, default=dict)
    details_hash = Column(String, nullable=False)      # md5 of canonical details JSON
    is_resolved = Column(Boolean, default=False, nullable=False)
    resolution = Column(String, nullable=True)         # "resolved" | "override_acknowledged"
    resolved_by = Column(String, nullable=True)
    notified_at = Column(DateTime, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())


# ── Configuration + collaborator data ─────────────────────────────────────────

class BookingFieldSetting(Base):
    __tablename__ = "booking_field_settings"

    field_name = Column(String, primary_key=True)      # e.g. "instructor_id"
    label = Column(String, nullable=False, default="")
    is_required = Column(Boolean, default=False)
    is_visible = Column(Boolean, default=True)
    applies_to_roles = Column(JSON, nullable=False)    # ["admin", "instructor"]
    display_order = Column(Integer, default=0)
    help_text = Column(Text, nullable=True)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class MaintenanceWindow(Base):
    __tablename__ = "maintenance_windows"

    id = Column(String, primary_key=True)              # e.g. "MW01"
    aircraft_id = Column(String, ForeignKey("aircraft.id"), nullable=False)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    reason = Column(String, nullable=True)             # "100-hourly"


class InstructorUnavailability(Base):
    __tablename__ = "instructor_unavailability"

    id = Column(String, primary_key=True)              # e.g. "IU01"
    instructor_id = Column(String, nullable=False, index=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    reason = Column(String, nullable=True)             # "leave", "medical"


# ── Ingestion tracking ────────────────────────────────────────────────────────

class IngestionRun(Base):
    __tablename__ = "ingestion_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_at = Column(DateTime, server_default=func.now())
    source_hash = Column(String, nullable=False)       # hash of input files
    status = Column(String, default="success")
    diff_summary = Column(JSON, default=dict)          # what changed
