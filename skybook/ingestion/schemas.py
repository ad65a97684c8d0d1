from pydantic import BaseModel, field_validator, model_validator
from typing import Optional
from datetime import datetime

from skybook.scheduling.entities import AircraftStatus, Role
from skybook.scheduling.timerange import to_utc_naive


class AircraftSchema(BaseModel):
    id: str
    registration: str
    make: Optional[str] = None
    model: Optional[str] = None
    status: AircraftStatus = AircraftStatus.SERVICEABLE
    hourly_rate: float = 0.0


class FieldSettingSchema(BaseModel):
    field_name: str
    label: str = ""
    is_required: bool = False
    is_visible: bool = True
    applies_to_roles: list[str]
    display_order: int = 0
    help_text: Optional[str] = None

    @field_validator("applies_to_roles")
    @classmethod
    def known_roles(cls, v):
        allowed = {r.value for r in Role}
        bad = [r for r in v if r not in allowed]
        assert not bad, f"Unknown roles: {bad}"
        return v


class _WindowSchema(BaseModel):
    id: str
    start_time: datetime
    end_time: datetime
    reason: Optional[str] = None

    @field_validator("start_time", "end_time")
    @classmethod
    def as_utc(cls, v):
        return to_utc_naive(v)

    @model_validator(mode="after")
    def end_after_start(self):
        assert self.end_time > self.start_time, f"{self.id}: end_time must be after start_time"
        return self


class MaintenanceWindowSchema(_WindowSchema):
    aircraft_id: str


class InstructorUnavailabilitySchema(_WindowSchema):
    instructor_id: str
