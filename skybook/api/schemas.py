from pydantic import BaseModel, field_validator
from typing import Optional
from datetime import datetime

from skybook.scheduling.entities import PaymentType, Role
from skybook.scheduling.field_policy import BOOKING_FIELDS
from skybook.scheduling.timerange import to_utc_naive
from skybook.scheduling.validator import BookingRequest


class BookingIn(BaseModel):
    student_id: Optional[str] = None
    aircraft_id: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    instructor_id: Optional[str] = None
    payment_type: Optional[str] = None      # checked by the validator, not here
    notes: Optional[str] = None

    @field_validator("start_time", "end_time")
    @classmethod
    def as_utc(cls, v):
        return to_utc_naive(v) if v is not None else v

    def to_request(self, booking_id: Optional[str] = None) -> BookingRequest:
        return BookingRequest(
            student_id=self.student_id,
            aircraft_id=self.aircraft_id,
            start=self.start_time,
            end=self.end_time,
            instructor_id=self.instructor_id,
            payment_type=self.payment_type,
            notes=self.notes,
            booking_id=booking_id,
            fields_set=frozenset(BOOKING_FIELDS[name] for name in self.model_fields_set),
        )


class CandidateIn(BaseModel):
    """A fully-specified booking to run through the detector only."""
    id: Optional[str] = None
    student_id: str
    aircraft_id: str
    start_time: datetime
    end_time: datetime
    instructor_id: Optional[str] = None
    payment_type: PaymentType = PaymentType.PREPAID

    @field_validator("start_time", "end_time")
    @classmethod
    def as_utc(cls, v):
        return to_utc_naive(v)


class FieldSettingIn(BaseModel):
    label: Optional[str] = None
    is_required: Optional[bool] = None
    is_visible: Optional[bool] = None
    applies_to_roles: Optional[list[Role]] = None
    display_order: Optional[int] = None
    help_text: Optional[str] = None

    def changes(self) -> dict:
        data = self.model_dump(exclude_none=True)
        if "applies_to_roles" in data:
            data["applies_to_roles"] = [r.value for r in self.applies_to_roles]
        return data
