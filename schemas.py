from datetime import date, datetime, time
from typing import List, Optional, Union

from pydantic import BaseModel, Field

from models import ApprovalState, DateKind, Venue

# Times arrive either as "09:00" or as a full ISO timestamp on a dummy date
# ("2000-01-01T09:00:00.000Z"); both are reduced to a UTC time of day.
TimeInput = Union[time, datetime]


# Pydantic Schemas for Request/Response
class BookingCreate(BaseModel):
    venue_id: int
    event_name: str
    organizer: str
    date_kind: DateKind
    event_date: Optional[date] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    weekday: Optional[str] = None
    start_time: Optional[TimeInput] = None
    end_time: Optional[TimeInput] = None
    organizing_club: Optional[str] = None
    department: Optional[str] = None
    institution: Optional[str] = None
    phone_number: Optional[str] = None


class BookingCreated(BaseModel):
    message: str
    id: int
    approval_state: ApprovalState


class ApprovalUpdate(BaseModel):
    approval_state: ApprovalState
    rejection_reason: Optional[str] = None


class ScheduleUpdate(BaseModel):
    date_kind: Optional[DateKind] = None
    event_date: Optional[date] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    weekday: Optional[str] = None
    start_time: Optional[TimeInput] = None
    end_time: Optional[TimeInput] = None


class AvailabilityResponse(BaseModel):
    venues: List[Venue]
    message: Optional[str] = None


class ConflictReport(BaseModel):
    venue_id: int
    date: str
    requested: List[int]
    conflicting: List[int]


class SlotStatus(BaseModel):
    time_label: str
    slot: int
    status: str
    booking_id: Optional[int]


class VenueSchedule(BaseModel):
    venue_id: int
    venue_name: str
    schedule: List[SlotStatus]


class ImportRow(BaseModel):
    venue_name: str = Field(alias="Lt_name")
    start_date: date = Field(alias="start date")
    end_date: date = Field(alias="end date")
    day: Optional[str] = None
    start_time: TimeInput
    end_time: TimeInput
    course: str
    teacher_name: str
    designation: Optional[str] = None
    department: Optional[str] = Field(default=None, alias="Branch")
    batch: Optional[str] = Field(default=None, alias="Batch")

    model_config = {"populate_by_name": True}


class SkippedRow(BaseModel):
    row: int
    code: str
    reason: str


class ImportReport(BaseModel):
    created: List[int] = []
    skipped: List[SkippedRow] = []
