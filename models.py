from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, Index, UniqueConstraint
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    """Timezone-aware UTC timestamp, the form every datetime column stores."""
    return datetime.now(timezone.utc)


class Role(str, Enum):
    STUDENT = "student"
    FACULTY = "faculty"
    ADMIN = "admin"


class DateKind(str, Enum):
    SINGLE_DAY = "single-day"
    HALF_DAY = "half-day"
    MULTI_DAY = "multi-day"


class ApprovalState(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Venue(SQLModel, table=True):
    __tablename__ = "venues"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True, unique=True)
    capacity: int = 0
    location: Optional[str] = None
    amenities: Optional[str] = None
    owner_email: Optional[str] = Field(default=None, index=True)


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    email: str = Field(index=True, unique=True)
    role: Role = Role.STUDENT
    department: Optional[str] = None


@dataclass(frozen=True)
class Principal:
    """The authenticated caller, detached from any session."""

    id: int
    email: str
    role: str
    name: str = ""

    @classmethod
    def from_user(cls, user: User) -> "Principal":
        return cls(
            id=user.id,
            email=user.email,
            role=getattr(user.role, "value", user.role),
            name=user.name,
        )


class Booking(SQLModel, table=True):
    __tablename__ = "bookings"

    id: Optional[int] = Field(default=None, primary_key=True)
    requester_id: int = Field(foreign_key="users.id", index=True)
    email: Optional[str] = None

    venue_id: int = Field(foreign_key="venues.id", index=True)
    venue_name: str

    event_name: str
    organizer: str
    organizing_club: Optional[str] = None
    department: Optional[str] = None
    institution: Optional[str] = None
    phone_number: Optional[str] = None

    date_kind: DateKind
    event_date: Optional[date] = Field(default=None, index=True)
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    weekday: Optional[str] = None  # "monday" .. "sunday", multi-day only
    start_time: time
    end_time: time

    approval_state: ApprovalState = Field(default=ApprovalState.PENDING, index=True)
    rejection_reason: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


class ReservationEntry(SQLModel, table=True):
    __tablename__ = "reservation_entries"
    __table_args__ = (
        # CRITICAL: Database-level protection against double booking
        UniqueConstraint("venue_id", "day", "slot", name="unique_venue_day_slot"),
        Index("ix_reservation_entries_day_slot", "day", "slot"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    venue_id: int = Field(foreign_key="venues.id")
    day: str = Field(max_length=10)  # YYYY-MM-DD, UTC
    slot: int
    booking_id: Optional[int] = Field(default=None, foreign_key="bookings.id", index=True)
    claim_token: str = Field(index=True)
    created_at: datetime = Field(default_factory=utcnow, index=True, sa_type=DateTime(timezone=True))
