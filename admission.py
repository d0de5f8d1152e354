"""
Admission control for booking requests.

A request is admitted in three steps: claim its slots in the ledger, write the
booking, link the claimed rows to it. The claim decides admission; if either
later step fails the claim is released so no orphaned rows remain.
"""

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Callable, Optional, Sequence

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings
from errors import InvalidRange, PermissionDenied, PersistenceError, ValidationFailed, VenueNotFound
from ledger import ClaimToken, ReservationLedger
from models import ApprovalState, Booking, DateKind, Principal, Venue, utcnow
from notifications import NotificationDispatcher, new_request_message
from schemas import BookingCreate, TimeInput
from slots import WEEKDAYS, dates_between, minutes_since_midnight, slots_for

logger = logging.getLogger(__name__)

# "Full Name", optionally with up to four more parts
ORGANIZER_PATTERN = re.compile(r"^[\w'.]+\s[\w'.]+(\s+[\w'.]+){0,4}\s*$")

MAX_SPAN_DAYS = 366

ApprovalPolicy = Callable[[Principal], ApprovalState]


def role_policy(settings: Settings) -> ApprovalPolicy:
    """Roles in AUTO_APPROVE_ROLES skip review; everyone else starts pending."""

    def policy(requester: Principal) -> ApprovalState:
        if requester.role in settings.auto_approve_roles:
            return ApprovalState.APPROVED
        return ApprovalState.PENDING

    return policy


@dataclass(frozen=True)
class SlotPlan:
    days: Sequence[date]
    start_time: time
    end_time: time
    slots: Sequence[int]


def utc_time_of_day(value: TimeInput) -> time:
    minutes = minutes_since_midnight(value)
    return time(minutes // 60, minutes % 60)


def plan_booking(
    date_kind: DateKind,
    event_date: Optional[date],
    start_date: Optional[date],
    end_date: Optional[date],
    weekday: Optional[str],
    start_time: Optional[TimeInput],
    end_time: Optional[TimeInput],
    granularity: int,
) -> SlotPlan:
    """Apply the date-kind rules and slice the request into ledger units."""
    if start_time is None:
        raise ValidationFailed("Please fill all details", field="start_time")
    if end_time is None:
        raise ValidationFailed("Please fill all details", field="end_time")

    if date_kind in (DateKind.SINGLE_DAY, DateKind.HALF_DAY):
        if event_date is None:
            raise ValidationFailed("Please fill all details", field="event_date")
        days = [event_date]
    else:
        if start_date is None:
            raise ValidationFailed("Please fill all details", field="start_date")
        if end_date is None:
            raise ValidationFailed("Please fill all details", field="end_date")
        if end_date <= start_date:
            raise ValidationFailed("Event end date should be after event start date", field="end_date")
        if (end_date - start_date).days > MAX_SPAN_DAYS:
            raise ValidationFailed(f"A booking may span at most {MAX_SPAN_DAYS} days", field="end_date")
        if weekday and weekday.strip().lower() not in WEEKDAYS:
            raise ValidationFailed(f"Unknown weekday {weekday!r}", field="weekday")
        days = list(dates_between(start_date, end_date, weekday))
        if not days:
            raise ValidationFailed("No dates in range fall on the requested weekday", field="weekday")

    start, end = utc_time_of_day(start_time), utc_time_of_day(end_time)
    slots = slots_for(days[0], start, end, granularity)
    if not slots:
        raise InvalidRange("End time should be after start time", field="end_time")

    return SlotPlan(days=days, start_time=start, end_time=end, slots=slots)


class AdmissionController:
    def __init__(
        self,
        session: AsyncSession,
        dispatcher: NotificationDispatcher,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
        policy: Optional[ApprovalPolicy] = None,
    ):
        self.session = session
        self.dispatcher = dispatcher
        self.settings = settings
        self.clock = clock
        self.policy = policy or role_policy(settings)
        self.ledger = ReservationLedger(session, settings.CLAIM_HOLD_SECONDS, clock)

    def _check_fields(self, request: BookingCreate) -> None:
        if not request.event_name or not request.event_name.strip():
            raise ValidationFailed("Please fill all details", field="event_name")
        if not ORGANIZER_PATTERN.match(request.organizer or ""):
            raise ValidationFailed("Please enter your full Event Coordinator name", field="organizer")

    async def request_booking(
        self,
        requester: Principal,
        request: BookingCreate,
        *,
        initial_state: Optional[ApprovalState] = None,
    ) -> Booking:
        if requester.role not in self.settings.booking_roles:
            logger.warning("User %s with role %r may not book halls", requester.id, requester.role)
            raise PermissionDenied("Your role may not request bookings")

        venue = await self.session.get(Venue, request.venue_id)
        if venue is None:
            raise VenueNotFound("Hall not found", details={"venue_id": request.venue_id})
        venue_id, venue_name, owner_email = venue.id, venue.name, venue.owner_email

        self._check_fields(request)
        plan = plan_booking(
            request.date_kind,
            request.event_date,
            request.start_date,
            request.end_date,
            request.weekday,
            request.start_time,
            request.end_time,
            self.settings.SLOT_MINUTES,
        )

        claim = await self.ledger.try_claim_many(venue_id, plan.days, plan.slots)

        state = initial_state or self.policy(requester)
        booking_id = None
        try:
            booking = await self._persist_booking(requester, venue_id, venue_name, request, plan, state)
            booking_id = booking.id
            await self.session.refresh(booking)
            await self.ledger.link_to_booking(claim, booking_id)
        except (SQLAlchemyError, PersistenceError) as exc:
            logger.error("Booking creation failed on venue %s after claim %s: %s", venue_id, claim.token, exc)
            await self._roll_back(claim, booking_id)
            raise PersistenceError("Booking could not be created, please retry.") from exc

        logger.info(
            "Booking %s admitted on venue %s (%s slots, %s)",
            booking.id, venue_id, claim.size, state.value,
        )
        subject, body = new_request_message(self.settings, booking)
        self.dispatcher.dispatch(owner_email, subject, body)
        return booking

    async def _persist_booking(
        self,
        requester: Principal,
        venue_id: int,
        venue_name: str,
        request: BookingCreate,
        plan: SlotPlan,
        state: ApprovalState,
    ) -> Booking:
        multi_day = request.date_kind == DateKind.MULTI_DAY
        now = self.clock()
        booking = Booking(
            requester_id=requester.id,
            email=requester.email,
            venue_id=venue_id,
            venue_name=venue_name,
            event_name=request.event_name.strip(),
            organizer=request.organizer.strip(),
            organizing_club=request.organizing_club,
            department=request.department,
            institution=request.institution,
            phone_number=request.phone_number,
            date_kind=request.date_kind,
            event_date=None if multi_day else request.event_date,
            start_date=request.start_date if multi_day else None,
            end_date=request.end_date if multi_day else None,
            weekday=request.weekday.strip().lower() if multi_day and request.weekday else None,
            start_time=plan.start_time,
            end_time=plan.end_time,
            approval_state=state,
            created_at=now,
            updated_at=now,
        )
        self.session.add(booking)
        await self.session.commit()
        return booking

    async def _roll_back(self, claim: ClaimToken, booking_id: Optional[int]) -> None:
        await self.session.rollback()
        try:
            await self.ledger.release_claim(claim)
        except SQLAlchemyError:
            await self.session.rollback()
            logger.critical(
                "Could not release claim %s on venue %s; %s slots stay held until the hold expires",
                claim.token, claim.venue_id, claim.size,
                exc_info=True,
            )

        if booking_id is None:
            return
        try:
            await self.session.execute(delete(Booking).where(Booking.id == booking_id))
            await self.session.commit()
        except SQLAlchemyError:
            await self.session.rollback()
            logger.exception("Could not remove unlinked booking %s", booking_id)
