"""
Booking lifecycle: approval transitions, cancellation and rescheduling.

Ledger rows follow the booking. A rejected booking holds no slots, a deleted
one leaves none behind, and a moved one swaps its rows in the same
transaction that rewrites its date and time.
"""

import logging
from datetime import date, datetime
from typing import Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from admission import SlotPlan, plan_booking, role_policy
from config import Settings
from errors import BookingNotFound, PermissionDenied, PersistenceError, ValidationFailed
from ledger import ReservationLedger
from models import ApprovalState, Booking, DateKind, Principal, Venue, utcnow
from notifications import NotificationDispatcher, approval_message, new_request_message, rejection_message
from schemas import ScheduleUpdate

logger = logging.getLogger(__name__)


class BookingLifecycle:
    def __init__(
        self,
        session: AsyncSession,
        dispatcher: NotificationDispatcher,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.dispatcher = dispatcher
        self.settings = settings
        self.clock = clock
        self.ledger = ReservationLedger(session, settings.CLAIM_HOLD_SECONDS, clock)

    # --- authorization ---

    def is_staff(self, actor: Principal) -> bool:
        return actor.role in self.settings.staff_roles

    async def _can_review(self, actor: Principal, booking: Booking) -> bool:
        if self.is_staff(actor):
            return True
        venue = await self.session.get(Venue, booking.venue_id)
        return bool(venue and venue.owner_email and venue.owner_email == actor.email)

    async def _load(self, booking_id: int) -> Booking:
        booking = await self.session.get(Booking, booking_id)
        if booking is None:
            raise BookingNotFound("Booking not found", details={"booking_id": booking_id})
        return booking

    async def _load_for_owner_or_reviewer(self, actor: Principal, booking_id: int) -> Booking:
        booking = await self._load(booking_id)
        if booking.requester_id != actor.id and not await self._can_review(actor, booking):
            logger.warning("User %s denied access to booking %s", actor.id, booking_id)
            raise PermissionDenied("You may not modify this booking")
        return booking

    def _plan(self, booking: Booking) -> SlotPlan:
        return plan_booking(
            booking.date_kind,
            booking.event_date,
            booking.start_date,
            booking.end_date,
            booking.weekday,
            booking.start_time,
            booking.end_time,
            self.settings.SLOT_MINUTES,
        )

    @staticmethod
    def _window(booking: Booking) -> tuple:
        return (
            booking.date_kind,
            booking.event_date,
            booking.start_date,
            booking.end_date,
            booking.weekday,
            booking.start_time,
            booking.end_time,
        )

    async def _commit(self, action: str, booking_id: int) -> None:
        try:
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.exception("Could not %s booking %s", action, booking_id)
            raise PersistenceError(f"Could not {action} the booking.") from exc

    # --- approval state machine ---

    async def set_approval(
        self,
        actor: Principal,
        booking_id: int,
        state: ApprovalState,
        reason: Optional[str] = None,
    ) -> Booking:
        booking = await self._load(booking_id)
        if not await self._can_review(actor, booking):
            logger.warning("User %s may not review booking %s", actor.id, booking_id)
            raise PermissionDenied("Only staff may approve or reject bookings")

        reason = (reason or "").strip()
        if state == ApprovalState.REJECTED and not reason:
            raise ValidationFailed("A rejection reason is required", field="rejection_reason")

        previous = booking.approval_state
        venue_id = booking.venue_id
        booking.approval_state = state
        booking.updated_at = self.clock()
        if state == ApprovalState.REJECTED:
            booking.rejection_reason = reason

        if state == ApprovalState.REJECTED and previous != ApprovalState.REJECTED:
            try:
                released = await self.ledger.release_by_booking(booking_id, commit=False)
            except SQLAlchemyError as exc:
                await self.session.rollback()
                raise PersistenceError("Could not reject the booking.") from exc
            await self._commit("reject", booking_id)
            logger.info("Booking %s rejected, released %s slots", booking_id, released)
        elif previous == ApprovalState.REJECTED and state != ApprovalState.REJECTED:
            plan = self._plan(booking)
            claim = await self.ledger.reclaim_for_booking(booking_id, venue_id, plan.days, plan.slots)
            logger.info("Booking %s reinstated as %s, reclaimed %s slots", booking_id, state.value, claim.size)
        else:
            await self._commit("update", booking_id)
            logger.info("Booking %s is now %s", booking_id, state.value)

        if state == ApprovalState.APPROVED:
            subject, body = approval_message(self.settings, booking)
            self.dispatcher.dispatch(booking.email, subject, body)
        elif state == ApprovalState.REJECTED:
            subject, body = rejection_message(self.settings, booking)
            self.dispatcher.dispatch(booking.email, subject, body)
        return booking

    async def approve(self, actor: Principal, booking_id: int) -> Booking:
        return await self.set_approval(actor, booking_id, ApprovalState.APPROVED)

    async def reject(self, actor: Principal, booking_id: int, reason: Optional[str]) -> Booking:
        return await self.set_approval(actor, booking_id, ApprovalState.REJECTED, reason)

    # --- cancellation ---

    async def delete(self, actor: Principal, booking_id: int) -> None:
        booking = await self._load_for_owner_or_reviewer(actor, booking_id)
        try:
            released = await self.ledger.release_by_booking(booking_id, commit=False)
            await self.session.delete(booking)
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.exception("Could not delete booking %s", booking_id)
            raise PersistenceError("Could not delete the booking.") from exc
        logger.info("Booking %s deleted by user %s, released %s slots", booking_id, actor.id, released)

    # --- rescheduling ---

    async def reschedule(self, actor: Principal, booking_id: int, changes: ScheduleUpdate) -> Booking:
        """Move a booking to a new date/time, swapping its slots atomically.

        When the requester (rather than a reviewer) moves an approved booking,
        it goes back to pending unless their role is auto-approved.
        """
        booking = await self._load_for_owner_or_reviewer(actor, booking_id)
        venue_id = booking.venue_id
        reviewer = await self._can_review(actor, booking)

        merged = {
            "date_kind": booking.date_kind,
            "event_date": booking.event_date,
            "start_date": booking.start_date,
            "end_date": booking.end_date,
            "weekday": booking.weekday,
            "start_time": booking.start_time,
            "end_time": booking.end_time,
        }
        merged.update(changes.model_dump(exclude_unset=True))
        plan = plan_booking(
            merged["date_kind"],
            merged["event_date"],
            merged["start_date"],
            merged["end_date"],
            merged["weekday"],
            merged["start_time"],
            merged["end_time"],
            self.settings.SLOT_MINUTES,
        )

        before = self._window(booking)
        multi_day = merged["date_kind"] == DateKind.MULTI_DAY
        booking.date_kind = merged["date_kind"]
        booking.event_date = None if multi_day else merged["event_date"]
        booking.start_date = merged["start_date"] if multi_day else None
        booking.end_date = merged["end_date"] if multi_day else None
        booking.weekday = merged["weekday"].strip().lower() if multi_day and merged["weekday"] else None
        booking.start_time = plan.start_time
        booking.end_time = plan.end_time
        booking.updated_at = self.clock()

        requeued = (
            not reviewer
            and booking.approval_state == ApprovalState.APPROVED
            and self._window(booking) != before
            and role_policy(self.settings)(actor) != ApprovalState.APPROVED
        )
        if requeued:
            booking.approval_state = ApprovalState.PENDING
            venue = await self.session.get(Venue, venue_id)
            owner_email = venue.owner_email if venue else None

        if booking.approval_state == ApprovalState.REJECTED:
            # Rejected bookings hold no slots; only the record changes
            await self._commit("reschedule", booking_id)
        else:
            await self.ledger.reclaim_for_booking(booking_id, venue_id, plan.days, plan.slots)
        logger.info("Booking %s rescheduled by user %s", booking_id, actor.id)

        if requeued:
            logger.info("Booking %s moved by its requester, back to pending review", booking_id)
            subject, body = new_request_message(self.settings, booking)
            self.dispatcher.dispatch(owner_email, subject, body)
        return booking

    # --- reads ---

    async def get(self, actor: Principal, booking_id: int) -> Booking:
        return await self._load_for_owner_or_reviewer(actor, booking_id)

    async def for_requester(self, actor: Principal) -> List[Booking]:
        result = await self.session.execute(
            select(Booking).where(Booking.requester_id == actor.id).order_by(Booking.created_at.desc())
        )
        return list(result.scalars().all())

    async def for_review(self, actor: Principal) -> List[Booking]:
        statement = select(Booking).order_by(Booking.created_at.desc())
        if not self.is_staff(actor):
            statement = statement.join(Venue, Venue.id == Booking.venue_id).where(
                Venue.owner_email == actor.email
            )
        result = await self.session.execute(statement)
        return list(result.scalars().all())

    async def upcoming_events(self, today: Optional[date] = None) -> List[Booking]:
        today = today or self.clock().date()
        result = await self.session.execute(
            select(Booking)
            .where(
                Booking.approval_state == ApprovalState.APPROVED,
                Booking.date_kind.in_([DateKind.SINGLE_DAY, DateKind.HALF_DAY]),
                Booking.event_date >= today,
            )
            .order_by(Booking.event_date, Booking.start_time)
        )
        return list(result.scalars().all())
