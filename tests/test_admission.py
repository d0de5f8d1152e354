import asyncio
from datetime import date

import pytest
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

from admission import AdmissionController, plan_booking
from conftest import BOOKING_DAY, FailingNotifier, booking_request, count_entries
from errors import (
    InvalidRange,
    PermissionDenied,
    PersistenceError,
    SlotConflict,
    ValidationFailed,
    VenueNotFound,
)
from models import ApprovalState, Booking, DateKind, Principal, ReservationEntry
from notifications import NotificationDispatcher


@pytest.fixture
def controller(session, dispatcher, settings, clock):
    return AdmissionController(session, dispatcher, settings, clock)


async def count_bookings(session) -> int:
    result = await session.execute(select(func.count()).select_from(Booking))
    return result.scalar_one()


@pytest.mark.asyncio
async def test_student_request_is_admitted_as_pending(session, seed, controller, dispatcher, notifier):
    hall = seed.venues["LT-1"]
    booking = await controller.request_booking(seed.users["student"], booking_request(hall))

    assert booking.approval_state == ApprovalState.PENDING
    assert booking.venue_name == "LT-1"
    assert booking.requester_id == seed.user_ids["student"]
    assert booking.email == "sam@campus.edu"
    assert await count_entries(session, booking_id=booking.id) == 4
    assert await count_entries(session, booking_id=None) == 0

    await dispatcher.drain()
    assert [(to, subject) for to, subject, _ in notifier.sent] == [("owner@campus.edu", "New Booking Request")]


@pytest.mark.asyncio
async def test_faculty_request_is_auto_approved(seed, controller):
    booking = await controller.request_booking(seed.users["faculty"], booking_request(seed.venues["LT-1"]))
    assert booking.approval_state == ApprovalState.APPROVED


@pytest.mark.asyncio
async def test_approval_policy_is_injectable(session, seed, dispatcher, settings, clock):
    controller = AdmissionController(
        session, dispatcher, settings, clock, policy=lambda requester: ApprovalState.PENDING
    )
    booking = await controller.request_booking(seed.users["faculty"], booking_request(seed.venues["LT-1"]))
    assert booking.approval_state == ApprovalState.PENDING


@pytest.mark.asyncio
@pytest.mark.parametrize("start, end", [("10:00", "10:00"), ("11:00", "09:00")])
async def test_inverted_range_is_rejected_before_claiming(session, seed, controller, start, end):
    with pytest.raises(ValidationFailed) as excinfo:
        await controller.request_booking(
            seed.users["student"], booking_request(seed.venues["LT-1"], start=start, end=end)
        )
    assert isinstance(excinfo.value, InvalidRange)
    assert await count_entries(session) == 0
    assert await count_bookings(session) == 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides, field",
    [
        ({"organizer": "Grace"}, "organizer"),
        ({"event_name": "  "}, "event_name"),
        ({"event_date": None}, "event_date"),
        ({"start_time": None}, "start_time"),
        ({"date_kind": "multi-day", "start_date": date(2025, 3, 10), "end_date": date(2025, 3, 10)}, "end_date"),
        ({"date_kind": "multi-day", "start_date": None, "end_date": date(2025, 3, 20)}, "start_date"),
    ],
)
async def test_field_validation(session, seed, controller, overrides, field):
    with pytest.raises(ValidationFailed) as excinfo:
        await controller.request_booking(seed.users["student"], booking_request(seed.venues["LT-1"], **overrides))
    assert excinfo.value.field == field
    assert await count_entries(session) == 0


@pytest.mark.asyncio
async def test_unknown_venue(seed, controller):
    with pytest.raises(VenueNotFound):
        await controller.request_booking(seed.users["student"], booking_request(9999))


@pytest.mark.asyncio
async def test_role_outside_booking_roles_is_refused(seed, controller):
    visitor = Principal(id=seed.user_ids["student"], email="sam@campus.edu", role="visitor")
    with pytest.raises(PermissionDenied):
        await controller.request_booking(visitor, booking_request(seed.venues["LT-1"]))


@pytest.mark.asyncio
async def test_overlap_is_a_slot_conflict(session, seed, controller):
    hall = seed.venues["LT-1"]
    await controller.request_booking(seed.users["student"], booking_request(hall, "09:00", "10:00"))

    with pytest.raises(SlotConflict) as excinfo:
        await controller.request_booking(seed.users["other_student"], booking_request(hall, "09:45", "11:00"))

    assert excinfo.value.details["conflicts"] == {"2025-03-10": [39]}
    assert await count_bookings(session) == 1
    assert await count_entries(session) == 4


@pytest.mark.asyncio
async def test_concurrent_overlapping_requests_admit_exactly_one(seed, session_factory, dispatcher, settings, clock):
    hall = seed.venues["LT-1"]

    async def attempt(who, start, end):
        async with session_factory() as session:
            controller = AdmissionController(session, dispatcher, settings, clock)
            booking = await controller.request_booking(seed.users[who], booking_request(hall, start, end))
            return booking.id

    results = await asyncio.gather(
        attempt("student", "09:00", "10:00"),
        attempt("other_student", "09:30", "10:30"),
        return_exceptions=True,
    )

    admitted = [r for r in results if isinstance(r, int)]
    conflicts = [r for r in results if isinstance(r, SlotConflict)]
    assert len(admitted) == 1
    assert len(conflicts) == 1

    async with session_factory() as session:
        duplicates = await session.execute(
            select(ReservationEntry.venue_id, ReservationEntry.day, ReservationEntry.slot)
            .group_by(ReservationEntry.venue_id, ReservationEntry.day, ReservationEntry.slot)
            .having(func.count() > 1)
        )
        assert duplicates.all() == []
        assert await count_entries(session) == 4
        assert await count_bookings(session) == 1
        assert await count_entries(session, booking_id=admitted[0]) == 4


@pytest.mark.asyncio
async def test_concurrent_adjacent_requests_both_succeed(seed, session_factory, dispatcher, settings, clock):
    hall = seed.venues["LT-1"]

    async def attempt(who, start, end):
        async with session_factory() as session:
            controller = AdmissionController(session, dispatcher, settings, clock)
            booking = await controller.request_booking(seed.users[who], booking_request(hall, start, end))
            return booking.id

    first, second = await asyncio.gather(
        attempt("student", "09:00", "10:00"),
        attempt("other_student", "10:00", "11:00"),
    )
    assert first != second

    async with session_factory() as session:
        assert await count_entries(session, booking_id=first) == 4
        assert await count_entries(session, booking_id=second) == 4


@pytest.mark.asyncio
async def test_failed_booking_write_releases_the_claim(session, seed, controller, dispatcher, settings, clock, monkeypatch):
    hall = seed.venues["LT-1"]

    async def broken_write(*args, **kwargs):
        raise SQLAlchemyError("disk I/O error")

    monkeypatch.setattr(controller, "_persist_booking", broken_write)
    with pytest.raises(PersistenceError):
        await controller.request_booking(seed.users["student"], booking_request(hall))

    assert await count_entries(session) == 0
    assert await count_bookings(session) == 0

    retry = AdmissionController(session, dispatcher, settings, clock)
    booking = await retry.request_booking(seed.users["student"], booking_request(hall))
    assert await count_entries(session, booking_id=booking.id) == 4


@pytest.mark.asyncio
async def test_failed_link_removes_claim_and_booking(session, seed, controller, monkeypatch):
    hall = seed.venues["LT-1"]

    async def broken_link(claim, booking_id):
        raise PersistenceError("link failed")

    monkeypatch.setattr(controller.ledger, "link_to_booking", broken_link)
    with pytest.raises(PersistenceError):
        await controller.request_booking(seed.users["student"], booking_request(hall))

    assert await count_entries(session) == 0
    assert await count_bookings(session) == 0


@pytest.mark.asyncio
async def test_notification_failure_does_not_undo_admission(session, seed, settings, clock):
    dispatcher = NotificationDispatcher(FailingNotifier())
    controller = AdmissionController(session, dispatcher, settings, clock)

    booking = await controller.request_booking(seed.users["student"], booking_request(seed.venues["LT-1"]))
    booking_id = booking.id
    await dispatcher.drain()

    assert await count_bookings(session) == 1
    assert await count_entries(session, booking_id=booking_id) == 4


@pytest.mark.asyncio
async def test_multi_day_weekly_booking_claims_each_matching_date(session, seed, controller):
    request = booking_request(
        seed.venues["LT-3"],
        "14:00",
        "15:00",
        date_kind="multi-day",
        event_date=None,
        start_date=date(2025, 3, 3),
        end_date=date(2025, 3, 23),
        weekday="Monday",
    )
    booking = await controller.request_booking(seed.users["faculty"], request)

    assert booking.date_kind == DateKind.MULTI_DAY
    assert booking.weekday == "monday"
    assert booking.event_date is None
    assert await count_entries(session, booking_id=booking.id) == 3 * 4

    with pytest.raises(SlotConflict):
        await controller.request_booking(
            seed.users["student"], booking_request(seed.venues["LT-3"], "14:30", "15:30", day=date(2025, 3, 17))
        )
    # Tuesday is untouched
    await controller.request_booking(
        seed.users["student"], booking_request(seed.venues["LT-3"], "14:00", "15:00", day=date(2025, 3, 18))
    )


def test_plan_booking_normalizes_iso_times():
    plan = plan_booking(
        DateKind.HALF_DAY,
        BOOKING_DAY,
        None,
        None,
        None,
        "2000-01-01T09:00:00.000Z",
        "2000-01-01T09:30:00.000Z",
        15,
    )
    assert plan.slots == (36, 37)
    assert plan.days == [BOOKING_DAY]
    assert plan.start_time.hour == 9


@pytest.mark.asyncio
async def test_failure_after_the_booking_commit_removes_the_booking(session, seed, controller, monkeypatch):
    hall = seed.venues["LT-1"]

    async def broken_refresh(*args, **kwargs):
        raise SQLAlchemyError("connection reset")

    monkeypatch.setattr(controller.session, "refresh", broken_refresh)
    with pytest.raises(PersistenceError):
        await controller.request_booking(seed.users["student"], booking_request(hall))

    assert await count_entries(session) == 0
    assert await count_bookings(session) == 0
