import asyncio
import logging
from datetime import date, datetime, time
from typing import Any, Callable, Dict, List

from fastapi import Depends, FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from admission import AdmissionController
from auth import get_current_user
from availability import available_venues
from config import Settings, configure_logging, get_settings
from database import async_session, get_session, init_db
from errors import VenueNotFound, register_error_handlers
from importer import BulkImporter
from ledger import ReservationLedger
from lifecycle import BookingLifecycle
from models import Booking, Principal, Venue, utcnow
from notifications import NotificationDispatcher, build_notifier
from schemas import (
    ApprovalUpdate,
    AvailabilityResponse,
    BookingCreate,
    BookingCreated,
    ConflictReport,
    ImportReport,
    ScheduleUpdate,
    SlotStatus,
    VenueSchedule,
)
from slots import date_key, slot_bounds, slots_for

logger = logging.getLogger(__name__)

settings = get_settings()
configure_logging(settings.LOG_LEVEL)

app = FastAPI(title="Lecture Hall Booking System")
app.state.dispatcher = NotificationDispatcher(build_notifier(settings))
register_error_handlers(app)

# Hours shown on the dashboard grid (UTC)
OFFICE_HOURS = (time(8, 0), time(20, 0))


# --- Dependencies ---

def get_dispatcher(request: Request) -> NotificationDispatcher:
    return request.app.state.dispatcher


def get_clock() -> Callable[[], datetime]:
    return utcnow


def get_admission(
    session: AsyncSession = Depends(get_session),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    settings: Settings = Depends(get_settings),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> AdmissionController:
    return AdmissionController(session, dispatcher, settings, clock)


def get_lifecycle(
    session: AsyncSession = Depends(get_session),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    settings: Settings = Depends(get_settings),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> BookingLifecycle:
    return BookingLifecycle(session, dispatcher, settings, clock)


def get_ledger(
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> ReservationLedger:
    return ReservationLedger(session, settings.CLAIM_HOLD_SECONDS, clock)


# --- Background sweeper for abandoned claims ---

async def sweep_expired_claims(
    interval: int,
    session_factory: Callable[[], AsyncSession] = async_session,
    clock: Callable[[], datetime] = utcnow,
) -> None:
    while True:
        try:
            async with session_factory() as session:
                await ReservationLedger(session, settings.CLAIM_HOLD_SECONDS, clock).sweep_expired()
        except Exception:
            logger.exception("Reservation sweep failed")
        await asyncio.sleep(interval)


@app.on_event("startup")
async def on_startup():
    await init_db()
    app.state.sweeper = asyncio.create_task(sweep_expired_claims(settings.SWEEP_INTERVAL_SECONDS))


@app.on_event("shutdown")
async def on_shutdown():
    sweeper = getattr(app.state, "sweeper", None)
    if sweeper is not None:
        sweeper.cancel()
    await app.state.dispatcher.drain()


# --- Venues & availability ---

@app.get("/venues", response_model=List[Venue])
async def list_venues(session: AsyncSession = Depends(get_session)):
    result = await session.execute(select(Venue).order_by(Venue.name))
    return result.scalars().all()


@app.get("/availability", response_model=AvailabilityResponse)
async def get_availability(
    target_date: date,
    start_time: time,
    end_time: time,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    result = await available_venues(session, target_date, start_time, end_time, settings, clock)
    return AvailabilityResponse(venues=result.venues, message=result.message)


@app.get("/dashboard-grid", response_model=List[VenueSchedule])
async def get_dashboard_grid(
    target_date: date,
    session: AsyncSession = Depends(get_session),
    ledger: ReservationLedger = Depends(get_ledger),
    settings: Settings = Depends(get_settings),
):
    # Step 1: One query for every live entry on this date
    occupancy = await ledger.occupancy(target_date)

    result = await session.execute(select(Venue).order_by(Venue.name))
    venues = result.scalars().all()
    grid_slots = slots_for(target_date, *OFFICE_HOURS, settings.SLOT_MINUTES)

    # Step 2: Construct the Grid
    dashboard_data = []
    for venue in venues:
        venue_schedule = []
        for slot in grid_slots:
            start, end = slot_bounds(slot, settings.SLOT_MINUTES)
            label = f"{start:%H:%M}-{end:%H:%M}"
            key = (venue.id, slot)
            if key not in occupancy:
                state, booking_id = "available", None
            elif occupancy[key] is None:
                state, booking_id = "held", None
            else:
                state, booking_id = "occupied", occupancy[key]
            venue_schedule.append(SlotStatus(time_label=label, slot=slot, status=state, booking_id=booking_id))

        dashboard_data.append(VenueSchedule(venue_id=venue.id, venue_name=venue.name, schedule=venue_schedule))

    return dashboard_data


@app.get("/venues/{venue_id}/conflicts", response_model=ConflictReport)
async def get_conflicts(
    venue_id: int,
    target_date: date,
    start_time: time,
    end_time: time,
    session: AsyncSession = Depends(get_session),
    ledger: ReservationLedger = Depends(get_ledger),
    settings: Settings = Depends(get_settings),
):
    if await session.get(Venue, venue_id) is None:
        raise VenueNotFound("Hall not found", details={"venue_id": venue_id})
    requested = slots_for(target_date, start_time, end_time, settings.SLOT_MINUTES)
    taken = await ledger.find_conflicts(venue_id, target_date, requested)
    return ConflictReport(
        venue_id=venue_id,
        date=date_key(target_date),
        requested=list(requested),
        conflicting=sorted(taken),
    )


# --- Bookings ---

@app.post("/bookings", status_code=status.HTTP_201_CREATED, response_model=BookingCreated)
async def create_booking(
    booking_data: BookingCreate,
    user: Principal = Depends(get_current_user),
    admission: AdmissionController = Depends(get_admission),
):
    booking = await admission.request_booking(user, booking_data)
    return BookingCreated(
        message="Booking created successfully",
        id=booking.id,
        approval_state=booking.approval_state,
    )


@app.post("/bookings/import", response_model=ImportReport)
async def import_bookings(
    rows: List[Dict[str, Any]],
    user: Principal = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    settings: Settings = Depends(get_settings),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    importer = BulkImporter(session, dispatcher, settings, clock=clock)
    return await importer.import_rows(user, rows)


@app.get("/bookings/mine", response_model=List[Booking])
async def my_bookings(
    user: Principal = Depends(get_current_user),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    return await lifecycle.for_requester(user)


@app.get("/bookings/review", response_model=List[Booking])
async def bookings_for_review(
    user: Principal = Depends(get_current_user),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    return await lifecycle.for_review(user)


@app.get("/events", response_model=List[Booking])
async def upcoming_events(lifecycle: BookingLifecycle = Depends(get_lifecycle)):
    return await lifecycle.upcoming_events()


@app.get("/bookings/{booking_id}", response_model=Booking)
async def get_booking(
    booking_id: int,
    user: Principal = Depends(get_current_user),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    return await lifecycle.get(user, booking_id)


@app.put("/bookings/{booking_id}/approval", response_model=Booking)
async def update_approval(
    booking_id: int,
    update: ApprovalUpdate,
    user: Principal = Depends(get_current_user),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    return await lifecycle.set_approval(user, booking_id, update.approval_state, update.rejection_reason)


@app.put("/bookings/{booking_id}/schedule", response_model=Booking)
async def reschedule_booking(
    booking_id: int,
    changes: ScheduleUpdate,
    user: Principal = Depends(get_current_user),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    return await lifecycle.reschedule(user, booking_id, changes)


@app.delete("/bookings/{booking_id}")
async def delete_booking(
    booking_id: int,
    user: Principal = Depends(get_current_user),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    await lifecycle.delete(user, booking_id)
    return {"message": "Booking deleted successfully"}


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
