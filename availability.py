import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from config import Settings
from ledger import ReservationLedger
from models import Venue, utcnow
from schemas import TimeInput
from slots import DateLike, slots_for

logger = logging.getLogger(__name__)


@dataclass
class AvailabilityResult:
    venues: List[Venue] = field(default_factory=list)
    message: Optional[str] = None


async def available_venues(
    session: AsyncSession,
    day: DateLike,
    start: TimeInput,
    end: TimeInput,
    settings: Settings,
    clock: Callable[[], datetime] = utcnow,
) -> AvailabilityResult:
    """Venues with no live ledger entry in the window. Advisory only.

    A bad window is answered with an empty list and a message rather than an
    error, since nothing is being reserved.
    """
    try:
        slots = slots_for(day, start, end, settings.SLOT_MINUTES)
    except ValueError as exc:
        return AvailabilityResult(message=f"Invalid date or time: {exc}")
    if not slots:
        return AvailabilityResult(message="End time must be later than start time")

    ledger = ReservationLedger(session, settings.CLAIM_HOLD_SECONDS, clock)
    occupied = await ledger.occupied_venue_ids(day, slots)

    statement = select(Venue).order_by(Venue.name)
    if occupied:
        statement = statement.where(Venue.id.not_in(sorted(occupied)))
    result = await session.execute(statement)
    venues = list(result.scalars().all())

    logger.debug("%s venues free on %s slots %s-%s", len(venues), day, slots[0], slots[-1])
    return AvailabilityResult(venues=venues)
