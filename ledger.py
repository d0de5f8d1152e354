"""
Reservation ledger: the persistent set of (venue, day, slot) claims.

The unique constraint on ``reservation_entries`` is the only thing standing
between two requests and a double booking. Nothing here checks-then-inserts;
every claim is a plain insert, and the database decides who wins.

An entry without a ``booking_id`` is an in-flight claim. Claims older than the
hold window are dead: reads ignore them, new claims delete them in the same
transaction before inserting, and ``sweep_expired`` removes the rest.
"""

import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, Optional, Set, Tuple

from sqlalchemy import delete, or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from errors import PersistenceError, SlotConflict
from models import ReservationEntry, utcnow
from slots import DateLike, date_key

logger = logging.getLogger(__name__)

DEFAULT_HOLD_SECONDS = 120


@dataclass(frozen=True)
class ClaimToken:
    """Handle on the rows inserted by one successful claim."""

    token: str
    venue_id: int
    days: Tuple[str, ...]
    slots: Tuple[int, ...]

    @property
    def size(self) -> int:
        return len(self.days) * len(self.slots)


class ReservationLedger:
    def __init__(
        self,
        session: AsyncSession,
        hold_seconds: int = DEFAULT_HOLD_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.hold_seconds = hold_seconds
        self.clock = clock

    # --- helpers ---

    def _cutoff(self) -> datetime:
        return self.clock() - timedelta(seconds=self.hold_seconds)

    def _live(self):
        return or_(
            ReservationEntry.booking_id.is_not(None),
            ReservationEntry.created_at >= self._cutoff(),
        )

    def _purge_expired(self, venue_id: int, days: Tuple[str, ...], slots: Tuple[int, ...]):
        return (
            delete(ReservationEntry)
            .where(
                ReservationEntry.venue_id == venue_id,
                ReservationEntry.day.in_(days),
                ReservationEntry.slot.in_(slots),
                ReservationEntry.booking_id.is_(None),
                ReservationEntry.created_at < self._cutoff(),
            )
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    def _normalize(days: Iterable[DateLike], slots: Iterable[int]) -> Tuple[Tuple[str, ...], Tuple[int, ...]]:
        keys = tuple(sorted({date_key(d) for d in days}))
        numbers = tuple(sorted(set(slots)))
        if not keys or not numbers:
            raise ValueError("A claim needs at least one day and one slot")
        return keys, numbers

    async def _taken(
        self,
        venue_id: int,
        days: Tuple[str, ...],
        slots: Tuple[int, ...],
        exclude_booking_id: Optional[int] = None,
    ) -> Dict[str, list]:
        statement = select(ReservationEntry.day, ReservationEntry.slot).where(
            ReservationEntry.venue_id == venue_id,
            ReservationEntry.day.in_(days),
            ReservationEntry.slot.in_(slots),
            self._live(),
        )
        if exclude_booking_id is not None:
            statement = statement.where(
                or_(
                    ReservationEntry.booking_id.is_(None),
                    ReservationEntry.booking_id != exclude_booking_id,
                )
            )
        result = await self.session.execute(statement)

        taken: Dict[str, list] = defaultdict(list)
        for day, slot in result.all():
            taken[day].append(slot)
        return {day: sorted(numbers) for day, numbers in taken.items()}

    async def _conflict(
        self,
        venue_id: int,
        days: Tuple[str, ...],
        slots: Tuple[int, ...],
        exclude_booking_id: Optional[int] = None,
    ) -> SlotConflict:
        taken = await self._taken(venue_id, days, slots, exclude_booking_id)
        logger.warning("Slot conflict on venue %s: %s", venue_id, taken)
        return SlotConflict(
            "Slot already booked for this venue and time.",
            details={"venue_id": venue_id, "conflicts": taken},
        )

    # --- claiming ---

    async def try_claim(self, venue_id: int, day: DateLike, slots: Iterable[int]) -> ClaimToken:
        return await self.try_claim_many(venue_id, [day], slots)

    async def try_claim_many(
        self, venue_id: int, days: Iterable[DateLike], slots: Iterable[int]
    ) -> ClaimToken:
        """Insert one unlinked entry per (day, slot), all or nothing.

        Raises ``SlotConflict`` if any triple is already held; no row from
        this attempt survives in that case.
        """
        keys, numbers = self._normalize(days, slots)
        claim = ClaimToken(uuid.uuid4().hex, venue_id, keys, numbers)
        now = self.clock()

        try:
            await self.session.execute(self._purge_expired(venue_id, keys, numbers))
            self.session.add_all(
                [
                    ReservationEntry(
                        venue_id=venue_id,
                        day=key,
                        slot=slot,
                        claim_token=claim.token,
                        created_at=now,
                    )
                    for key in keys
                    for slot in numbers
                ]
            )
            await self.session.commit()
        except IntegrityError:
            # This catches the UniqueConstraint violation
            await self.session.rollback()
            raise await self._conflict(venue_id, keys, numbers) from None
        except SQLAlchemyError as exc:
            await self.session.rollback()
            raise PersistenceError("Could not record the reservation.") from exc

        logger.debug("Claimed %s slots on venue %s (%s)", claim.size, venue_id, claim.token)
        return claim

    async def link_to_booking(self, claim: ClaimToken, booking_id: int) -> None:
        try:
            result = await self.session.execute(
                update(ReservationEntry)
                .where(
                    ReservationEntry.claim_token == claim.token,
                    ReservationEntry.booking_id.is_(None),
                )
                .values(booking_id=booking_id)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != claim.size:
                await self.session.rollback()
                raise PersistenceError(
                    "Reservation hold expired before the booking was linked.",
                    details={"expected": claim.size, "linked": result.rowcount},
                )
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            raise PersistenceError("Could not link the reservation to its booking.") from exc

    async def reclaim_for_booking(
        self,
        booking_id: int,
        venue_id: int,
        days: Iterable[DateLike],
        slots: Iterable[int],
    ) -> ClaimToken:
        """Swap a booking's entries for a new set in one transaction.

        Pending changes on the session (e.g. the edited booking row) commit
        together with the swap. On conflict everything rolls back and the
        booking keeps its old entries.
        """
        keys, numbers = self._normalize(days, slots)
        claim = ClaimToken(uuid.uuid4().hex, venue_id, keys, numbers)
        now = self.clock()

        try:
            await self.session.execute(
                delete(ReservationEntry)
                .where(ReservationEntry.booking_id == booking_id)
                .execution_options(synchronize_session=False)
            )
            await self.session.execute(self._purge_expired(venue_id, keys, numbers))
            self.session.add_all(
                [
                    ReservationEntry(
                        venue_id=venue_id,
                        day=key,
                        slot=slot,
                        booking_id=booking_id,
                        claim_token=claim.token,
                        created_at=now,
                    )
                    for key in keys
                    for slot in numbers
                ]
            )
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            raise await self._conflict(venue_id, keys, numbers, exclude_booking_id=booking_id) from None
        except SQLAlchemyError as exc:
            await self.session.rollback()
            raise PersistenceError("Could not move the reservation.") from exc

        return claim

    # --- releasing ---

    async def _delete(self, statement, commit: bool) -> int:
        result = await self.session.execute(statement.execution_options(synchronize_session=False))
        if commit:
            await self.session.commit()
        return result.rowcount

    async def release(self, venue_id: int, day: DateLike, slots: Iterable[int]) -> int:
        statement = delete(ReservationEntry).where(
            ReservationEntry.venue_id == venue_id,
            ReservationEntry.day == date_key(day),
            ReservationEntry.slot.in_(list(slots)),
        )
        return await self._delete(statement, commit=True)

    async def release_claim(self, claim: ClaimToken) -> int:
        statement = delete(ReservationEntry).where(ReservationEntry.claim_token == claim.token)
        return await self._delete(statement, commit=True)

    async def release_by_booking(self, booking_id: int, commit: bool = True) -> int:
        statement = delete(ReservationEntry).where(ReservationEntry.booking_id == booking_id)
        return await self._delete(statement, commit=commit)

    async def sweep_expired(self) -> int:
        statement = delete(ReservationEntry).where(
            ReservationEntry.booking_id.is_(None),
            ReservationEntry.created_at < self._cutoff(),
        )
        removed = await self._delete(statement, commit=True)
        if removed:
            logger.info("Swept %s expired reservation holds", removed)
        return removed

    # --- reads ---

    async def find_conflicts(self, venue_id: int, day: DateLike, slots: Iterable[int]) -> Set[int]:
        numbers = tuple(slots)
        if not numbers:
            return set()
        key = date_key(day)
        taken = await self._taken(venue_id, (key,), numbers)
        return set(taken.get(key, []))

    async def occupied_venue_ids(self, day: DateLike, slots: Iterable[int]) -> Set[int]:
        numbers = tuple(slots)
        if not numbers:
            return set()
        result = await self.session.execute(
            select(ReservationEntry.venue_id)
            .where(
                ReservationEntry.day == date_key(day),
                ReservationEntry.slot.in_(numbers),
                self._live(),
            )
            .distinct()
        )
        return set(result.scalars().all())

    async def occupancy(self, day: DateLike) -> Dict[Tuple[int, int], Optional[int]]:
        """(venue_id, slot) -> owning booking id (None while in flight)."""
        result = await self.session.execute(
            select(ReservationEntry.venue_id, ReservationEntry.slot, ReservationEntry.booking_id).where(
                ReservationEntry.day == date_key(day),
                self._live(),
            )
        )
        return {(venue_id, slot): booking_id for venue_id, slot, booking_id in result.all()}
