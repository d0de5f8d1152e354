import logging
from typing import Any, Dict, Iterable, Union

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from admission import AdmissionController
from config import Settings
from errors import DomainError, PermissionDenied, ValidationFailed, VenueNotFound
from models import ApprovalState, DateKind, Principal, Venue
from notifications import NotificationDispatcher
from schemas import BookingCreate, ImportReport, ImportRow, SkippedRow

logger = logging.getLogger(__name__)


class BulkImporter:
    """Loads a timetable row by row through the normal admission path.

    A row that fails (unknown hall, bad times, slots taken) is skipped and
    reported; the rest of the batch still goes in.
    """

    def __init__(self, session: AsyncSession, dispatcher: NotificationDispatcher, settings: Settings, **kwargs):
        self.session = session
        self.settings = settings
        self.admission = AdmissionController(session, dispatcher, settings, **kwargs)

    async def _venue_id(self, name: str) -> int:
        result = await self.session.execute(select(Venue.id).where(Venue.name == name.strip()))
        venue_id = result.scalars().first()
        if venue_id is None:
            raise VenueNotFound(f"No hall found for name: {name}")
        return venue_id

    async def import_rows(
        self, actor: Principal, rows: Iterable[Union[ImportRow, Dict[str, Any]]]
    ) -> ImportReport:
        """Rows may be raw spreadsheet dicts; each one is parsed on its own."""
        if actor.role not in self.settings.staff_roles:
            raise PermissionDenied("Only staff may import bookings")

        report = ImportReport()
        for index, raw in enumerate(rows, start=1):
            try:
                row = raw if isinstance(raw, ImportRow) else ImportRow.model_validate(raw)
                request = BookingCreate(
                    venue_id=await self._venue_id(row.venue_name),
                    event_name=row.course,
                    organizer=row.teacher_name,
                    date_kind=DateKind.MULTI_DAY,
                    start_date=row.start_date,
                    end_date=row.end_date,
                    weekday=row.day,
                    start_time=row.start_time,
                    end_time=row.end_time,
                    department=row.department,
                    organizing_club=row.batch,
                )
                booking = await self.admission.request_booking(
                    actor, request, initial_state=ApprovalState.APPROVED
                )
            except ValidationError as exc:
                reason = "; ".join(
                    f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
                )
                logger.warning("Skipping import row %s (unreadable): %s", index, reason)
                report.skipped.append(SkippedRow(row=index, code=ValidationFailed.default_code, reason=reason))
                continue
            except DomainError as exc:
                logger.warning("Skipping import row %s (%s): %s", index, exc.code, exc.message)
                report.skipped.append(SkippedRow(row=index, code=exc.code, reason=exc.message))
                continue
            report.created.append(booking.id)

        logger.info("Import finished: %s created, %s skipped", len(report.created), len(report.skipped))
        return report
