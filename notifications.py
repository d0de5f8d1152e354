"""
Notification delivery for booking events.

Senders are injected; nothing here is a module-level singleton. Delivery is
best effort: the dispatcher runs each send as a background task and only
logs failures, so an SMTP outage can never undo an admission.
"""

import asyncio
import logging
import smtplib
import ssl
from email.message import EmailMessage
from typing import Optional, Protocol, Set

from config import Settings
from errors import NotificationError
from models import Booking

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def send(self, recipient: str, subject: str, body: str) -> None: ...


class SmtpNotifier:
    """Sends plain-text mail through the configured SMTP relay."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def _deliver(self, message: EmailMessage) -> None:
        s = self.settings
        if s.SMTP_USE_SSL:
            with smtplib.SMTP_SSL(s.SMTP_HOST, s.SMTP_PORT, context=ssl.create_default_context()) as server:
                if s.SMTP_USERNAME:
                    server.login(s.SMTP_USERNAME, s.SMTP_PASSWORD or "")
                server.send_message(message)
        else:
            with smtplib.SMTP(s.SMTP_HOST, s.SMTP_PORT) as server:
                server.ehlo()
                if server.has_extn("starttls"):
                    server.starttls(context=ssl.create_default_context())
                    server.ehlo()
                if s.SMTP_USERNAME:
                    server.login(s.SMTP_USERNAME, s.SMTP_PASSWORD or "")
                server.send_message(message)

    async def send(self, recipient: str, subject: str, body: str) -> None:
        message = EmailMessage()
        message["From"] = self.settings.SENDER_EMAIL
        message["To"] = recipient
        message["Subject"] = subject
        message.set_content(body)

        try:
            await asyncio.to_thread(self._deliver, message)
        except (smtplib.SMTPException, OSError) as exc:
            raise NotificationError(f"Could not send mail to {recipient}: {exc}") from exc


class LogNotifier:
    """Stand-in used when no SMTP host is configured."""

    async def send(self, recipient: str, subject: str, body: str) -> None:
        logger.info("Mail to %s: %s\n%s", recipient, subject, body)


def build_notifier(settings: Settings) -> Notifier:
    if settings.SMTP_HOST:
        return SmtpNotifier(settings)
    return LogNotifier()


class NotificationDispatcher:
    """Fire-and-forget wrapper around a ``Notifier``."""

    def __init__(self, notifier: Notifier):
        self.notifier = notifier
        self._pending: Set[asyncio.Task] = set()

    def dispatch(self, recipient: Optional[str], subject: str, body: str) -> Optional[asyncio.Task]:
        if not recipient:
            logger.warning("Dropping notification %r: no recipient", subject)
            return None
        task = asyncio.create_task(self._send(recipient, subject, body))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _send(self, recipient: str, subject: str, body: str) -> None:
        try:
            await self.notifier.send(recipient, subject, body)
        except Exception:
            logger.exception("Notification %r to %s failed", subject, recipient)

    async def drain(self) -> None:
        """Wait for every notification still in flight."""
        while self._pending:
            await asyncio.gather(*list(self._pending))


# --- Message bodies ---

def _booking_link(settings: Settings, booking: Booking) -> str:
    return f"{settings.CLIENT_URL.rstrip('/')}/bookingsView/{booking.id}"


def _when(booking: Booking) -> str:
    times = f"{booking.start_time:%H:%M}-{booking.end_time:%H:%M} UTC"
    if booking.event_date is not None:
        return f"{booking.event_date.isoformat()} {times}"
    span = f"{booking.start_date} to {booking.end_date}"
    if booking.weekday:
        span += f" ({booking.weekday.capitalize()}s)"
    return f"{span} {times}"


def _summary(booking: Booking) -> str:
    lines = [
        f"Event: {booking.event_name}",
        f"Hall: {booking.venue_name}",
        f"When: {_when(booking)}",
        f"Coordinator: {booking.organizer}",
    ]
    if booking.organizing_club:
        lines.append(f"Organizing club: {booking.organizing_club}")
    if booking.department:
        lines.append(f"Department: {booking.department}")
    if booking.institution:
        lines.append(f"Institution: {booking.institution}")
    return "\n".join(lines)


def new_request_message(settings: Settings, booking: Booking) -> tuple[str, str]:
    body = (
        "A new booking has been requested. Please review the details below.\n\n"
        f"{_summary(booking)}\n\nView booking: {_booking_link(settings, booking)}\n"
    )
    return "New Booking Request", body


def approval_message(settings: Settings, booking: Booking) -> tuple[str, str]:
    body = (
        "Your booking request has been approved.\n\n"
        f"{_summary(booking)}\n\nView booking: {_booking_link(settings, booking)}\n"
    )
    return "Booking Request Approved", body


def rejection_message(settings: Settings, booking: Booking) -> tuple[str, str]:
    body = (
        "Your booking request has been rejected.\n\n"
        f"{_summary(booking)}\n"
        f"Reason: {booking.rejection_reason}\n\nView booking: {_booking_link(settings, booking)}\n"
    )
    return "Booking Request Rejected", body
