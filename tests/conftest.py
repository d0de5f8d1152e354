import os

# Keep the app module away from any real database while tests import it
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

from datetime import date, datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
import pytest_asyncio
from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import select

from config import Settings
from database import init_db
from errors import NotificationError
from models import Principal, ReservationEntry, Role, User, Venue
from notifications import NotificationDispatcher
from schemas import BookingCreate

BOOKING_DAY = date(2025, 3, 10)  # a Monday


class FakeClock:
    def __init__(self, now: datetime = datetime(2025, 3, 1, 8, 0, tzinfo=timezone.utc)):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    async def send(self, recipient: str, subject: str, body: str) -> None:
        self.sent.append((recipient, subject, body))


class FailingNotifier:
    async def send(self, recipient: str, subject: str, body: str) -> None:
        raise NotificationError("SMTP relay unreachable")


def booking_request(venue_id: int, start="09:00", end="10:00", day=BOOKING_DAY, **overrides) -> BookingCreate:
    data = {
        "venue_id": venue_id,
        "event_name": "Compilers Guest Lecture",
        "organizer": "Grace Hopper",
        "date_kind": "half-day",
        "event_date": day,
        "start_time": start,
        "end_time": end,
        "organizing_club": "ACM Chapter",
        "department": "Computer Science",
    }
    data.update(overrides)
    return BookingCreate(**data)


async def count_entries(session: AsyncSession, **filters) -> int:
    statement = select(func.count()).select_from(ReservationEntry)
    for name, value in filters.items():
        statement = statement.where(getattr(ReservationEntry, name) == value)
    result = await session.execute(statement)
    return result.scalar_one()


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite+aiosqlite://",
        SLOT_MINUTES=15,
        CLAIM_HOLD_SECONDS=120,
        AUTO_APPROVE_ROLES="faculty",
        STAFF_ROLES="admin",
        BOOKING_ROLES="student,faculty,admin",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def dispatcher(notifier):
    return NotificationDispatcher(notifier)


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'halls.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def seed(session):
    """Three halls and one user per role. Only plain ids and principals leak out."""
    venues = [
        Venue(name="LT-1", capacity=180, location="Main Block", owner_email="owner@campus.edu"),
        Venue(name="LT-2", capacity=120, location="Main Block", owner_email="admin@campus.edu"),
        Venue(name="LT-3", capacity=60, location="Annexe"),
    ]
    users = {
        "student": User(name="Sam Student", email="sam@campus.edu", role=Role.STUDENT),
        "other_student": User(name="Ola Other", email="ola@campus.edu", role=Role.STUDENT),
        "faculty": User(name="Fay Faculty", email="fay@campus.edu", role=Role.FACULTY),
        "admin": User(name="Ada Admin", email="admin@campus.edu", role=Role.ADMIN),
        "owner": User(name="Otto Owner", email="owner@campus.edu", role=Role.FACULTY),
    }
    session.add_all(venues + list(users.values()))
    await session.commit()

    return SimpleNamespace(
        venues={venue.name: venue.id for venue in venues},
        users={key: Principal.from_user(user) for key, user in users.items()},
        user_ids={key: user.id for key, user in users.items()},
    )
