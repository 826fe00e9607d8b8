"""
Shared test fixtures.

Each test gets its own file-backed SQLite database (via aiosqlite) so
concurrent units of work use separate connections, as they would against
PostgreSQL, and tests run without Docker / PostgreSQL / Redis. Redis is
replaced by a recording publisher and the in-process lock manager.

Time is frozen at ``T0`` (09:00 Seoul, 2 March 2026) and only moves when a
test advances the clock. Trips depart at ``DEPART`` (08:00 Seoul, 3 March).
"""

from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import and_, func, select

from schoolpool.domain.entities import Actor, Location, Place
from schoolpool.domain.enums import InvitationStatus, ParticipantStatus
from schoolpool.domain.events import EntityType, TransitionEvent
from schoolpool.infrastructure.blob_store import SignedUrlBlobStore
from schoolpool.infrastructure.database import (
    Base,
    build_engine,
    build_session_factory,
)
from schoolpool.infrastructure.locks import LocalLockManager
from schoolpool.infrastructure.models import InvitationModel, TripParticipantModel
from schoolpool.infrastructure.publisher import EventPublisher
from schoolpool.services.engine import PickupEngine

T0 = datetime(2026, 3, 2, 0, 0, tzinfo=timezone.utc)
DEPART = datetime(2026, 3, 2, 23, 0, tzinfo=timezone.utc)

PROVIDER = Actor("provider-minji", is_verified_provider=True)
OTHER_PROVIDER = Actor("provider-jihoon", is_verified_provider=True)
UNVERIFIED = Actor("provider-unverified")
ADMIN = Actor("admin-1", is_admin=True)
PARENTS = [Actor(f"parent-{i}") for i in range(1, 6)]

SCHOOL = Place("Daechi Elementary School", Location(37.4995, 127.0590))
BLOB_KEY = "test-signing-key"


def home(n: int) -> Place:
    return Place(f"Apartment block {n}", Location(37.49 + n * 0.002, 127.05))


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current

    def set(self, moment: datetime) -> datetime:
        self.current = moment
        return moment


class RecordingPublisher(EventPublisher):
    def __init__(self):
        self.events: list[TransitionEvent] = []

    async def publish(self, event: TransitionEvent) -> None:
        self.events.append(event)

    def of(self, entity_type: EntityType) -> list[TransitionEvent]:
        return [e for e in self.events if e.entity_type == entity_type]

    def clear(self) -> None:
        self.events.clear()


# ── Fixtures ──────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """Create tables in a fresh SQLite file, yield the engine, dispose."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'schoolpool.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest_asyncio.fixture
async def pickup(db_engine, clock, publisher) -> PickupEngine:
    return PickupEngine(
        build_session_factory(db_engine),
        LocalLockManager(timeout_seconds=5.0),
        publisher,
        SignedUrlBlobStore("http://blobs.test/arrivals", BLOB_KEY),
        clock=clock,
    )


@pytest_asyncio.fixture
async def client(pickup) -> AsyncGenerator[AsyncClient, None]:
    """AsyncClient over the app with the test engine injected."""
    from schoolpool.api.app import create_app
    from schoolpool.api.middleware import limiter

    limiter.enabled = False
    app = create_app(engine=pickup)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    limiter.enabled = True


# ── Builders ──────────────────────────────────────────────────────────


async def make_trip(pickup, provider=PROVIDER, capacity=3, start=DEPART):
    return await pickup.trips.create_trip(provider, start, capacity=capacity)


async def make_request(pickup, parent, n=1, minutes=0):
    return await pickup.requests.create_request(
        parent, DEPART + timedelta(minutes=minutes), home(n), SCHOOL
    )


async def join(pickup, trip, parent, n=1, provider=PROVIDER):
    """Create a request for *parent*, invite it to *trip* and accept."""
    req = await make_request(pickup, parent, n=n)
    inv = await pickup.invitations.send_invitation(trip.id, req.id, provider)
    await pickup.invitations.accept_invitation(inv.id, parent)
    return req, inv


async def participant_for(pickup, trip_id, request_id):
    async with pickup.uow.read() as tx:
        return await tx.participants.get_for_pair(trip_id, request_id)


async def reload(pickup, model, entity_id):
    async with pickup.uow.read() as tx:
        return await tx.session.get(model, entity_id)


async def seat_counts(pickup, trip_id):
    """(ACCEPTED invitations whose participant is ACTIVE, ACTIVE participants)."""
    async with pickup.uow.read() as tx:
        seated = await tx.session.scalar(
            select(func.count())
            .select_from(InvitationModel)
            .join(
                TripParticipantModel,
                and_(
                    TripParticipantModel.trip_id == InvitationModel.trip_id,
                    TripParticipantModel.request_id == InvitationModel.request_id,
                ),
            )
            .where(
                InvitationModel.trip_id == trip_id,
                InvitationModel.status == InvitationStatus.ACCEPTED,
                TripParticipantModel.status == ParticipantStatus.ACTIVE,
            )
        )
        active = await tx.participants.count_active(trip_id)
    return seated, active
