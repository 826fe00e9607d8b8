"""
Unit of work shared by every engine service.

An operation that mutates state runs as::

    async with self.uow.transaction(trip_key(t), request_key(r)) as tx:
        ...read with for_update, validate, write, tx.emit(event)

which (1) takes the entity locks in sorted order, (2) opens one session and
commits or rolls back as a whole, (3) publishes the collected events only
after the commit succeeded.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import (
    AsyncIterator,
    Awaitable,
    Callable,
    Generic,
    Optional,
    Type,
    TypeVar,
)

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from schoolpool.domain.entities import utcnow
from schoolpool.domain.errors import EngineError, LockTimeoutError, NotFoundError
from schoolpool.domain.events import EntityType, TransitionEvent
from schoolpool.infrastructure.locks import LockManager
from schoolpool.infrastructure.models import (
    InvitationModel,
    PickupRequestModel,
    TripModel,
    TripParticipantModel,
)
from schoolpool.infrastructure.publisher import EventPublisher
from schoolpool.infrastructure.repositories import (
    InvitationMessageRepository,
    InvitationRepository,
    MessageReadRepository,
    PickupRequestRepository,
    TripArrivalRepository,
    TripParticipantRepository,
    TripRepository,
    TripReviewRepository,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
T = TypeVar("T")


class Transaction:
    """Repositories bound to one session plus the events it will emit."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.requests = PickupRequestRepository(session)
        self.trips = TripRepository(session)
        self.invitations = InvitationRepository(session)
        self.participants = TripParticipantRepository(session)
        self.arrivals = TripArrivalRepository(session)
        self.reviews = TripReviewRepository(session)
        self.messages = InvitationMessageRepository(session)
        self.message_reads = MessageReadRepository(session)
        self.events: list[TransitionEvent] = []
        self.deferred_error: Optional[EngineError] = None

    def emit(self, event: TransitionEvent) -> None:
        self.events.append(event)

    def fail_after_commit(self, error: EngineError) -> None:
        """Keep the writes made so far but still report *error* to the caller."""
        self.deferred_error = error


class UnitOfWork:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: LockManager,
        publisher: EventPublisher,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.locks = locks
        self.publisher = publisher
        self.clock = clock

    @asynccontextmanager
    async def transaction(self, *lock_keys: str) -> AsyncIterator[Transaction]:
        async with self.locks.hold(*lock_keys):
            async with self.session_factory() as session:
                tx = Transaction(session)
                try:
                    yield tx
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise
        if tx.events:
            await self.publisher.publish_all(tx.events)
        if tx.deferred_error is not None:
            raise tx.deferred_error

    @asynccontextmanager
    async def read(self) -> AsyncIterator[Transaction]:
        async with self.session_factory() as session:
            yield Transaction(session)

    async def peek(self, model: Type, entity_id: int, resource: str):
        """Unlocked read used to discover which locks an operation needs."""
        async with self.session_factory() as session:
            row = await session.get(model, entity_id)
        if row is None:
            raise NotFoundError(resource, entity_id)
        return row


@dataclass
class ExpiryOutcome(Generic[T]):
    """The entity after ``expire_if_due`` and whether that call expired it."""

    entity: T
    expired: bool = False


class StaleLockSet(Exception):
    """The rows changed between lock discovery and lock acquisition."""


def require_keys(held: set[str], *keys: str) -> None:
    if not set(keys) <= held:
        raise StaleLockSet(sorted(set(keys) - held))


class Service:
    max_lock_attempts = 3

    def __init__(self, uow: UnitOfWork):
        self.uow = uow

    def now(self) -> datetime:
        return self.uow.clock()

    async def run_locked(
        self,
        discover: Callable[[], Awaitable[list[str]]],
        op: Callable[[Transaction, set[str]], Awaitable[T]],
    ) -> T:
        """Run *op* under the keys *discover* returns, retrying if they went stale.

        *op* must call :func:`require_keys` for every entity it touches
        that was not known before the locks were taken.
        """
        for _ in range(self.max_lock_attempts):
            keys = await discover()
            try:
                async with self.uow.transaction(*keys) as tx:
                    return await op(tx, set(keys))
            except StaleLockSet as exc:
                logger.debug("Lock set changed (%s), retrying", exc)
        raise LockTimeoutError("Entity locks kept changing; retry later")


# ── Event builders ────────────────────────────────────────────────────


def request_event(req: PickupRequestModel, trip_id: int | None = None, **fields) -> TransitionEvent:
    return TransitionEvent(
        entity_type=EntityType.PICKUP_REQUEST,
        entity_id=req.id,
        status=req.status.value,
        fields={"progress_stage": req.progress_stage, **fields},
        owner_ids=(req.requester_id,),
        trip_id=trip_id,
    )


def invitation_event(inv: InvitationModel, **fields) -> TransitionEvent:
    return TransitionEvent(
        entity_type=EntityType.INVITATION,
        entity_id=inv.id,
        status=inv.status.value,
        fields={
            "request_id": inv.request_id,
            "close_reason": inv.close_reason,
            "responded_at": inv.responded_at,
            **fields,
        },
        owner_ids=(inv.provider_id, inv.requester_id),
        trip_id=inv.trip_id,
    )


def trip_event(trip: TripModel, **fields) -> TransitionEvent:
    return TransitionEvent(
        entity_type=EntityType.TRIP,
        entity_id=trip.id,
        status=trip.status.value,
        fields={"is_locked": trip.is_locked, **fields},
        owner_ids=(trip.provider_id,),
        trip_id=trip.id,
    )


def participant_event(
    part: TripParticipantModel, provider_id: str, **fields
) -> TransitionEvent:
    return TransitionEvent(
        entity_type=EntityType.TRIP_PARTICIPANT,
        entity_id=part.id,
        status=part.status.value,
        fields={
            "request_id": part.request_id,
            "is_met_at_pickup": part.is_met_at_pickup,
            **fields,
        },
        owner_ids=(provider_id, part.requester_id),
        trip_id=part.trip_id,
    )
