"""Wires the lifecycle services around one shared unit of work."""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from schoolpool.domain.entities import utcnow
from schoolpool.infrastructure.blob_store import BlobStore
from schoolpool.infrastructure.locks import LockManager
from schoolpool.infrastructure.publisher import EventPublisher

from .arrivals import ArrivalService
from .base import Clock, UnitOfWork
from .calendar import CalendarService
from .invitations import InvitationService
from .messages import MessageService
from .requests import RequestService
from .reviews import ReviewService
from .trips import TripService


class PickupEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: LockManager,
        publisher: EventPublisher,
        blob_store: BlobStore,
        clock: Clock = utcnow,
    ):
        self.uow = UnitOfWork(session_factory, locks, publisher, clock)
        self.requests = RequestService(self.uow)
        self.invitations = InvitationService(self.uow)
        self.trips = TripService(self.uow)
        self.arrivals = ArrivalService(self.uow, blob_store)
        self.reviews = ReviewService(self.uow)
        self.messages = MessageService(self.uow)
        self.calendar = CalendarService(self.uow, self.requests, self.trips)

    def now(self):
        return self.uow.clock()
