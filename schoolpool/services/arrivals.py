"""
Arrival & Completion Workflow
=============================

An arrival record is insert-once per (trip, request). Writing it completes
the request; once every ACTIVE participant of the trip has a record the
trip completes too. Cancelled participants are not counted, so a trip that
lost a no-show at departure still completes when the others arrive.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import IntegrityError

from schoolpool.config import settings
from schoolpool.domain.entities import Actor, advance_stage
from schoolpool.domain.enums import ProgressStage, RequestStatus, TripStatus
from schoolpool.domain.errors import (
    AuthorizationError,
    DuplicateArrivalError,
    InvalidStateError,
    NotFoundError,
    TripNotLockedError,
    ValidationError,
)
from schoolpool.domain.events import EntityType, TransitionEvent
from schoolpool.infrastructure.blob_store import BlobStore
from schoolpool.infrastructure.locks import request_key, trip_key
from schoolpool.infrastructure.models import TripArrivalModel, TripModel

from .base import Service, UnitOfWork, request_event, trip_event
from .effects import move_request, move_trip

logger = logging.getLogger(__name__)

MAX_BLOB_REF_LENGTH = 512


@dataclass
class ArrivalView:
    record: TripArrivalModel
    url: str


class ArrivalService(Service):
    def __init__(self, uow: UnitOfWork, blob_store: BlobStore):
        super().__init__(uow)
        self.blob_store = blob_store

    async def record_arrival(
        self, trip_id: int, request_id: int, blob_ref: str, provider: Actor
    ) -> TripArrivalModel:
        if not blob_ref or not blob_ref.strip():
            raise ValidationError("blob_ref is required", {"field": "blob_ref"})
        if len(blob_ref) > MAX_BLOB_REF_LENGTH:
            raise ValidationError("blob_ref is too long", {"field": "blob_ref"})

        async with self.uow.transaction(
            trip_key(trip_id), request_key(request_id)
        ) as tx:
            now = self.now()
            trip = await tx.trips.get_by_id(trip_id, for_update=True)
            if trip is None:
                raise NotFoundError("Trip", trip_id)
            if trip.provider_id != provider.profile_id:
                raise AuthorizationError("Only the trip's provider records arrivals")
            if not trip.is_locked:
                raise TripNotLockedError(
                    "Trip has not departed yet", {"trip_id": trip.id}
                )
            if await tx.arrivals.get_for_pair(trip.id, request_id) is not None:
                raise DuplicateArrivalError(
                    "Arrival already recorded",
                    {"trip_id": trip.id, "request_id": request_id},
                )

            part = await tx.participants.get_active_for_request(request_id)
            if part is None or part.trip_id != trip.id:
                raise NotFoundError("TripParticipant", request_id)
            req = await tx.requests.get_by_id(request_id, for_update=True)
            if req.status not in (RequestStatus.IN_PROGRESS, RequestStatus.ARRIVED):
                raise InvalidStateError(
                    f"Cannot record arrival in status {req.status.value}",
                    {"status": req.status.value},
                )

            try:
                record = await tx.arrivals.create(
                    TripArrivalModel(
                        trip_id=trip.id,
                        request_id=req.id,
                        blob_ref=blob_ref.strip(),
                        created_at=now,
                    )
                )
            except IntegrityError as exc:
                raise DuplicateArrivalError(
                    "Arrival already recorded",
                    {"trip_id": trip.id, "request_id": request_id},
                ) from exc

            move_request(req, RequestStatus.COMPLETED)
            req.progress_stage = advance_stage(req.progress_stage, ProgressStage.ARRIVED)
            req.completed_at = now
            tx.emit(
                TransitionEvent(
                    entity_type=EntityType.TRIP_ARRIVAL,
                    entity_id=record.id,
                    status=None,
                    fields={"request_id": req.id, "created_at": now},
                    owner_ids=(trip.provider_id, req.requester_id),
                    trip_id=trip.id,
                )
            )
            tx.emit(request_event(req, trip_id=trip.id, completed_at=now))

            active = await tx.participants.list_for_trip(trip.id, active_only=True)
            arrived = await tx.arrivals.arrived_request_ids(trip.id)
            if trip.status == TripStatus.IN_PROGRESS and all(
                p.request_id in arrived for p in active
            ):
                move_trip(trip, TripStatus.COMPLETED)
                trip.arrived_at = now
                trip.completed_at = now
                tx.emit(trip_event(trip, arrived_at=now, completed_at=now))
                logger.info("Trip %d completed", trip.id)

        logger.info("Arrival recorded for request %d on trip %d", request_id, trip_id)
        return record

    async def list_arrivals(
        self, trip_id: int, actor: Actor, ttl_seconds: Optional[int] = None
    ) -> list[ArrivalView]:
        """Arrival records with time-limited photo URLs.

        The provider (or an admin) sees every record of the trip; a
        participant sees only their own.
        """
        trip = await self.uow.peek(TripModel, trip_id, "Trip")
        ttl = ttl_seconds or settings.blob_url_ttl_seconds
        async with self.uow.read() as tx:
            records = await tx.arrivals.list_for_trip(trip_id)
            if trip.provider_id != actor.profile_id and not actor.is_admin:
                parts = await tx.participants.list_for_trip(trip_id)
                mine = {p.request_id for p in parts if p.requester_id == actor.profile_id}
                if not mine:
                    raise AuthorizationError("Not a party to this trip")
                records = [r for r in records if r.request_id in mine]
        return [ArrivalView(r, self.blob_store.signed_url(r.blob_ref, ttl)) for r in records]
