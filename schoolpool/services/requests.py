"""
Request Lifecycle Manager
=========================

Owns ``PickupRequest`` creation, cancellation (auto-approved or pending
provider approval), approval, and expiry.

Locking
-------
A request op always locks ``request:<id>``. When the request holds a seat
in a trip it also locks ``trip:<id>`` for that trip, discovered before
acquisition and re-verified after (see ``Service.run_locked``).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from schoolpool.config import settings
from schoolpool.domain.entities import Actor, Location, Place
from schoolpool.domain.enums import CancelReasonCode, RequestStatus
from schoolpool.domain.errors import (
    AuthorizationError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from schoolpool.domain.expiry import request_is_due, service_day_window
from schoolpool.domain.geo import haversine_km, within_bounds
from schoolpool.infrastructure.locks import request_key, trip_key
from schoolpool.infrastructure.models import PickupRequestModel

from .base import (
    ExpiryOutcome,
    Service,
    Transaction,
    request_event,
    require_keys,
)
from .effects import cancel_request, expire_request, move_request

logger = logging.getLogger(__name__)

AUTO_APPROVER = "system"


@dataclass
class OpenRequest:
    request: PickupRequestModel
    distance_km: Optional[float] = None


class RequestService(Service):
    @property
    def cancel_threshold(self) -> timedelta:
        return timedelta(minutes=settings.cancel_approval_threshold_minutes)

    # ── Create ────────────────────────────────────────────────────────

    def _check_place(self, label: str, place: Place) -> None:
        if not place.text or not place.text.strip():
            raise ValidationError(f"{label} address is required", {"field": label})
        if not within_bounds(
            place.location,
            settings.min_latitude,
            settings.max_latitude,
            settings.min_longitude,
            settings.max_longitude,
        ):
            raise ValidationError(
                f"{label} is outside the service area",
                {
                    "field": label,
                    "lat": place.location.latitude,
                    "lng": place.location.longitude,
                },
            )

    async def create_request(
        self,
        actor: Actor,
        pickup_time: datetime,
        origin: Place,
        destination: Place,
    ) -> PickupRequestModel:
        now = self.now()
        if pickup_time.tzinfo is None:
            raise ValidationError("pickup_time must include a UTC offset")
        if pickup_time <= now:
            raise ValidationError(
                "pickup_time must be in the future",
                {"pickup_time": pickup_time.isoformat()},
            )
        self._check_place("origin", origin)
        self._check_place("destination", destination)

        async with self.uow.transaction() as tx:
            req = await tx.requests.create(
                PickupRequestModel(
                    requester_id=actor.profile_id,
                    pickup_time=pickup_time,
                    origin_text=origin.text.strip(),
                    origin_lat=origin.location.latitude,
                    origin_lng=origin.location.longitude,
                    destination_text=destination.text.strip(),
                    destination_lat=destination.location.latitude,
                    destination_lng=destination.location.longitude,
                    status=RequestStatus.REQUESTED,
                    created_at=now,
                    updated_at=now,
                )
            )
            tx.emit(request_event(req))
        logger.info("Pickup request %d created by %s", req.id, actor.profile_id)
        return req

    # ── Locked helpers ────────────────────────────────────────────────

    def _discover(self, request_id: int):
        async def discover() -> list[str]:
            await self.uow.peek(PickupRequestModel, request_id, "PickupRequest")
            async with self.uow.read() as tx:
                part = await tx.participants.get_active_for_request(request_id)
            keys = [request_key(request_id)]
            if part is not None:
                keys.append(trip_key(part.trip_id))
            return keys

        return discover

    async def _load(self, tx: Transaction, held: set[str], request_id: int):
        req = await tx.requests.get_by_id(request_id, for_update=True)
        if req is None:
            raise NotFoundError("PickupRequest", request_id)
        part = await tx.participants.get_active_for_request(request_id)
        trip = None
        if part is not None:
            require_keys(held, trip_key(part.trip_id))
            trip = await tx.trips.get_by_id(part.trip_id, for_update=True)
        return req, part, trip

    # ── Cancellation ──────────────────────────────────────────────────

    async def request_cancellation(
        self,
        request_id: int,
        actor: Actor,
        reason_code: CancelReasonCode = CancelReasonCode.CANCEL,
        reason_text: Optional[str] = None,
    ) -> PickupRequestModel:
        """Cancel outright when far enough ahead, else ask the provider."""

        async def op(tx: Transaction, held: set[str]) -> PickupRequestModel:
            now = self.now()
            req, part, trip = await self._load(tx, held, request_id)
            if req.requester_id != actor.profile_id:
                raise AuthorizationError("Only the requester can cancel this request")

            if request_is_due(req.status, req.pickup_time, now):
                await expire_request(tx, req, now=now, trip=trip, part=part)
                tx.fail_after_commit(
                    InvalidStateError(
                        "Pickup time has passed; request expired",
                        {"status": req.status.value},
                    )
                )
                return req

            if req.status not in (RequestStatus.REQUESTED, RequestStatus.MATCHED):
                raise InvalidStateError(
                    f"Cannot request cancellation in status {req.status.value}",
                    {"status": req.status.value},
                )

            far_enough = req.pickup_time - now > self.cancel_threshold
            if req.status == RequestStatus.REQUESTED or far_enough:
                await cancel_request(
                    tx,
                    req,
                    now=now,
                    approved_by=AUTO_APPROVER,
                    reason_code=reason_code,
                    reason_text=reason_text,
                    trip=trip,
                    part=part,
                )
                logger.info("Pickup request %d cancelled (auto-approved)", req.id)
                return req

            move_request(req, RequestStatus.CANCEL_REQUESTED)
            req.cancel_requested_at = now
            req.cancel_reason_code = reason_code
            req.cancel_reason_text = reason_text
            tx.emit(
                request_event(
                    req,
                    trip_id=trip.id if trip else None,
                    cancel_requested_at=now,
                    provider_id=trip.provider_id if trip else None,
                )
            )
            logger.info("Pickup request %d awaiting cancel approval", req.id)
            return req

        return await self.run_locked(self._discover(request_id), op)

    async def approve_cancellation(
        self, request_id: int, approver: Actor
    ) -> PickupRequestModel:
        async def op(tx: Transaction, held: set[str]) -> PickupRequestModel:
            now = self.now()
            req, part, trip = await self._load(tx, held, request_id)
            if trip is None:
                raise InvalidStateError(
                    f"Request in status {req.status.value} has no trip to approve from",
                    {"status": req.status.value},
                )
            if approver.profile_id != trip.provider_id and not approver.is_admin:
                raise AuthorizationError("Only the trip's provider can approve")
            if req.status != RequestStatus.CANCEL_REQUESTED:
                raise InvalidStateError(
                    f"Cannot approve cancellation in status {req.status.value}",
                    {"status": req.status.value},
                )
            await cancel_request(
                tx,
                req,
                now=now,
                approved_by=approver.profile_id,
                reason_code=req.cancel_reason_code,
                reason_text=req.cancel_reason_text,
                trip=trip,
                part=part,
            )
            logger.info(
                "Pickup request %d cancellation approved by %s",
                req.id,
                approver.profile_id,
            )
            return req

        return await self.run_locked(self._discover(request_id), op)

    # ── Expiry ────────────────────────────────────────────────────────

    async def expire_if_due(
        self, request_id: int, now: Optional[datetime] = None
    ) -> ExpiryOutcome[PickupRequestModel]:
        async def op(
            tx: Transaction, held: set[str]
        ) -> ExpiryOutcome[PickupRequestModel]:
            moment = now or self.now()
            req, part, trip = await self._load(tx, held, request_id)
            if not request_is_due(req.status, req.pickup_time, moment):
                return ExpiryOutcome(req)
            await expire_request(tx, req, now=moment, trip=trip, part=part)
            logger.info("Pickup request %d expired", req.id)
            return ExpiryOutcome(req, expired=True)

        return await self.run_locked(self._discover(request_id), op)

    # ── Reads ─────────────────────────────────────────────────────────

    async def _fresh(self, req: PickupRequestModel) -> PickupRequestModel:
        if request_is_due(req.status, req.pickup_time, self.now()):
            return (await self.expire_if_due(req.id)).entity
        return req

    async def get_request(self, request_id: int, actor: Actor) -> PickupRequestModel:
        req = await self.uow.peek(PickupRequestModel, request_id, "PickupRequest")
        if not (
            req.requester_id == actor.profile_id
            or actor.is_verified_provider
            or actor.is_admin
        ):
            raise AuthorizationError("Not allowed to view this request")
        return await self._fresh(req)

    async def list_my_requests(
        self, actor: Actor, status: Optional[RequestStatus] = None
    ) -> list[PickupRequestModel]:
        async with self.uow.read() as tx:
            rows = await tx.requests.list_for_requester(actor.profile_id)
        fresh = [await self._fresh(r) for r in rows]
        if status is not None:
            fresh = [r for r in fresh if r.status == status]
        return fresh

    async def list_open_requests(
        self,
        actor: Actor,
        on_date: Optional[date] = None,
        near: Optional[Location] = None,
    ) -> list[OpenRequest]:
        """REQUESTED pickups a provider could still invite."""
        if not actor.is_verified_provider:
            raise AuthorizationError("Only verified providers can browse requests")
        now = self.now()
        start, end = now, None
        if on_date is not None:
            day_start, end = service_day_window(
                on_date, ZoneInfo(settings.service_timezone)
            )
            start = max(now, day_start)
        async with self.uow.read() as tx:
            rows = await tx.requests.list_open(window_start=start, window_end=end)

        result = [
            OpenRequest(r)
            for r in rows
            if r.requester_id != actor.profile_id
        ]
        if near is not None:
            for item in result:
                item.distance_km = round(
                    haversine_km(
                        near.latitude,
                        near.longitude,
                        item.request.origin_lat,
                        item.request.origin_lng,
                    ),
                    2,
                )
            result.sort(key=lambda item: item.distance_km)
        return result
