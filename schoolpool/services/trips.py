"""
Trip Lifecycle Manager
======================

OPEN -> IN_PROGRESS -> ARRIVED -> COMPLETED, OPEN -> EXPIRED, and the
administrative cancel from any non-terminal status.

Departure (``start_trip``) is the roster freeze: every ACTIVE participant
must be either met at the pickup point or cancelled by the provider in the
same call. The cancellations, the lock, the invitation shutdown and the
progress advance of met participants are one unit of work holding the trip
lock plus one request lock per participant.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, Sequence

from schoolpool.config import settings
from schoolpool.domain.entities import Actor, RosterCancellation, advance_stage
from schoolpool.domain.enums import (
    REQUEST_TRANSITIONS,
    TERMINAL_TRIP_STATUSES,
    CancelReasonCode,
    InvitationCloseReason,
    InvitationStatus,
    ParticipantStatus,
    ProgressStage,
    RequestStatus,
    TripStatus,
)
from schoolpool.domain.errors import (
    AuthorizationError,
    IncompleteRosterError,
    InvalidStateError,
    NotFoundError,
    PolicyViolationError,
    TripNotLockedError,
    ValidationError,
)
from schoolpool.domain.expiry import request_is_due, trip_is_due
from schoolpool.infrastructure.locks import request_key, trip_key
from schoolpool.infrastructure.models import (
    PickupRequestModel,
    TripModel,
    TripParticipantModel,
)

from .base import (
    ExpiryOutcome,
    Service,
    Transaction,
    participant_event,
    request_event,
    require_keys,
    trip_event,
)
from .effects import (
    cancel_request,
    close_pending_invitations,
    expire_request,
    move_request,
    move_trip,
)
from .requests import AUTO_APPROVER

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 100
TRIP_EXPIRED_TEXT = "Trip expired before departure"


@dataclass
class TripRoster:
    trip: TripModel
    participants: list[TripParticipantModel] = field(default_factory=list)
    accepted_count: int = 0

    @property
    def spare(self) -> int:
        return max(0, self.trip.capacity - self.accepted_count)


@dataclass
class RosterEntry:
    participant: TripParticipantModel
    request: PickupRequestModel
    has_arrived: bool = False


async def _expire_trip(
    tx: Transaction, trip: TripModel, now: datetime, held: set[str]
) -> None:
    """OPEN -> EXPIRED, releasing every seat still held on the trip.

    A rider whose own pickup time has passed expires with the trip; one
    picked up later in the day is cancelled by the system so the parent
    can post a new request for another provider.
    """
    active = await tx.participants.list_for_trip(trip.id, active_only=True)
    require_keys(held, *(request_key(p.request_id) for p in active))

    move_trip(trip, TripStatus.EXPIRED)
    trip.expired_at = now
    for part in active:
        req = await tx.requests.get_by_id(part.request_id, for_update=True)
        if request_is_due(req.status, req.pickup_time, now):
            await expire_request(tx, req, now=now, trip=trip, part=part)
            continue
        await cancel_request(
            tx,
            req,
            now=now,
            approved_by=AUTO_APPROVER,
            reason_code=req.cancel_reason_code or CancelReasonCode.OTHER,
            reason_text=req.cancel_reason_text or TRIP_EXPIRED_TEXT,
            trip=trip,
            part=part,
        )
    await close_pending_invitations(
        tx,
        trip_id=trip.id,
        status=InvitationStatus.EXPIRED,
        reason=InvitationCloseReason.TRIP_CLOSED,
        now=now,
    )
    tx.emit(trip_event(trip, expired_at=now, released=len(active)))


class TripService(Service):
    @property
    def grace(self) -> timedelta:
        return timedelta(minutes=settings.trip_grace_period_minutes)

    def _is_due(self, trip: TripModel, now: datetime) -> bool:
        return trip_is_due(
            trip.status, trip.is_locked, trip.scheduled_start_at, now, self.grace
        )

    def _roster_discover(self, trip_id: int):
        """Trip key plus one request key per ACTIVE participant."""

        async def discover() -> list[str]:
            await self.uow.peek(TripModel, trip_id, "Trip")
            async with self.uow.read() as tx:
                parts = await tx.participants.list_for_trip(trip_id, active_only=True)
            return [trip_key(trip_id)] + [request_key(p.request_id) for p in parts]

        return discover

    async def _owned_trip(
        self, tx: Transaction, trip_id: int, provider: Actor
    ) -> TripModel:
        trip = await tx.trips.get_by_id(trip_id, for_update=True)
        if trip is None:
            raise NotFoundError("Trip", trip_id)
        if trip.provider_id != provider.profile_id:
            raise AuthorizationError("Only the trip's provider can do this")
        return trip

    # ── Create ────────────────────────────────────────────────────────

    async def create_trip(
        self,
        provider: Actor,
        scheduled_start_at: datetime,
        capacity: Optional[int] = None,
        title: Optional[str] = None,
    ) -> TripModel:
        if not provider.is_verified_provider:
            raise AuthorizationError("Only verified providers can create trips")
        now = self.now()
        if capacity is None:
            capacity = settings.max_trip_capacity
        if scheduled_start_at.tzinfo is None:
            raise ValidationError("scheduled_start_at must include a UTC offset")
        if scheduled_start_at <= now:
            raise ValidationError(
                "scheduled_start_at must be in the future",
                {"scheduled_start_at": scheduled_start_at.isoformat()},
            )
        if not 1 <= capacity <= settings.max_trip_capacity:
            raise ValidationError(
                f"capacity must be between 1 and {settings.max_trip_capacity}",
                {"capacity": capacity},
            )
        if title is not None:
            title = title.strip() or None
        if title is not None and len(title) > MAX_TITLE_LENGTH:
            raise ValidationError(
                f"title must be at most {MAX_TITLE_LENGTH} characters",
                {"field": "title"},
            )

        async with self.uow.transaction() as tx:
            trip = await tx.trips.create(
                TripModel(
                    provider_id=provider.profile_id,
                    title=title,
                    capacity=capacity,
                    is_locked=False,
                    status=TripStatus.OPEN,
                    scheduled_start_at=scheduled_start_at,
                    created_at=now,
                    updated_at=now,
                )
            )
            tx.emit(trip_event(trip, capacity=capacity))
        logger.info("Trip %d created by %s (capacity %d)", trip.id, provider.profile_id, capacity)
        return trip

    # ── Roster ────────────────────────────────────────────────────────

    async def mark_participant_met(
        self,
        trip_id: int,
        participant_id: int,
        provider: Actor,
        met: bool = True,
    ) -> TripParticipantModel:
        async with self.uow.transaction(trip_key(trip_id)) as tx:
            trip = await self._owned_trip(tx, trip_id, provider)
            part = await tx.participants.get_by_id(participant_id)
            if part is None or part.trip_id != trip.id:
                raise NotFoundError("TripParticipant", participant_id)
            if part.status != ParticipantStatus.ACTIVE:
                raise InvalidStateError(
                    "Participant was cancelled", {"participant_id": part.id}
                )
            if trip.is_locked:
                if met and part.is_met_at_pickup:
                    return part
                raise PolicyViolationError(
                    "trip_locked",
                    "Roster is frozen once the trip has departed",
                    {"trip_id": trip.id},
                )
            if trip.status != TripStatus.OPEN:
                raise InvalidStateError(
                    f"Trip is {trip.status.value}", {"status": trip.status.value}
                )
            if part.is_met_at_pickup != met:
                part.is_met_at_pickup = met
                tx.emit(participant_event(part, trip.provider_id))
        return part

    async def start_trip(
        self,
        trip_id: int,
        provider: Actor,
        cancellations: Sequence[RosterCancellation] = (),
    ) -> TripModel:
        """Freeze the roster and depart.

        Raises ``IncompleteRosterError`` (with the unresolved participant
        ids) when an ACTIVE participant is neither met nor listed in
        *cancellations*; nothing is written in that case.
        """

        async def op(tx: Transaction, held: set[str]) -> TripModel:
            now = self.now()
            trip = await self._owned_trip(tx, trip_id, provider)
            if self._is_due(trip, now):
                await _expire_trip(tx, trip, now, held)
                tx.fail_after_commit(
                    InvalidStateError(
                        "Trip missed its departure window and expired",
                        {"trip_id": trip.id},
                    )
                )
                return trip
            if trip.is_locked or trip.status != TripStatus.OPEN:
                raise InvalidStateError(
                    f"Trip cannot start from {trip.status.value}",
                    {"status": trip.status.value, "is_locked": trip.is_locked},
                )

            active = await tx.participants.list_for_trip(trip.id, active_only=True)
            require_keys(held, *(request_key(p.request_id) for p in active))
            by_id = {p.id: p for p in active}

            resolved: dict[int, RosterCancellation] = {}
            for item in cancellations:
                part = by_id.get(item.participant_id)
                if part is None:
                    raise ValidationError(
                        "Cancellation names no active participant of this trip",
                        {"participant_id": item.participant_id},
                    )
                if part.is_met_at_pickup:
                    raise ValidationError(
                        "Cannot cancel a participant already met at pickup",
                        {"participant_id": part.id},
                    )
                if item.participant_id in resolved:
                    raise ValidationError(
                        "Participant listed twice", {"participant_id": part.id}
                    )
                if not isinstance(item.reason_code, CancelReasonCode):
                    raise ValidationError(
                        "Unknown cancellation reason code",
                        {"participant_id": part.id},
                    )
                if not item.reason_text or not item.reason_text.strip():
                    raise ValidationError(
                        "Cancellation reason text is required",
                        {"participant_id": part.id},
                    )
                resolved[part.id] = item

            unresolved = [
                p.id for p in active if not p.is_met_at_pickup and p.id not in resolved
            ]
            if unresolved:
                raise IncompleteRosterError(unresolved)
            met = [p for p in active if p.is_met_at_pickup]
            if not met:
                raise PolicyViolationError(
                    "no_met_participant",
                    "At least one participant must be met before departure",
                    {"trip_id": trip.id},
                )

            # (1) resolve unmet participants
            for part_id, item in resolved.items():
                part = by_id[part_id]
                req = await tx.requests.get_by_id(part.request_id, for_update=True)
                await cancel_request(
                    tx,
                    req,
                    now=now,
                    approved_by=provider.profile_id,
                    reason_code=item.reason_code,
                    reason_text=item.reason_text.strip(),
                    trip=trip,
                    part=part,
                )

            # (2) lock and depart
            trip.is_locked = True
            move_trip(trip, TripStatus.IN_PROGRESS)
            trip.start_at = now

            # (3) nobody else can join
            await close_pending_invitations(
                tx,
                trip_id=trip.id,
                status=InvitationStatus.EXPIRED,
                reason=InvitationCloseReason.TRIP_DEPARTED,
                now=now,
            )

            # (4) met participants are on their way
            for part in met:
                req = await tx.requests.get_by_id(part.request_id, for_update=True)
                move_request(req, RequestStatus.IN_PROGRESS)
                req.progress_stage = advance_stage(
                    req.progress_stage, ProgressStage.STARTED
                )
                req.started_at = now
                tx.emit(request_event(req, trip_id=trip.id, started_at=now))

            tx.emit(trip_event(trip, start_at=now, accepted_count=len(met)))
            logger.info(
                "Trip %d started with %d participant(s), %d cancelled",
                trip.id,
                len(met),
                len(resolved),
            )
            return trip

        return await self.run_locked(self._roster_discover(trip_id), op)

    async def mark_picked_up(
        self, trip_id: int, request_id: int, provider: Actor
    ) -> PickupRequestModel:
        async with self.uow.transaction(
            trip_key(trip_id), request_key(request_id)
        ) as tx:
            now = self.now()
            trip = await self._owned_trip(tx, trip_id, provider)
            if not trip.is_locked:
                raise TripNotLockedError(
                    "Trip has not departed yet", {"trip_id": trip.id}
                )
            part = await tx.participants.get_for_pair(trip.id, request_id)
            if part is None or part.status != ParticipantStatus.ACTIVE:
                raise NotFoundError("TripParticipant", request_id)
            req = await tx.requests.get_by_id(request_id, for_update=True)
            if req.progress_stage == ProgressStage.PICKED_UP:
                return req
            if req.status != RequestStatus.IN_PROGRESS:
                raise InvalidStateError(
                    f"Cannot mark pickup in status {req.status.value}",
                    {"status": req.status.value},
                )
            req.progress_stage = advance_stage(
                req.progress_stage, ProgressStage.PICKED_UP
            )
            req.picked_up_at = now
            tx.emit(request_event(req, trip_id=trip.id, picked_up_at=now))
        logger.info("Request %d picked up on trip %d", request_id, trip_id)
        return req

    # ── Expiry / cancel ───────────────────────────────────────────────

    async def expire_if_due(
        self, trip_id: int, now: Optional[datetime] = None
    ) -> ExpiryOutcome[TripModel]:
        async def op(tx: Transaction, held: set[str]) -> ExpiryOutcome[TripModel]:
            moment = now or self.now()
            trip = await tx.trips.get_by_id(trip_id, for_update=True)
            if trip is None:
                raise NotFoundError("Trip", trip_id)
            if not self._is_due(trip, moment):
                return ExpiryOutcome(trip)
            await _expire_trip(tx, trip, moment, held)
            logger.info("Trip %d expired", trip.id)
            return ExpiryOutcome(trip, expired=True)

        return await self.run_locked(self._roster_discover(trip_id), op)

    async def cancel_trip(
        self, trip_id: int, actor: Actor, reason_text: Optional[str] = None
    ) -> TripModel:
        """Administrative cancel.

        The provider may cancel until departure; an admin may cancel any
        non-terminal trip. Requests still riding with the trip are cancelled
        with reason OTHER; requests already completed keep their status.
        """

        async def op(tx: Transaction, held: set[str]) -> TripModel:
            now = self.now()
            trip = await tx.trips.get_by_id(trip_id, for_update=True)
            if trip is None:
                raise NotFoundError("Trip", trip_id)
            if not actor.is_admin:
                if trip.provider_id != actor.profile_id:
                    raise AuthorizationError("Only the trip's provider can cancel")
                if trip.is_locked:
                    raise PolicyViolationError(
                        "trip_locked",
                        "A departed trip can only be cancelled by an admin",
                        {"trip_id": trip.id},
                    )
            if trip.status in TERMINAL_TRIP_STATUSES:
                raise InvalidStateError(
                    f"Trip is already {trip.status.value}",
                    {"status": trip.status.value},
                )

            active = await tx.participants.list_for_trip(trip.id, active_only=True)
            require_keys(held, *(request_key(p.request_id) for p in active))
            for part in active:
                req = await tx.requests.get_by_id(part.request_id, for_update=True)
                if RequestStatus.CANCELLED not in REQUEST_TRANSITIONS[req.status]:
                    continue
                await cancel_request(
                    tx,
                    req,
                    now=now,
                    approved_by=actor.profile_id,
                    reason_code=CancelReasonCode.OTHER,
                    reason_text=reason_text or "Trip cancelled",
                    trip=trip,
                    part=part,
                )

            move_trip(trip, TripStatus.CANCELLED)
            trip.cancelled_at = now
            trip.cancel_reason_text = reason_text
            await close_pending_invitations(
                tx,
                trip_id=trip.id,
                status=InvitationStatus.EXPIRED,
                reason=InvitationCloseReason.TRIP_CLOSED,
                now=now,
            )
            tx.emit(trip_event(trip, cancelled_at=now))
            logger.info("Trip %d cancelled by %s", trip.id, actor.profile_id)
            return trip

        return await self.run_locked(self._roster_discover(trip_id), op)

    # ── Reads ─────────────────────────────────────────────────────────

    async def _fresh(self, trip: TripModel) -> TripModel:
        if self._is_due(trip, self.now()):
            return (await self.expire_if_due(trip.id)).entity
        return trip

    async def get_trip(self, trip_id: int, actor: Actor) -> TripRoster:
        trip = await self._fresh(await self.uow.peek(TripModel, trip_id, "Trip"))
        async with self.uow.read() as tx:
            participants = await tx.participants.list_for_trip(trip_id)
        if not (
            actor.is_admin
            or trip.provider_id == actor.profile_id
            or any(p.requester_id == actor.profile_id for p in participants)
        ):
            raise AuthorizationError("Not a party to this trip")
        return TripRoster(
            trip=trip,
            participants=participants,
            accepted_count=sum(
                1 for p in participants if p.status == ParticipantStatus.ACTIVE
            ),
        )

    async def get_roster(self, trip_id: int, provider: Actor) -> list[RosterEntry]:
        """ACTIVE participants with their requests, in pickup sequence."""
        trip = await self.uow.peek(TripModel, trip_id, "Trip")
        if trip.provider_id != provider.profile_id and not provider.is_admin:
            raise AuthorizationError("Only the trip's provider can view the roster")
        async with self.uow.read() as tx:
            parts = await tx.participants.list_for_trip(trip_id, active_only=True)
            arrived = await tx.arrivals.arrived_request_ids(trip_id)
            entries = []
            for part in parts:
                req = await tx.requests.get_by_id(part.request_id)
                entries.append(
                    RosterEntry(part, req, has_arrived=part.request_id in arrived)
                )
        return entries

    async def list_my_trips(
        self, provider: Actor, status: Optional[TripStatus] = None
    ) -> list[TripModel]:
        async with self.uow.read() as tx:
            rows = await tx.trips.list_for_provider(provider.profile_id)
        trips = [await self._fresh(t) for t in rows]
        if status is not None:
            trips = [t for t in trips if t.status == status]
        return trips
