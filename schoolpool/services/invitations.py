"""
Invitation Matching Coordinator
===============================

Offers from a trip to a pickup request, and the acceptance that turns one
of them into a seat.

Acceptance is the engine's atomicity point. Inside a single unit of work
holding ``trip:<id>`` and ``request:<id>``:

1. the invitation is re-read and must still be PENDING and unexpired,
2. the request must still be REQUESTED,
3. the trip's capacity ledger is rebuilt from its ACTIVE participants,
4. invitation -> ACCEPTED, participant created, request -> MATCHED,
5. every other PENDING invitation for the request -> REJECTED (SUPERSEDED).

Two acceptances for the same request serialize on ``request:<id>``; two
acceptances for the last seat serialize on ``trip:<id>``. The partial
unique indexes on ``invitations`` and ``trip_participants`` back both
invariants in storage.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy.exc import IntegrityError

from schoolpool.config import settings
from schoolpool.domain.capacity import CapacityLedger
from schoolpool.domain.entities import Actor, advance_stage
from schoolpool.domain.enums import (
    INVITATION_SORT_ORDER,
    InvitationCloseReason,
    InvitationStatus,
    ProgressStage,
    RequestStatus,
    TripStatus,
)
from schoolpool.domain.errors import (
    AlreadyRespondedError,
    AuthorizationError,
    InvalidStateError,
    NotFoundError,
    PolicyViolationError,
)
from schoolpool.domain.expiry import (
    invitation_deadline,
    invitation_is_due,
    request_is_due,
    service_date,
)
from schoolpool.infrastructure.locks import request_key, trip_key
from schoolpool.infrastructure.models import (
    InvitationModel,
    PickupRequestModel,
    TripModel,
    TripParticipantModel,
)

from .base import (
    ExpiryOutcome,
    Service,
    Transaction,
    invitation_event,
    participant_event,
    request_event,
    trip_event,
)
from .effects import (
    close_pending_invitations,
    expire_request,
    move_invitation,
    move_request,
)

logger = logging.getLogger(__name__)


def _expire_in_place(tx: Transaction, inv: InvitationModel, now: datetime) -> None:
    move_invitation(inv, InvitationStatus.EXPIRED)
    inv.close_reason = InvitationCloseReason.TIMED_OUT
    inv.responded_at = now
    tx.emit(invitation_event(inv))


def _sort_key(inv: InvitationModel):
    return (INVITATION_SORT_ORDER[inv.status], -inv.created_at.timestamp())


class InvitationService(Service):
    @property
    def ttl(self) -> timedelta:
        return timedelta(hours=settings.invitation_ttl_hours)

    # ── Send ──────────────────────────────────────────────────────────

    async def send_invitation(
        self, trip_id: int, request_id: int, provider: Actor
    ) -> InvitationModel:
        lapsed: Optional[PolicyViolationError] = None
        async with self.uow.transaction(
            trip_key(trip_id), request_key(request_id)
        ) as tx:
            now = self.now()
            trip = await tx.trips.get_by_id(trip_id, for_update=True)
            if trip is None:
                raise NotFoundError("Trip", trip_id)
            if trip.provider_id != provider.profile_id:
                raise AuthorizationError("Only the trip's provider can invite")
            if not provider.is_verified_provider:
                raise AuthorizationError("Provider is not verified")

            req = await tx.requests.get_by_id(request_id, for_update=True)
            if req is None:
                raise NotFoundError("PickupRequest", request_id)

            if req.requester_id == provider.profile_id:
                raise PolicyViolationError(
                    "self_invitation", "Cannot invite your own request"
                )
            if trip.is_locked:
                raise PolicyViolationError(
                    "trip_locked", "Trip has already departed", {"trip_id": trip.id}
                )
            if trip.status != TripStatus.OPEN or now >= trip.scheduled_start_at:
                raise PolicyViolationError(
                    "trip_not_open",
                    f"Trip is not accepting invitations ({trip.status.value})",
                    {"trip_id": trip.id, "status": trip.status.value},
                )

            if request_is_due(req.status, req.pickup_time, now):
                # the expiry commits; the caller still sees the request as closed
                await expire_request(tx, req, now=now)
                lapsed = PolicyViolationError(
                    "request_not_open",
                    "Pickup time has passed; request expired",
                    {"request_id": req.id},
                )
            else:
                inv = await self._offer(tx, trip, req, now)
        if lapsed is not None:
            raise lapsed

        logger.info(
            "Invitation %d sent: trip %d -> request %d", inv.id, trip_id, request_id
        )
        return inv

    async def _offer(
        self,
        tx: Transaction,
        trip: TripModel,
        req: PickupRequestModel,
        now: datetime,
    ) -> InvitationModel:
        if req.status != RequestStatus.REQUESTED:
            raise PolicyViolationError(
                "request_not_open",
                f"Request is no longer open ({req.status.value})",
                {"request_id": req.id, "status": req.status.value},
            )

        ledger = CapacityLedger(
            trip.id, trip.capacity, await tx.participants.count_active(trip.id)
        )
        if not ledger.has_spare():
            raise PolicyViolationError(
                "no_spare_capacity",
                f"Trip is full ({ledger.accepted}/{ledger.capacity})",
                {"trip_id": trip.id, "capacity": trip.capacity},
            )

        live = await tx.invitations.get_live_for_pair(trip.id, req.id)
        if live is not None:
            if not invitation_is_due(live.status, live.expires_at, now):
                raise PolicyViolationError(
                    "duplicate_live_invitation",
                    "This trip already has a live invitation for the request",
                    {"invitation_id": live.id},
                )
            _expire_in_place(tx, live, now)
            await tx.session.flush()

        tz = ZoneInfo(settings.service_timezone)
        if service_date(req.pickup_time, tz) != service_date(
            trip.scheduled_start_at, tz
        ):
            raise PolicyViolationError(
                "date_mismatch",
                "Pickup date does not match the trip date",
                {
                    "pickup_date": service_date(req.pickup_time, tz).isoformat(),
                    "trip_date": service_date(trip.scheduled_start_at, tz).isoformat(),
                },
            )

        try:
            inv = await tx.invitations.create(
                InvitationModel(
                    trip_id=trip.id,
                    request_id=req.id,
                    provider_id=trip.provider_id,
                    requester_id=req.requester_id,
                    status=InvitationStatus.PENDING,
                    created_at=now,
                    expires_at=invitation_deadline(
                        now, self.ttl, trip.scheduled_start_at
                    ),
                )
            )
        except IntegrityError as exc:
            raise PolicyViolationError(
                "duplicate_live_invitation",
                "This trip already has a live invitation for the request",
            ) from exc
        tx.emit(invitation_event(inv, expires_at=inv.expires_at))
        return inv

    # ── Respond ───────────────────────────────────────────────────────

    def _discover(self, invitation_id: int):
        async def discover() -> list[str]:
            inv = await self.uow.peek(InvitationModel, invitation_id, "Invitation")
            return [trip_key(inv.trip_id), request_key(inv.request_id)]

        return discover

    async def _load(
        self, tx: Transaction, invitation_id: int, actor: Optional[Actor] = None
    ) -> InvitationModel:
        inv = await tx.invitations.get_by_id(invitation_id, for_update=True)
        if inv is None:
            raise NotFoundError("Invitation", invitation_id)
        if actor is not None and inv.requester_id != actor.profile_id:
            raise AuthorizationError("Only the invited requester can respond")
        return inv

    def _respondable(self, tx: Transaction, inv: InvitationModel, now: datetime) -> bool:
        """False (after expiring it in place) if the offer timed out."""
        if inv.status != InvitationStatus.PENDING:
            raise AlreadyRespondedError(
                f"Invitation already {inv.status.value}",
                {"invitation_id": inv.id, "status": inv.status.value},
            )
        if invitation_is_due(inv.status, inv.expires_at, now):
            _expire_in_place(tx, inv, now)
            tx.fail_after_commit(
                InvalidStateError(
                    "Invitation has expired", {"invitation_id": inv.id}
                )
            )
            return False
        return True

    async def accept_invitation(
        self, invitation_id: int, requester: Actor
    ) -> InvitationModel:
        async def op(tx: Transaction, held: set[str]) -> InvitationModel:
            now = self.now()
            inv = await self._load(tx, invitation_id, requester)
            if not self._respondable(tx, inv, now):
                return inv

            trip = await tx.trips.get_by_id(inv.trip_id, for_update=True)
            req = await tx.requests.get_by_id(inv.request_id, for_update=True)

            if request_is_due(req.status, req.pickup_time, now):
                await expire_request(tx, req, now=now)
                tx.fail_after_commit(
                    InvalidStateError(
                        "Pickup time has passed; request expired",
                        {"request_id": req.id},
                    )
                )
                return inv
            if req.status != RequestStatus.REQUESTED:
                raise AlreadyRespondedError(
                    f"Request already {req.status.value}",
                    {"request_id": req.id, "status": req.status.value},
                )
            if trip.is_locked or trip.status != TripStatus.OPEN:
                raise InvalidStateError(
                    f"Trip is no longer open ({trip.status.value})",
                    {"trip_id": trip.id, "status": trip.status.value},
                )

            ledger = CapacityLedger(
                trip.id, trip.capacity, await tx.participants.count_active(trip.id)
            )
            ledger.reserve()
            sequence = await tx.participants.next_sequence(trip.id)

            move_invitation(inv, InvitationStatus.ACCEPTED)
            inv.responded_at = now
            try:
                part = await tx.participants.create(
                    TripParticipantModel(
                        trip_id=trip.id,
                        request_id=req.id,
                        requester_id=req.requester_id,
                        sequence_order=sequence,
                        created_at=now,
                    )
                )
            except IntegrityError as exc:
                raise AlreadyRespondedError(
                    "Request was matched concurrently", {"request_id": req.id}
                ) from exc

            move_request(req, RequestStatus.MATCHED)
            req.progress_stage = advance_stage(req.progress_stage, ProgressStage.MATCHED)

            await close_pending_invitations(
                tx,
                request_id=req.id,
                exclude_id=inv.id,
                status=InvitationStatus.REJECTED,
                reason=InvitationCloseReason.SUPERSEDED,
                now=now,
            )

            tx.emit(invitation_event(inv))
            tx.emit(participant_event(part, trip.provider_id))
            tx.emit(request_event(req, trip_id=trip.id))
            tx.emit(trip_event(trip, accepted_count=ledger.accepted))
            logger.info(
                "Invitation %d accepted: request %d joined trip %d (%d/%d)",
                inv.id,
                req.id,
                trip.id,
                ledger.accepted,
                ledger.capacity,
            )
            return inv

        return await self.run_locked(self._discover(invitation_id), op)

    async def reject_invitation(
        self, invitation_id: int, requester: Actor
    ) -> InvitationModel:
        async def op(tx: Transaction, held: set[str]) -> InvitationModel:
            now = self.now()
            inv = await self._load(tx, invitation_id, requester)
            if not self._respondable(tx, inv, now):
                return inv
            move_invitation(inv, InvitationStatus.REJECTED)
            inv.close_reason = InvitationCloseReason.DECLINED
            inv.responded_at = now
            tx.emit(invitation_event(inv))
            logger.info("Invitation %d rejected", inv.id)
            return inv

        return await self.run_locked(self._discover(invitation_id), op)

    # ── Expiry ────────────────────────────────────────────────────────

    async def expire_if_due(
        self, invitation_id: int, now: Optional[datetime] = None
    ) -> ExpiryOutcome[InvitationModel]:
        async def op(
            tx: Transaction, held: set[str]
        ) -> ExpiryOutcome[InvitationModel]:
            moment = now or self.now()
            inv = await self._load(tx, invitation_id)
            if not invitation_is_due(inv.status, inv.expires_at, moment):
                return ExpiryOutcome(inv)
            _expire_in_place(tx, inv, moment)
            logger.info("Invitation %d expired", inv.id)
            return ExpiryOutcome(inv, expired=True)

        return await self.run_locked(self._discover(invitation_id), op)

    # ── Reads ─────────────────────────────────────────────────────────

    async def _fresh(self, rows: list[InvitationModel]) -> list[InvitationModel]:
        now = self.now()
        fresh = []
        for inv in rows:
            if invitation_is_due(inv.status, inv.expires_at, now):
                inv = (await self.expire_if_due(inv.id)).entity
            fresh.append(inv)
        return fresh

    async def list_trip_invitations(
        self,
        trip_id: int,
        provider: Actor,
        status: Optional[InvitationStatus] = None,
    ) -> list[InvitationModel]:
        trip = await self.uow.peek(TripModel, trip_id, "Trip")
        if trip.provider_id != provider.profile_id and not provider.is_admin:
            raise AuthorizationError("Only the trip's provider can list its invitations")
        async with self.uow.read() as tx:
            rows = await tx.invitations.list_for_trip(trip_id)
        rows = await self._fresh(rows)
        if status is not None:
            rows = [inv for inv in rows if inv.status == status]
        return sorted(rows, key=_sort_key)

    async def list_my_invitations(
        self, requester: Actor, status: Optional[InvitationStatus] = None
    ) -> list[InvitationModel]:
        async with self.uow.read() as tx:
            rows = await tx.invitations.list_for_requester(requester.profile_id)
        rows = await self._fresh(rows)
        if status is not None:
            rows = [inv for inv in rows if inv.status == status]
        return sorted(rows, key=_sort_key)
