"""
Sub-effects shared by several lifecycle operations.

They never open their own transaction: callers run them inside a locked
``Transaction`` as ordered steps of one unit of work.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import update

from schoolpool.domain.entities import check_transition
from schoolpool.domain.enums import (
    INVITATION_TRANSITIONS,
    REQUEST_TRANSITIONS,
    TRIP_TRANSITIONS,
    CancelReasonCode,
    InvitationCloseReason,
    InvitationStatus,
    ParticipantStatus,
    RequestStatus,
    TripStatus,
)
from schoolpool.infrastructure.models import (
    InvitationModel,
    PickupRequestModel,
    TripModel,
    TripParticipantModel,
)

from .base import (
    Transaction,
    invitation_event,
    participant_event,
    request_event,
)


def move_request(req: PickupRequestModel, new: RequestStatus) -> None:
    check_transition("pickup request", req.status, new, REQUEST_TRANSITIONS)
    req.status = new


def move_trip(trip: TripModel, new: TripStatus) -> None:
    check_transition("trip", trip.status, new, TRIP_TRANSITIONS)
    trip.status = new


def move_invitation(inv: InvitationModel, new: InvitationStatus) -> None:
    check_transition("invitation", inv.status, new, INVITATION_TRANSITIONS)
    inv.status = new


async def close_pending_invitations(
    tx: Transaction,
    *,
    status: InvitationStatus,
    reason: InvitationCloseReason,
    now: datetime,
    request_id: Optional[int] = None,
    trip_id: Optional[int] = None,
    exclude_id: Optional[int] = None,
) -> list[InvitationModel]:
    """Compare-and-set every still-PENDING invitation matching the filters.

    The ``status = PENDING`` guard is part of the UPDATE itself, so an
    invitation another unit of work closed a moment earlier is left alone.
    """
    stmt = update(InvitationModel).where(
        InvitationModel.status == InvitationStatus.PENDING
    )
    if request_id is not None:
        stmt = stmt.where(InvitationModel.request_id == request_id)
    if trip_id is not None:
        stmt = stmt.where(InvitationModel.trip_id == trip_id)
    if exclude_id is not None:
        stmt = stmt.where(InvitationModel.id != exclude_id)
    stmt = stmt.values(
        status=status, close_reason=reason, responded_at=now
    ).returning(InvitationModel)

    result = await tx.session.scalars(stmt)
    closed = list(result.all())
    for inv in closed:
        tx.emit(invitation_event(inv))
    return closed


async def release_participant(
    tx: Transaction,
    part: TripParticipantModel,
    provider_id: str,
    now: datetime,
) -> None:
    """Drop a participant from the active roster, freeing its seat."""
    if part.status != ParticipantStatus.ACTIVE:
        return
    part.status = ParticipantStatus.CANCELLED
    part.cancelled_at = now
    tx.emit(participant_event(part, provider_id))


async def cancel_request(
    tx: Transaction,
    req: PickupRequestModel,
    *,
    now: datetime,
    approved_by: str,
    reason_code: Optional[CancelReasonCode],
    reason_text: Optional[str],
    trip: Optional[TripModel] = None,
    part: Optional[TripParticipantModel] = None,
) -> None:
    """CANCELLED with the decision recorded; seat and live offers released."""
    move_request(req, RequestStatus.CANCELLED)
    if req.cancel_requested_at is None:
        req.cancel_requested_at = now
    req.cancel_approved_at = now
    req.cancel_approved_by = approved_by
    if reason_code is not None:
        req.cancel_reason_code = reason_code
    if reason_text is not None:
        req.cancel_reason_text = reason_text

    if part is not None and trip is not None:
        await release_participant(tx, part, trip.provider_id, now)
    await close_pending_invitations(
        tx,
        request_id=req.id,
        status=InvitationStatus.EXPIRED,
        reason=InvitationCloseReason.REQUEST_CLOSED,
        now=now,
    )
    tx.emit(
        request_event(
            req,
            trip_id=trip.id if trip is not None else None,
            cancel_reason_code=req.cancel_reason_code,
            cancel_approved_at=now,
        )
    )


async def expire_request(
    tx: Transaction,
    req: PickupRequestModel,
    *,
    now: datetime,
    trip: Optional[TripModel] = None,
    part: Optional[TripParticipantModel] = None,
) -> None:
    move_request(req, RequestStatus.EXPIRED)
    req.expired_at = now
    if part is not None and trip is not None:
        await release_participant(tx, part, trip.provider_id, now)
    await close_pending_invitations(
        tx,
        request_id=req.id,
        status=InvitationStatus.EXPIRED,
        reason=InvitationCloseReason.REQUEST_CLOSED,
        now=now,
    )
    tx.emit(
        request_event(
            req, trip_id=trip.id if trip is not None else None, expired_at=now
        )
    )
