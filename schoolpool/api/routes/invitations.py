"""
Invitation endpoints
====================

POST /api/v1/trips/{trip_id}/invitations       -- provider invites a request
GET  /api/v1/trips/{trip_id}/invitations       -- invitations of one trip
GET  /api/v1/invitations                       -- invitations I received
POST /api/v1/invitations/{id}/accept           -- requester accepts
POST /api/v1/invitations/{id}/reject           -- requester declines
GET  /api/v1/invitations/unread-counts?ids=    -- unread messages per thread
GET  /api/v1/invitations/{id}/messages         -- the invitation's thread
POST /api/v1/invitations/{id}/messages         -- post to the thread
POST /api/v1/invitations/{id}/messages/read    -- mark the thread read
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from schoolpool.api.dependencies import get_actor, get_engine
from schoolpool.api.middleware import limiter
from schoolpool.api.schemas import (
    InvitationCreate,
    InvitationResponse,
    MessageCreate,
    MessageResponse,
    ThreadReadResponse,
)
from schoolpool.config import settings
from schoolpool.domain.entities import Actor
from schoolpool.domain.enums import InvitationStatus
from schoolpool.services.engine import PickupEngine

router = APIRouter(tags=["invitations"])


@router.post(
    "/trips/{trip_id}/invitations",
    status_code=201,
    response_model=InvitationResponse,
    summary="Invite a pickup request to a trip",
)
@limiter.limit(settings.rate_limit)
async def send_invitation(
    request: Request,
    trip_id: int,
    body: InvitationCreate,
    actor: Actor = Depends(get_actor),
    engine: PickupEngine = Depends(get_engine),
):
    return await engine.invitations.send_invitation(trip_id, body.request_id, actor)


@router.get(
    "/trips/{trip_id}/invitations",
    response_model=list[InvitationResponse],
    summary="List a trip's invitations",
)
@limiter.limit(settings.rate_limit)
async def list_trip_invitations(
    request: Request,
    trip_id: int,
    status: Optional[InvitationStatus] = None,
    actor: Actor = Depends(get_actor),
    engine: PickupEngine = Depends(get_engine),
):
    return await engine.invitations.list_trip_invitations(trip_id, actor, status)


@router.get(
    "/invitations",
    response_model=list[InvitationResponse],
    summary="List invitations I received",
)
@limiter.limit(settings.rate_limit)
async def list_my_invitations(
    request: Request,
    status: Optional[InvitationStatus] = None,
    actor: Actor = Depends(get_actor),
    engine: PickupEngine = Depends(get_engine),
):
    return await engine.invitations.list_my_invitations(actor, status)


@router.post(
    "/invitations/{invitation_id}/accept",
    response_model=InvitationResponse,
    summary="Accept an invitation",
    description=(
        "Joins the trip atomically: takes a seat, moves the request to "
        "MATCHED and supersedes every other open invitation for it. "
        "409 ERR_CAPACITY if the last seat was just taken."
    ),
)
@limiter.limit(settings.rate_limit)
async def accept_invitation(
    request: Request,
    invitation_id: int,
    actor: Actor = Depends(get_actor),
    engine: PickupEngine = Depends(get_engine),
):
    return await engine.invitations.accept_invitation(invitation_id, actor)


@router.post(
    "/invitations/{invitation_id}/reject",
    response_model=InvitationResponse,
    summary="Decline an invitation",
)
@limiter.limit(settings.rate_limit)
async def reject_invitation(
    request: Request,
    invitation_id: int,
    actor: Actor = Depends(get_actor),
    engine: PickupEngine = Depends(get_engine),
):
    return await engine.invitations.reject_invitation(invitation_id, actor)


# ── Message threads ───────────────────────────────────────────────────


@router.get(
    "/invitations/unread-counts",
    response_model=dict[int, int],
    summary="Unread messages per invitation thread",
)
@limiter.limit(settings.rate_limit)
async def unread_counts(
    request: Request,
    ids: list[int] = Query(default=[]),
    actor: Actor = Depends(get_actor),
    engine: PickupEngine = Depends(get_engine),
):
    return await engine.messages.unread_counts(ids, actor)


@router.get(
    "/invitations/{invitation_id}/messages",
    response_model=list[MessageResponse],
    summary="Read an invitation's message thread",
)
@limiter.limit(settings.rate_limit)
async def list_messages(
    request: Request,
    invitation_id: int,
    actor: Actor = Depends(get_actor),
    engine: PickupEngine = Depends(get_engine),
):
    return await engine.messages.list_messages(invitation_id, actor)


@router.post(
    "/invitations/{invitation_id}/messages",
    status_code=201,
    response_model=MessageResponse,
    summary="Post to an invitation's message thread",
)
@limiter.limit(settings.rate_limit)
async def send_message(
    request: Request,
    invitation_id: int,
    body: MessageCreate,
    actor: Actor = Depends(get_actor),
    engine: PickupEngine = Depends(get_engine),
):
    return await engine.messages.send_message(invitation_id, actor, body.body)


@router.post(
    "/invitations/{invitation_id}/messages/read",
    response_model=ThreadReadResponse,
    summary="Mark an invitation's thread read",
)
@limiter.limit(settings.rate_limit)
async def mark_thread_read(
    request: Request,
    invitation_id: int,
    actor: Actor = Depends(get_actor),
    engine: PickupEngine = Depends(get_engine),
):
    return await engine.messages.mark_thread_read(invitation_id, actor)
