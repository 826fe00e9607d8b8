"""
Pickup request endpoints
========================

POST /api/v1/requests                       -- create a pickup request
GET  /api/v1/requests                       -- my requests (optional ?status)
GET  /api/v1/requests/open                  -- open requests for providers
GET  /api/v1/requests/{id}                  -- one request
POST /api/v1/requests/{id}/cancel           -- ask to cancel
POST /api/v1/requests/{id}/approve-cancel   -- provider approves a cancel
POST /api/v1/requests/{id}/review           -- rate a completed ride
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Request

from schoolpool.api.dependencies import get_actor, get_engine
from schoolpool.api.middleware import limiter
from schoolpool.api.schemas import (
    CancellationBody,
    OpenRequestResponse,
    PickupRequestCreate,
    PickupRequestResponse,
    ReviewCreate,
    ReviewResponse,
)
from schoolpool.config import settings
from schoolpool.domain.entities import Actor, Location, Place
from schoolpool.domain.enums import RequestStatus
from schoolpool.services.engine import PickupEngine

router = APIRouter(prefix="/requests", tags=["requests"])


@router.post(
    "",
    status_code=201,
    response_model=PickupRequestResponse,
    summary="Create a pickup request",
)
@limiter.limit(settings.rate_limit)
async def create_request(
    request: Request,
    body: PickupRequestCreate,
    actor: Actor = Depends(get_actor),
    engine: PickupEngine = Depends(get_engine),
):
    return await engine.requests.create_request(
        actor,
        pickup_time=body.pickup_time,
        origin=Place(body.origin.text, Location(body.origin.lat, body.origin.lng)),
        destination=Place(
            body.destination.text,
            Location(body.destination.lat, body.destination.lng),
        ),
    )


@router.get("", response_model=list[PickupRequestResponse], summary="List my requests")
@limiter.limit(settings.rate_limit)
async def list_my_requests(
    request: Request,
    status: Optional[RequestStatus] = None,
    actor: Actor = Depends(get_actor),
    engine: PickupEngine = Depends(get_engine),
):
    return await engine.requests.list_my_requests(actor, status)


@router.get(
    "/open",
    response_model=list[OpenRequestResponse],
    summary="Browse open requests",
    description=(
        "Verified providers only. Returns REQUESTED pickups, optionally for "
        "one service day and ordered by distance from ``lat``/``lng``."
    ),
)
@limiter.limit(settings.rate_limit)
async def list_open_requests(
    request: Request,
    on_date: Optional[date] = None,
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    actor: Actor = Depends(get_actor),
    engine: PickupEngine = Depends(get_engine),
):
    near = Location(lat, lng) if lat is not None and lng is not None else None
    items = await engine.requests.list_open_requests(actor, on_date, near)
    return [
        OpenRequestResponse(
            id=item.request.id,
            pickup_time=item.request.pickup_time,
            origin_text=item.request.origin_text,
            destination_text=item.request.destination_text,
            distance_km=item.distance_km,
        )
        for item in items
    ]


@router.get("/{request_id}", response_model=PickupRequestResponse, summary="Get a request")
@limiter.limit(settings.rate_limit)
async def get_request(
    request: Request,
    request_id: int,
    actor: Actor = Depends(get_actor),
    engine: PickupEngine = Depends(get_engine),
):
    return await engine.requests.get_request(request_id, actor)


@router.post(
    "/{request_id}/cancel",
    response_model=PickupRequestResponse,
    summary="Cancel a request",
    description=(
        "Cancels at once when the request is unmatched or pickup is more "
        "than the approval threshold away; otherwise moves to "
        "CANCEL_REQUESTED and waits for the provider."
    ),
)
@limiter.limit(settings.rate_limit)
async def request_cancellation(
    request: Request,
    request_id: int,
    body: CancellationBody,
    actor: Actor = Depends(get_actor),
    engine: PickupEngine = Depends(get_engine),
):
    return await engine.requests.request_cancellation(
        request_id, actor, body.reason_code, body.reason_text
    )


@router.post(
    "/{request_id}/approve-cancel",
    response_model=PickupRequestResponse,
    summary="Approve a pending cancellation",
)
@limiter.limit(settings.rate_limit)
async def approve_cancellation(
    request: Request,
    request_id: int,
    actor: Actor = Depends(get_actor),
    engine: PickupEngine = Depends(get_engine),
):
    return await engine.requests.approve_cancellation(request_id, actor)


@router.post(
    "/{request_id}/review",
    status_code=201,
    response_model=ReviewResponse,
    summary="Review a completed ride",
)
@limiter.limit(settings.rate_limit)
async def submit_review(
    request: Request,
    request_id: int,
    body: ReviewCreate,
    actor: Actor = Depends(get_actor),
    engine: PickupEngine = Depends(get_engine),
):
    return await engine.reviews.submit_review(
        request_id, actor, body.rating, body.comment
    )
