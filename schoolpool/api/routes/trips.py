"""
Trip endpoints
==============

POST /api/v1/trips                                      -- create a trip
GET  /api/v1/trips                                      -- my trips
GET  /api/v1/trips/{id}                                 -- trip with participants
GET  /api/v1/trips/{id}/roster                          -- active roster + requests
POST /api/v1/trips/{id}/participants/{pid}/met          -- mark met at pickup
POST /api/v1/trips/{id}/start                           -- depart (freeze roster)
POST /api/v1/trips/{id}/requests/{rid}/picked-up        -- pickup progress
POST /api/v1/trips/{id}/cancel                          -- administrative cancel
POST /api/v1/trips/{id}/arrivals                        -- record arrival evidence
GET  /api/v1/trips/{id}/arrivals                        -- arrivals with signed URLs
GET  /api/v1/trips/{id}/reviews                         -- reviews + average
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request

from schoolpool.api.dependencies import get_actor, get_engine
from schoolpool.api.middleware import limiter
from schoolpool.api.schemas import (
    ArrivalCreate,
    ArrivalResponse,
    MarkMetBody,
    ParticipantResponse,
    PickupRequestResponse,
    ReviewResponse,
    ReviewSummaryResponse,
    RosterEntryResponse,
    StartTripBody,
    TripCancelBody,
    TripCreate,
    TripDetailResponse,
    TripResponse,
)
from schoolpool.config import settings
from schoolpool.domain.entities import Actor, RosterCancellation
from schoolpool.domain.enums import TripStatus
from schoolpool.services.engine import PickupEngine

router = APIRouter(prefix="/trips", tags=["trips"])


@router.post("", status_code=201, response_model=TripResponse, summary="Create a trip")
@limiter.limit(settings.rate_limit)
async def create_trip(
    request: Request,
    body: TripCreate,
    actor: Actor = Depends(get_actor),
    engine: PickupEngine = Depends(get_engine),
):
    return await engine.trips.create_trip(
        actor, body.scheduled_start_at, body.capacity, body.title
    )


@router.get("", response_model=list[TripResponse], summary="List my trips")
@limiter.limit(settings.rate_limit)
async def list_my_trips(
    request: Request,
    status: Optional[TripStatus] = None,
    actor: Actor = Depends(get_actor),
    engine: PickupEngine = Depends(get_engine),
):
    return await engine.trips.list_my_trips(actor, status)


@router.get("/{trip_id}", response_model=TripDetailResponse, summary="Get a trip")
@limiter.limit(settings.rate_limit)
async def get_trip(
    request: Request,
    trip_id: int,
    actor: Actor = Depends(get_actor),
    engine: PickupEngine = Depends(get_engine),
):
    roster = await engine.trips.get_trip(trip_id, actor)
    return TripDetailResponse(
        trip=TripResponse.model_validate(roster.trip),
        participants=[ParticipantResponse.model_validate(p) for p in roster.participants],
        accepted_count=roster.accepted_count,
        spare=roster.spare,
    )


@router.get(
    "/{trip_id}/roster",
    response_model=list[RosterEntryResponse],
    summary="Active roster with request details",
)
@limiter.limit(settings.rate_limit)
async def get_roster(
    request: Request,
    trip_id: int,
    actor: Actor = Depends(get_actor),
    engine: PickupEngine = Depends(get_engine),
):
    entries = await engine.trips.get_roster(trip_id, actor)
    return [
        RosterEntryResponse(
            participant=ParticipantResponse.model_validate(e.participant),
            request=PickupRequestResponse.model_validate(e.request),
            has_arrived=e.has_arrived,
        )
        for e in entries
    ]


@router.post(
    "/{trip_id}/participants/{participant_id}/met",
    response_model=ParticipantResponse,
    summary="Mark a participant met at the pickup point",
)
@limiter.limit(settings.rate_limit)
async def mark_participant_met(
    request: Request,
    trip_id: int,
    participant_id: int,
    body: MarkMetBody,
    actor: Actor = Depends(get_actor),
    engine: PickupEngine = Depends(get_engine),
):
    return await engine.trips.mark_participant_met(
        trip_id, participant_id, actor, met=body.met
    )


@router.post(
    "/{trip_id}/start",
    response_model=TripResponse,
    summary="Start the trip",
    description=(
        "Locks the roster. Every active participant must be met or listed "
        "in ``cancellations``; otherwise 409 ERR_INCOMPLETE_ROSTER with the "
        "unresolved participant ids."
    ),
)
@limiter.limit(settings.rate_limit)
async def start_trip(
    request: Request,
    trip_id: int,
    body: StartTripBody,
    actor: Actor = Depends(get_actor),
    engine: PickupEngine = Depends(get_engine),
):
    cancellations = [
        RosterCancellation(c.participant_id, c.reason_code, c.reason_text)
        for c in body.cancellations
    ]
    return await engine.trips.start_trip(trip_id, actor, cancellations)


@router.post(
    "/{trip_id}/requests/{request_id}/picked-up",
    response_model=PickupRequestResponse,
    summary="Mark a child picked up",
)
@limiter.limit(settings.rate_limit)
async def mark_picked_up(
    request: Request,
    trip_id: int,
    request_id: int,
    actor: Actor = Depends(get_actor),
    engine: PickupEngine = Depends(get_engine),
):
    return await engine.trips.mark_picked_up(trip_id, request_id, actor)


@router.post("/{trip_id}/cancel", response_model=TripResponse, summary="Cancel a trip")
@limiter.limit(settings.rate_limit)
async def cancel_trip(
    request: Request,
    trip_id: int,
    body: TripCancelBody,
    actor: Actor = Depends(get_actor),
    engine: PickupEngine = Depends(get_engine),
):
    return await engine.trips.cancel_trip(trip_id, actor, body.reason_text)


@router.post(
    "/{trip_id}/arrivals",
    status_code=201,
    response_model=ArrivalResponse,
    summary="Record arrival evidence",
)
@limiter.limit(settings.rate_limit)
async def record_arrival(
    request: Request,
    trip_id: int,
    body: ArrivalCreate,
    actor: Actor = Depends(get_actor),
    engine: PickupEngine = Depends(get_engine),
):
    record = await engine.arrivals.record_arrival(
        trip_id, body.request_id, body.blob_ref, actor
    )
    return ArrivalResponse(
        id=record.id,
        trip_id=record.trip_id,
        request_id=record.request_id,
        created_at=record.created_at,
    )


@router.get(
    "/{trip_id}/arrivals",
    response_model=list[ArrivalResponse],
    summary="List arrivals with signed photo URLs",
)
@limiter.limit(settings.rate_limit)
async def list_arrivals(
    request: Request,
    trip_id: int,
    actor: Actor = Depends(get_actor),
    engine: PickupEngine = Depends(get_engine),
):
    views = await engine.arrivals.list_arrivals(trip_id, actor)
    return [
        ArrivalResponse(
            id=v.record.id,
            trip_id=v.record.trip_id,
            request_id=v.record.request_id,
            created_at=v.record.created_at,
            url=v.url,
        )
        for v in views
    ]


@router.get(
    "/{trip_id}/reviews",
    response_model=ReviewSummaryResponse,
    summary="Reviews of a trip",
)
@limiter.limit(settings.rate_limit)
async def list_trip_reviews(
    request: Request,
    trip_id: int,
    actor: Actor = Depends(get_actor),
    engine: PickupEngine = Depends(get_engine),
):
    summary = await engine.reviews.list_trip_reviews(trip_id)
    return ReviewSummaryResponse(
        trip_id=summary.trip_id,
        count=summary.count,
        average_rating=summary.average_rating,
        reviews=[ReviewResponse.model_validate(r) for r in summary.reviews],
    )
