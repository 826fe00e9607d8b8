"""
Calendar endpoints
==================

GET /api/v1/calendar/open-trips?month=YYYY-MM      -- joinable trips per day
GET /api/v1/calendar/open-requests?month=YYYY-MM   -- invitable requests per day
GET /api/v1/calendar/my-requests?month=YYYY-MM     -- my requests per day
GET /api/v1/calendar/my-trips?month=YYYY-MM        -- my trips per day
"""

from fastapi import APIRouter, Depends, Query, Request

from schoolpool.api.dependencies import get_actor, get_engine
from schoolpool.api.middleware import limiter
from schoolpool.api.schemas import DayCountResponse
from schoolpool.config import settings
from schoolpool.domain.entities import Actor
from schoolpool.services.engine import PickupEngine

router = APIRouter(prefix="/calendar", tags=["calendar"])

MONTH = Query(..., description="Month in the service time zone, YYYY-MM")


@router.get(
    "/open-trips",
    response_model=list[DayCountResponse],
    summary="Trips with a free seat, per day",
)
@limiter.limit(settings.rate_limit)
async def open_trip_counts(
    request: Request,
    month: str = MONTH,
    actor: Actor = Depends(get_actor),
    engine: PickupEngine = Depends(get_engine),
):
    return await engine.calendar.open_trip_counts(actor, month)


@router.get(
    "/open-requests",
    response_model=list[DayCountResponse],
    summary="Requests a provider could invite, per day",
)
@limiter.limit(settings.rate_limit)
async def open_request_counts(
    request: Request,
    month: str = MONTH,
    actor: Actor = Depends(get_actor),
    engine: PickupEngine = Depends(get_engine),
):
    return await engine.calendar.open_request_counts(actor, month)


@router.get(
    "/my-requests",
    response_model=list[DayCountResponse],
    summary="My requests per day with their statuses",
)
@limiter.limit(settings.rate_limit)
async def my_request_counts(
    request: Request,
    month: str = MONTH,
    actor: Actor = Depends(get_actor),
    engine: PickupEngine = Depends(get_engine),
):
    return await engine.calendar.my_request_counts(actor, month)


@router.get(
    "/my-trips",
    response_model=list[DayCountResponse],
    summary="My trips per day with their statuses",
)
@limiter.limit(settings.rate_limit)
async def my_trip_counts(
    request: Request,
    month: str = MONTH,
    actor: Actor = Depends(get_actor),
    engine: PickupEngine = Depends(get_engine),
):
    return await engine.calendar.my_trip_counts(actor, month)
