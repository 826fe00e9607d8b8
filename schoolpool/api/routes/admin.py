"""
Admin / observability endpoints
===============================

POST /api/v1/admin/sweep  -- run one expiry sweep now
GET  /api/v1/admin/health -- simple health check
"""

from fastapi import APIRouter, Depends, Request

from schoolpool.api.dependencies import get_actor, get_engine
from schoolpool.api.middleware import limiter
from schoolpool.api.schemas import HealthResponse, SweepResponse
from schoolpool.config import settings
from schoolpool.domain.entities import Actor
from schoolpool.domain.errors import AuthorizationError
from schoolpool.services.engine import PickupEngine
from schoolpool.workers.sweeper import sweep_once

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post(
    "/sweep",
    response_model=SweepResponse,
    summary="Expire every invitation, trip and request that is due",
)
@limiter.limit(settings.rate_limit)
async def run_sweep(
    request: Request,
    actor: Actor = Depends(get_actor),
    engine: PickupEngine = Depends(get_engine),
):
    if not actor.is_admin:
        raise AuthorizationError("Admin only")
    result = await sweep_once(engine)
    return SweepResponse(
        invitations=result.invitations,
        trips=result.trips,
        requests=result.requests,
        failures=result.failures,
    )


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health():
    return HealthResponse()
