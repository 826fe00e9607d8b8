"""
FastAPI application factory.

* Registers routes for requests, invitations, trips, calendar and admin.
* Builds the pickup engine and starts / stops the expiry sweeper via
  lifespan events.
* Maps every ``EngineError`` to ``{"error_code", "message", "details"}``.
* Applies rate-limiting middleware.
* Swagger / OpenAPI UI available at ``/docs``.
"""

from contextlib import asynccontextmanager
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from schoolpool.api.middleware import limiter
from schoolpool.api.routes import admin, calendar, invitations, requests, trips
from schoolpool.config import settings
from schoolpool.domain.errors import EngineError
from schoolpool.infrastructure.blob_store import SignedUrlBlobStore
from schoolpool.infrastructure.database import async_session_factory
from schoolpool.infrastructure.locks import LocalLockManager, RedisLockManager
from schoolpool.infrastructure.publisher import RedisEventPublisher
from schoolpool.infrastructure.redis_client import get_redis
from schoolpool.services.engine import PickupEngine
from schoolpool.workers import sweeper as _sweeper

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def build_engine() -> PickupEngine:
    """Engine wired from settings: Postgres, Redis events, configured locks."""
    redis = await get_redis()
    if settings.lock_backend == "redis":
        locks = RedisLockManager(
            redis, settings.lock_ttl_seconds, settings.lock_timeout_seconds
        )
    else:
        locks = LocalLockManager(settings.lock_timeout_seconds)
    return PickupEngine(
        async_session_factory,
        locks,
        RedisEventPublisher(redis, settings.events_channel_prefix),
        SignedUrlBlobStore(),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the engine and start the sweeper on startup; stop on shutdown."""
    if app.state.engine is None:
        app.state.engine = await build_engine()
    await _sweeper.start_sweep_loop(app.state.engine)
    yield
    await _sweeper.stop_sweep_loop()


async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("%s on %s: %s", exc.error_code, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": exc.error_code,
            "message": exc.message,
            "details": exc.details,
        },
    )


def create_app(engine: Optional[PickupEngine] = None) -> FastAPI:
    app = FastAPI(
        title="School Pickup Carpool API",
        description=(
            "Matches parents who need a child picked up with parents who can "
            "drive, then tracks each shared trip through departure, arrival "
            "and completion."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.engine = engine

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # Typed engine failures
    app.add_exception_handler(EngineError, engine_error_handler)

    # Routers
    app.include_router(requests.router, prefix="/api/v1")
    app.include_router(invitations.router, prefix="/api/v1")
    app.include_router(trips.router, prefix="/api/v1")
    app.include_router(calendar.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1")

    return app
