"""
Background Expiry Sweeper
=========================

Runs every ``SWEEP_INTERVAL_SECONDS`` (default 60 s).

Concurrency safety
------------------
* **Redis distributed lock** ensures only one instance sweeps at a time
  across multiple API processes (skipped with the ``local`` lock backend).
* Each candidate is expired through the same ``expire_if_due`` operation
  user reads go through, so the predicate is re-checked under the entity
  locks and an entity accepted a moment ago is left alone.

Order per cycle
---------------
1. PENDING invitations past ``expires_at``.
2. OPEN trips past ``scheduled_start_at + grace``, releasing their riders.
3. REQUESTED / MATCHED / CANCEL_REQUESTED requests past ``pickup_time``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from schoolpool.config import settings
from schoolpool.infrastructure.locks import DistributedLock
from schoolpool.infrastructure.redis_client import get_redis
from schoolpool.services.engine import PickupEngine

logger = logging.getLogger(__name__)

_task: asyncio.Task | None = None
_stop_event: asyncio.Event | None = None


@dataclass
class SweepResult:
    invitations: int = 0
    trips: int = 0
    requests: int = 0
    failures: int = 0

    @property
    def total(self) -> int:
        return self.invitations + self.trips + self.requests


# ── Public API ────────────────────────────────────────────────────────


async def start_sweep_loop(engine: PickupEngine) -> None:
    global _task, _stop_event
    _stop_event = asyncio.Event()
    _task = asyncio.create_task(_loop(engine))
    logger.info("Expiry sweeper started (interval=%ds)", settings.sweep_interval_seconds)


async def stop_sweep_loop() -> None:
    if _stop_event:
        _stop_event.set()
    if _task:
        _task.cancel()
        try:
            await _task
        except asyncio.CancelledError:
            pass
    logger.info("Expiry sweeper stopped")


# ── Internals ─────────────────────────────────────────────────────────


async def _loop(engine: PickupEngine) -> None:
    """Periodic loop: run a sweep cycle then sleep."""
    assert _stop_event is not None
    while not _stop_event.is_set():
        try:
            await run_sweep_cycle(engine)
        except Exception:
            logger.exception("Unhandled error in sweep cycle")
        try:
            await asyncio.wait_for(
                _stop_event.wait(), timeout=settings.sweep_interval_seconds
            )
            break
        except asyncio.TimeoutError:
            pass  # next cycle


async def run_sweep_cycle(engine: PickupEngine) -> Optional[SweepResult]:
    """One cycle, guarded by the cluster-wide sweeper lock when on Redis."""
    if settings.lock_backend != "redis":
        return await sweep_once(engine)

    redis = await get_redis()
    lock = DistributedLock(redis, "expiry_sweeper", ttl_seconds=60)
    if not await lock.acquire():
        logger.debug("Lock held by another worker - skipping cycle")
        return None
    try:
        return await sweep_once(engine)
    finally:
        await lock.release()


async def sweep_once(
    engine: PickupEngine, now: Optional[datetime] = None
) -> SweepResult:
    """Expire everything due at *now*. Per-entity failures are logged and skipped."""
    now = now or engine.now()
    limit = settings.sweep_batch_size
    grace = timedelta(minutes=settings.trip_grace_period_minutes)
    result = SweepResult()

    async with engine.uow.read() as tx:
        invitation_ids = await tx.invitations.due_for_expiry_ids(now, limit)
        trip_ids = await tx.trips.due_for_expiry_ids(now - grace, limit)
        request_ids = await tx.requests.due_for_expiry_ids(now, limit)

    for invitation_id in invitation_ids:
        try:
            outcome = await engine.invitations.expire_if_due(invitation_id, now)
            if outcome.expired:
                result.invitations += 1
        except Exception:
            result.failures += 1
            logger.exception("Failed to expire invitation %d", invitation_id)

    for trip_id in trip_ids:
        try:
            outcome = await engine.trips.expire_if_due(trip_id, now)
            if outcome.expired:
                result.trips += 1
        except Exception:
            result.failures += 1
            logger.exception("Failed to expire trip %d", trip_id)

    for request_id in request_ids:
        try:
            outcome = await engine.requests.expire_if_due(request_id, now)
            if outcome.expired:
                result.requests += 1
        except Exception:
            result.failures += 1
            logger.exception("Failed to expire request %d", request_id)

    if result.total or result.failures:
        logger.info(
            "Sweep cycle: %d invitations, %d trips, %d requests expired (%d failed)",
            result.invitations,
            result.trips,
            result.requests,
            result.failures,
        )
    return result
