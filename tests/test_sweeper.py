"""Background expiry sweeper."""

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from schoolpool.domain.enums import (
    InvitationCloseReason,
    InvitationStatus,
    RequestStatus,
    TripStatus,
)
from schoolpool.infrastructure.models import (
    InvitationModel,
    PickupRequestModel,
    TripModel,
)
from schoolpool.workers import sweeper
from schoolpool.workers.sweeper import SweepResult, run_sweep_cycle, sweep_once
from tests.conftest import (
    DEPART,
    PARENTS,
    PROVIDER,
    SCHOOL,
    home,
    join,
    make_request,
    make_trip,
    participant_for,
    reload,
)


class TestSweepOnce:
    @pytest.mark.asyncio
    async def test_nothing_due(self, pickup):
        await make_request(pickup, PARENTS[0])
        result = await sweep_once(pickup)
        assert result == SweepResult()
        assert result.total == 0

    @pytest.mark.asyncio
    async def test_request_expires_one_second_after_pickup(self, pickup, publisher):
        req = await make_request(pickup, PARENTS[0])
        now = DEPART + timedelta(seconds=1)

        first = await sweep_once(pickup, now)
        assert first.requests == 1
        stored = await reload(pickup, PickupRequestModel, req.id)
        assert stored.status == RequestStatus.EXPIRED
        assert stored.expired_at == now

        emitted = len(publisher.events)
        second = await sweep_once(pickup, now)
        assert second.total == 0
        assert len(publisher.events) == emitted

    @pytest.mark.asyncio
    async def test_expires_every_kind(self, pickup):
        empty_trip = await make_trip(pickup)
        busy_trip = await make_trip(pickup)
        matched, _ = await join(pickup, busy_trip, PARENTS[0])
        waiting = await make_request(pickup, PARENTS[1], n=2)
        inv = await pickup.invitations.send_invitation(
            busy_trip.id, waiting.id, PROVIDER
        )

        result = await sweep_once(pickup, DEPART + timedelta(minutes=31))

        assert result.invitations == 1
        assert result.trips == 2
        # the matched rider is released and expired by its trip's expiry
        assert result.requests == 1
        assert result.failures == 0

        inv = await reload(pickup, InvitationModel, inv.id)
        assert inv.close_reason == InvitationCloseReason.TIMED_OUT
        for trip_id in (empty_trip.id, busy_trip.id):
            trip = await reload(pickup, TripModel, trip_id)
            assert trip.status == TripStatus.EXPIRED
        for req_id in (matched.id, waiting.id):
            req = await reload(pickup, PickupRequestModel, req_id)
            assert req.status == RequestStatus.EXPIRED
        part = await participant_for(pickup, busy_trip.id, matched.id)
        assert part.cancelled_at is not None

    @pytest.mark.asyncio
    async def test_departed_trip_and_riders_are_left_alone(self, pickup):
        trip = await make_trip(pickup)
        req, _ = await join(pickup, trip, PARENTS[0])
        part = await participant_for(pickup, trip.id, req.id)
        await pickup.trips.mark_participant_met(trip.id, part.id, PROVIDER)
        await pickup.trips.start_trip(trip.id, PROVIDER)

        result = await sweep_once(pickup, DEPART + timedelta(hours=3))

        assert result.total == 0
        stored = await reload(pickup, PickupRequestModel, req.id)
        assert stored.status == RequestStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_stale_candidate_is_not_counted(self, pickup, clock):
        req = await make_request(pickup, PARENTS[0])
        clock.set(DEPART + timedelta(minutes=1))
        real = pickup.requests.expire_if_due

        async def expired_meanwhile(request_id, now=None):
            await real(request_id, now)
            return await real(request_id, now)

        with patch.object(
            pickup.requests, "expire_if_due", side_effect=expired_meanwhile
        ):
            result = await sweep_once(pickup)

        assert result.requests == 0
        stored = await reload(pickup, PickupRequestModel, req.id)
        assert stored.status == RequestStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_cycle(self, pickup):
        bad = await make_request(pickup, PARENTS[0], n=1)
        good = await pickup.requests.create_request(
            PARENTS[1], DEPART + timedelta(minutes=1), home(2), SCHOOL
        )
        real = pickup.requests.expire_if_due

        async def flaky(request_id, now=None):
            if request_id == bad.id:
                raise RuntimeError("connection reset")
            return await real(request_id, now)

        with patch.object(pickup.requests, "expire_if_due", side_effect=flaky):
            result = await sweep_once(pickup, DEPART + timedelta(minutes=5))

        assert result.failures == 1
        assert result.requests == 1
        stored = await reload(pickup, PickupRequestModel, good.id)
        assert stored.status == RequestStatus.EXPIRED


class TestSweepCycle:
    @pytest.mark.asyncio
    async def test_local_backend_sweeps_without_redis(self, pickup, clock):
        await make_request(pickup, PARENTS[0])
        clock.set(DEPART + timedelta(minutes=1))

        with patch.object(sweeper, "get_redis", AsyncMock()) as get_redis:
            result = await run_sweep_cycle(pickup)

        get_redis.assert_not_called()
        assert result.requests == 1

    @pytest.mark.asyncio
    async def test_redis_backend_skips_when_lock_is_held(self, pickup):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=False)

        with patch.object(sweeper.settings, "lock_backend", "redis"), patch.object(
            sweeper, "get_redis", AsyncMock(return_value=mock_redis)
        ):
            assert await run_sweep_cycle(pickup) is None

    @pytest.mark.asyncio
    async def test_redis_backend_releases_lock(self, pickup):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=True)
        mock_redis.eval = AsyncMock(return_value=1)

        with patch.object(sweeper.settings, "lock_backend", "redis"), patch.object(
            sweeper, "get_redis", AsyncMock(return_value=mock_redis)
        ):
            result = await run_sweep_cycle(pickup)

        assert result == SweepResult()
        mock_redis.eval.assert_called_once()
