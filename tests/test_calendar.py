"""Per-day calendar counts in the service time zone (Asia/Seoul)."""

from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from schoolpool.domain.errors import AuthorizationError, ValidationError
from schoolpool.services.calendar import DayCount, month_window
from tests.conftest import (
    DEPART,
    OTHER_PROVIDER,
    PARENTS,
    PROVIDER,
    UNVERIFIED,
    join,
    make_request,
    make_trip,
)

SEOUL = ZoneInfo("Asia/Seoul")
MARCH_3 = date(2026, 3, 3)
MARCH_4 = date(2026, 3, 4)
# 08:30 on 1 April in Seoul, still 31 March in UTC
APRIL_1_MORNING = datetime(2026, 3, 31, 23, 30, tzinfo=timezone.utc)


class TestMonthWindow:
    def test_local_midnights(self):
        start, end = month_window("2026-03", SEOUL)

        assert start == datetime(2026, 2, 28, 15, 0, tzinfo=timezone.utc)
        assert end == datetime(2026, 3, 31, 15, 0, tzinfo=timezone.utc)

    def test_december_rolls_over(self):
        _, end = month_window("2026-12", SEOUL)

        assert end == datetime(2026, 12, 31, 15, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize("month", ["2026-13", "2026-00", "March", "2026-3", ""])
    def test_malformed(self, month):
        with pytest.raises(ValidationError):
            month_window(month, SEOUL)


class TestOpenTrips:
    @pytest.mark.asyncio
    async def test_counts_trips_with_a_free_seat(self, pickup):
        await make_trip(pickup)
        full = await make_trip(pickup, capacity=1)
        await join(pickup, full, PARENTS[0])
        await make_trip(pickup, provider=OTHER_PROVIDER, start=DEPART + timedelta(days=1))

        counts = await pickup.calendar.open_trip_counts(PARENTS[1], "2026-03")

        assert counts == [DayCount(MARCH_3, 1), DayCount(MARCH_4, 1)]

    @pytest.mark.asyncio
    async def test_own_trips_are_not_counted(self, pickup):
        await make_trip(pickup)

        assert await pickup.calendar.open_trip_counts(PROVIDER, "2026-03") == []

    @pytest.mark.asyncio
    async def test_day_follows_service_zone(self, pickup):
        await make_trip(pickup, start=APRIL_1_MORNING)

        march = await pickup.calendar.open_trip_counts(PARENTS[0], "2026-03")
        april = await pickup.calendar.open_trip_counts(PARENTS[0], "2026-04")

        assert march == []
        assert april == [DayCount(date(2026, 4, 1), 1)]

    @pytest.mark.asyncio
    async def test_started_trips_drop_out(self, pickup, clock):
        await make_trip(pickup)
        clock.set(DEPART + timedelta(minutes=1))

        assert await pickup.calendar.open_trip_counts(PARENTS[0], "2026-03") == []


class TestOpenRequests:
    @pytest.mark.asyncio
    async def test_counts_unmatched_requests(self, pickup):
        trip = await make_trip(pickup)
        await join(pickup, trip, PARENTS[0], n=1)
        await make_request(pickup, PARENTS[1], n=2)
        await make_request(pickup, PARENTS[2], n=3)
        await make_request(pickup, PARENTS[3], n=4, minutes=24 * 60)

        counts = await pickup.calendar.open_request_counts(OTHER_PROVIDER, "2026-03")

        assert counts == [DayCount(MARCH_3, 2), DayCount(MARCH_4, 1)]

    @pytest.mark.asyncio
    async def test_providers_only(self, pickup):
        with pytest.raises(AuthorizationError):
            await pickup.calendar.open_request_counts(UNVERIFIED, "2026-03")


class TestMine:
    @pytest.mark.asyncio
    async def test_my_requests_carry_statuses(self, pickup):
        trip = await make_trip(pickup)
        await join(pickup, trip, PARENTS[0], n=1)
        await make_request(pickup, PARENTS[0], n=1, minutes=30)
        await make_request(pickup, PARENTS[0], n=1, minutes=24 * 60)
        await make_request(pickup, PARENTS[1], n=2)

        counts = await pickup.calendar.my_request_counts(PARENTS[0], "2026-03")

        assert counts == [
            DayCount(MARCH_3, 2, ["MATCHED", "REQUESTED"]),
            DayCount(MARCH_4, 1, ["REQUESTED"]),
        ]

    @pytest.mark.asyncio
    async def test_my_trips_carry_statuses(self, pickup, clock):
        await make_trip(pickup)
        await make_trip(pickup, start=DEPART + timedelta(hours=2))
        await make_trip(pickup, provider=OTHER_PROVIDER)
        clock.set(DEPART + timedelta(minutes=31))

        counts = await pickup.calendar.my_trip_counts(PROVIDER, "2026-03")

        assert counts == [DayCount(MARCH_3, 2, ["EXPIRED", "OPEN"])]

    @pytest.mark.asyncio
    async def test_other_month_is_empty(self, pickup):
        await make_trip(pickup)

        assert await pickup.calendar.my_trip_counts(PROVIDER, "2026-04") == []
