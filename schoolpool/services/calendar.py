"""
Per-day calendar counts
=======================

Read-only aggregates behind the month views: how many trips a parent could
still join, how many requests a provider could still invite, and how many
of the caller's own requests or trips fall on each service day.

Days are calendar dates in ``settings.service_timezone``; a month is the
half-open window from the first local midnight of the month to the first
local midnight of the next.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Iterable
from zoneinfo import ZoneInfo

from schoolpool.config import settings
from schoolpool.domain.entities import Actor
from schoolpool.domain.errors import AuthorizationError, ValidationError
from schoolpool.domain.expiry import service_date, service_day_window

from .base import Service, UnitOfWork
from .requests import RequestService
from .trips import TripService

MONTH_PATTERN = re.compile(r"^(\d{4})-(\d{2})$")


@dataclass
class DayCount:
    day: date
    count: int = 0
    statuses: list[str] = field(default_factory=list)


def parse_month(month: str) -> tuple[int, int]:
    match = MONTH_PATTERN.match(month or "")
    if match is None or not 1 <= int(match.group(2)) <= 12:
        raise ValidationError("month must look like YYYY-MM", {"field": "month"})
    return int(match.group(1)), int(match.group(2))


def month_window(month: str, tz: ZoneInfo) -> tuple[datetime, datetime]:
    year, number = parse_month(month)
    first = date(year, number, 1)
    following = date(year + 1, 1, 1) if number == 12 else date(year, number + 1, 1)
    return service_day_window(first, tz)[0], service_day_window(following, tz)[0]


def _tally(
    items: Iterable[tuple[datetime, str | None]], tz: ZoneInfo
) -> list[DayCount]:
    days: dict[date, DayCount] = {}
    for moment, status in items:
        day = service_date(moment, tz)
        entry = days.setdefault(day, DayCount(day))
        entry.count += 1
        if status is not None and status not in entry.statuses:
            entry.statuses.append(status)
    for entry in days.values():
        entry.statuses.sort()
    return [days[d] for d in sorted(days)]


class CalendarService(Service):
    def __init__(
        self, uow: UnitOfWork, requests: RequestService, trips: TripService
    ):
        super().__init__(uow)
        self.requests = requests
        self.trips = trips

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(settings.service_timezone)

    async def open_trip_counts(self, actor: Actor, month: str) -> list[DayCount]:
        """Joinable trips per day: OPEN, unlocked, not yet started, with a free seat."""
        start, end = month_window(month, self.tz)
        now = self.now()
        async with self.uow.read() as tx:
            trips = await tx.trips.list_open_between(max(start, now), end)
            seated = await tx.participants.active_counts([t.id for t in trips])
        return _tally(
            (
                (t.scheduled_start_at, None)
                for t in trips
                if t.provider_id != actor.profile_id
                and seated.get(t.id, 0) < t.capacity
            ),
            self.tz,
        )

    async def open_request_counts(self, actor: Actor, month: str) -> list[DayCount]:
        """Requests per day a verified provider could still invite."""
        if not actor.is_verified_provider:
            raise AuthorizationError("Only verified providers can browse requests")
        start, end = month_window(month, self.tz)
        rows = await self.requests.list_open_requests(actor)
        return _tally(
            (
                (item.request.pickup_time, None)
                for item in rows
                if start <= item.request.pickup_time < end
            ),
            self.tz,
        )

    async def my_request_counts(self, actor: Actor, month: str) -> list[DayCount]:
        start, end = month_window(month, self.tz)
        rows = await self.requests.list_my_requests(actor)
        return _tally(
            (
                (r.pickup_time, r.status.value)
                for r in rows
                if start <= r.pickup_time < end
            ),
            self.tz,
        )

    async def my_trip_counts(self, provider: Actor, month: str) -> list[DayCount]:
        start, end = month_window(month, self.tz)
        rows = await self.trips.list_my_trips(provider)
        return _tally(
            (
                (t.scheduled_start_at, t.status.value)
                for t in rows
                if start <= t.scheduled_start_at < end
            ),
            self.tz,
        )
