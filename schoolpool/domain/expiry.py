"""
Expiry predicates.

Pure functions: each takes the entity's current status, its deadline
inputs and ``now`` and answers whether the entity must move to EXPIRED.
They are evaluated again inside the locked unit of work that performs the
write, so a sweep that read stale data cannot expire a freshly accepted
entity.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from .enums import (
    EXPIRABLE_REQUEST_STATUSES,
    InvitationStatus,
    RequestStatus,
    TripStatus,
)


def request_is_due(
    status: RequestStatus, pickup_time: datetime, now: datetime
) -> bool:
    return status in EXPIRABLE_REQUEST_STATUSES and now > pickup_time


def invitation_is_due(
    status: InvitationStatus, expires_at: datetime, now: datetime
) -> bool:
    return status == InvitationStatus.PENDING and now > expires_at


def trip_is_due(
    status: TripStatus,
    is_locked: bool,
    scheduled_start_at: datetime,
    now: datetime,
    grace: timedelta,
) -> bool:
    return (
        status == TripStatus.OPEN
        and not is_locked
        and now > scheduled_start_at + grace
    )


def invitation_deadline(
    created_at: datetime, ttl: timedelta, trip_start: datetime
) -> datetime:
    """An invitation lives for *ttl* but never past the trip's departure."""
    return min(created_at + ttl, trip_start)


# ── Service-day helpers ───────────────────────────────────────────────


def service_date(moment: datetime, tz: ZoneInfo) -> date:
    """Calendar date of *moment* in the service's local time zone."""
    return moment.astimezone(tz).date()


def service_day_window(day: date, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """[start, end) of *day* in the service zone, as aware datetimes."""
    start = datetime.combine(day, time.min, tzinfo=tz)
    return start, start + timedelta(days=1)
