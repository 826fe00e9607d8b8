"""
Repository Pattern -- abstracts DB access so domain logic stays DB-agnostic.

Each repository receives an ``AsyncSession`` (unit-of-work) and exposes
domain-relevant queries only. ``for_update=True`` issues
``SELECT ... FOR UPDATE`` so that, on PostgreSQL, a second process touching
the same rows waits for this transaction; SQLite ignores the clause and
relies on the in-process entity locks instead.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    InvitationMessageModel,
    InvitationModel,
    MessageReadModel,
    PickupRequestModel,
    TripArrivalModel,
    TripModel,
    TripParticipantModel,
    TripReviewModel,
)
from schoolpool.domain.enums import (
    EXPIRABLE_REQUEST_STATUSES,
    InvitationStatus,
    ParticipantStatus,
    RequestStatus,
    TripStatus,
)


class PickupRequestRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, request: PickupRequestModel) -> PickupRequestModel:
        self.session.add(request)
        await self.session.flush()
        return request

    async def get_by_id(
        self, request_id: int, for_update: bool = False
    ) -> Optional[PickupRequestModel]:
        query = select(PickupRequestModel).where(
            PickupRequestModel.id == request_id
        )
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def list_for_requester(
        self, requester_id: str, status: RequestStatus | None = None
    ) -> list[PickupRequestModel]:
        query = (
            select(PickupRequestModel)
            .where(PickupRequestModel.requester_id == requester_id)
            .order_by(PickupRequestModel.created_at.desc())
        )
        if status:
            query = query.where(PickupRequestModel.status == status)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def list_open(
        self,
        window_start: datetime | None = None,
        window_end: datetime | None = None,
    ) -> list[PickupRequestModel]:
        query = (
            select(PickupRequestModel)
            .where(PickupRequestModel.status == RequestStatus.REQUESTED)
            .order_by(PickupRequestModel.pickup_time)
        )
        if window_start is not None:
            query = query.where(PickupRequestModel.pickup_time >= window_start)
        if window_end is not None:
            query = query.where(PickupRequestModel.pickup_time < window_end)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def due_for_expiry_ids(self, now: datetime, limit: int) -> list[int]:
        result = await self.session.execute(
            select(PickupRequestModel.id)
            .where(
                PickupRequestModel.status.in_(EXPIRABLE_REQUEST_STATUSES),
                PickupRequestModel.pickup_time < now,
            )
            .order_by(PickupRequestModel.pickup_time)
            .limit(limit)
        )
        return list(result.scalars().all())


class TripRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, trip: TripModel) -> TripModel:
        self.session.add(trip)
        await self.session.flush()
        return trip

    async def get_by_id(
        self, trip_id: int, for_update: bool = False
    ) -> Optional[TripModel]:
        query = select(TripModel).where(TripModel.id == trip_id)
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def list_for_provider(
        self, provider_id: str, status: TripStatus | None = None
    ) -> list[TripModel]:
        query = (
            select(TripModel)
            .where(TripModel.provider_id == provider_id)
            .order_by(TripModel.created_at.desc())
        )
        if status:
            query = query.where(TripModel.status == status)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def list_open_between(
        self, start: datetime, end: datetime
    ) -> list[TripModel]:
        """Unlocked OPEN trips scheduled in [start, end)."""
        result = await self.session.execute(
            select(TripModel)
            .where(
                TripModel.status == TripStatus.OPEN,
                TripModel.is_locked.is_(False),
                TripModel.scheduled_start_at >= start,
                TripModel.scheduled_start_at < end,
            )
            .order_by(TripModel.scheduled_start_at)
        )
        return list(result.scalars().all())

    async def due_for_expiry_ids(self, cutoff: datetime, limit: int) -> list[int]:
        """Trips still OPEN whose scheduled start is before *cutoff*."""
        result = await self.session.execute(
            select(TripModel.id)
            .where(
                TripModel.status == TripStatus.OPEN,
                TripModel.is_locked.is_(False),
                TripModel.scheduled_start_at < cutoff,
            )
            .order_by(TripModel.scheduled_start_at)
            .limit(limit)
        )
        return list(result.scalars().all())


class InvitationRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, invitation: InvitationModel) -> InvitationModel:
        self.session.add(invitation)
        await self.session.flush()
        return invitation

    async def get_by_id(
        self, invitation_id: int, for_update: bool = False
    ) -> Optional[InvitationModel]:
        query = select(InvitationModel).where(InvitationModel.id == invitation_id)
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_live_for_pair(
        self, trip_id: int, request_id: int
    ) -> Optional[InvitationModel]:
        result = await self.session.execute(
            select(InvitationModel).where(
                InvitationModel.trip_id == trip_id,
                InvitationModel.request_id == request_id,
                InvitationModel.status == InvitationStatus.PENDING,
            )
        )
        return result.scalar_one_or_none()

    async def list_for_trip(
        self, trip_id: int, status: InvitationStatus | None = None
    ) -> list[InvitationModel]:
        query = select(InvitationModel).where(InvitationModel.trip_id == trip_id)
        if status:
            query = query.where(InvitationModel.status == status)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def list_for_requester(
        self, requester_id: str, status: InvitationStatus | None = None
    ) -> list[InvitationModel]:
        query = select(InvitationModel).where(
            InvitationModel.requester_id == requester_id
        )
        if status:
            query = query.where(InvitationModel.status == status)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def due_for_expiry_ids(self, now: datetime, limit: int) -> list[int]:
        """PENDING invitations past their expires_at."""
        result = await self.session.execute(
            select(InvitationModel.id)
            .where(
                InvitationModel.status == InvitationStatus.PENDING,
                InvitationModel.expires_at < now,
            )
            .order_by(InvitationModel.expires_at)
            .limit(limit)
        )
        return list(result.scalars().all())


class TripParticipantRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, participant: TripParticipantModel) -> TripParticipantModel:
        self.session.add(participant)
        await self.session.flush()
        return participant

    async def get_by_id(
        self, participant_id: int
    ) -> Optional[TripParticipantModel]:
        return await self.session.get(TripParticipantModel, participant_id)

    async def get_for_pair(
        self, trip_id: int, request_id: int
    ) -> Optional[TripParticipantModel]:
        result = await self.session.execute(
            select(TripParticipantModel).where(
                TripParticipantModel.trip_id == trip_id,
                TripParticipantModel.request_id == request_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_active_for_request(
        self, request_id: int
    ) -> Optional[TripParticipantModel]:
        result = await self.session.execute(
            select(TripParticipantModel).where(
                TripParticipantModel.request_id == request_id,
                TripParticipantModel.status == ParticipantStatus.ACTIVE,
            )
        )
        return result.scalar_one_or_none()

    async def list_for_trip(
        self, trip_id: int, active_only: bool = False
    ) -> list[TripParticipantModel]:
        query = (
            select(TripParticipantModel)
            .where(TripParticipantModel.trip_id == trip_id)
            .order_by(TripParticipantModel.sequence_order)
        )
        if active_only:
            query = query.where(
                TripParticipantModel.status == ParticipantStatus.ACTIVE
            )
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def count_active(self, trip_id: int) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(TripParticipantModel)
            .where(
                TripParticipantModel.trip_id == trip_id,
                TripParticipantModel.status == ParticipantStatus.ACTIVE,
            )
        )
        return result.scalar() or 0

    async def active_counts(self, trip_ids: list[int]) -> dict[int, int]:
        if not trip_ids:
            return {}
        result = await self.session.execute(
            select(TripParticipantModel.trip_id, func.count())
            .where(
                TripParticipantModel.trip_id.in_(trip_ids),
                TripParticipantModel.status == ParticipantStatus.ACTIVE,
            )
            .group_by(TripParticipantModel.trip_id)
        )
        return {trip_id: count for trip_id, count in result.all()}

    async def next_sequence(self, trip_id: int) -> int:
        result = await self.session.execute(
            select(func.max(TripParticipantModel.sequence_order)).where(
                TripParticipantModel.trip_id == trip_id
            )
        )
        return (result.scalar() or 0) + 1


class TripArrivalRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, arrival: TripArrivalModel) -> TripArrivalModel:
        self.session.add(arrival)
        await self.session.flush()
        return arrival

    async def get_for_pair(
        self, trip_id: int, request_id: int
    ) -> Optional[TripArrivalModel]:
        result = await self.session.execute(
            select(TripArrivalModel).where(
                TripArrivalModel.trip_id == trip_id,
                TripArrivalModel.request_id == request_id,
            )
        )
        return result.scalar_one_or_none()

    async def list_for_trip(self, trip_id: int) -> list[TripArrivalModel]:
        result = await self.session.execute(
            select(TripArrivalModel)
            .where(TripArrivalModel.trip_id == trip_id)
            .order_by(TripArrivalModel.created_at.desc())
        )
        return list(result.scalars().all())

    async def arrived_request_ids(self, trip_id: int) -> set[int]:
        result = await self.session.execute(
            select(TripArrivalModel.request_id).where(
                TripArrivalModel.trip_id == trip_id
            )
        )
        return set(result.scalars().all())


class TripReviewRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, review: TripReviewModel) -> TripReviewModel:
        self.session.add(review)
        await self.session.flush()
        return review

    async def get_for_request(self, request_id: int) -> Optional[TripReviewModel]:
        result = await self.session.execute(
            select(TripReviewModel).where(TripReviewModel.request_id == request_id)
        )
        return result.scalar_one_or_none()

    async def list_for_trip(self, trip_id: int) -> list[TripReviewModel]:
        result = await self.session.execute(
            select(TripReviewModel)
            .where(TripReviewModel.trip_id == trip_id)
            .order_by(TripReviewModel.created_at.desc())
        )
        return list(result.scalars().all())


class InvitationMessageRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, message: InvitationMessageModel) -> InvitationMessageModel:
        self.session.add(message)
        await self.session.flush()
        return message

    async def list_for_invitation(
        self, invitation_id: int
    ) -> list[InvitationMessageModel]:
        result = await self.session.execute(
            select(InvitationMessageModel)
            .where(InvitationMessageModel.invitation_id == invitation_id)
            .order_by(InvitationMessageModel.created_at, InvitationMessageModel.id)
        )
        return list(result.scalars().all())

    async def count_unread(
        self, invitation_id: int, reader_id: str, since: Optional[datetime]
    ) -> int:
        """Messages from the other party posted after *since*."""
        query = (
            select(func.count())
            .select_from(InvitationMessageModel)
            .where(
                InvitationMessageModel.invitation_id == invitation_id,
                InvitationMessageModel.sender_id != reader_id,
            )
        )
        if since is not None:
            query = query.where(InvitationMessageModel.created_at > since)
        result = await self.session.execute(query)
        return result.scalar() or 0


class MessageReadRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(
        self, invitation_id: int, profile_id: str
    ) -> Optional[MessageReadModel]:
        result = await self.session.execute(
            select(MessageReadModel).where(
                MessageReadModel.invitation_id == invitation_id,
                MessageReadModel.profile_id == profile_id,
            )
        )
        return result.scalar_one_or_none()

    async def create(self, marker: MessageReadModel) -> MessageReadModel:
        self.session.add(marker)
        await self.session.flush()
        return marker
