"""Invitation send / accept / reject rules and the capacity ledger in action."""

from datetime import timedelta

import pytest

from schoolpool.domain.entities import Actor
from schoolpool.domain.enums import (
    InvitationCloseReason,
    InvitationStatus,
    ParticipantStatus,
    ProgressStage,
    RequestStatus,
)
from schoolpool.domain.errors import (
    AlreadyRespondedError,
    AuthorizationError,
    CapacityExceededError,
    InvalidStateError,
    NotFoundError,
    PolicyViolationError,
)
from schoolpool.domain.events import EntityType
from schoolpool.infrastructure.models import InvitationModel, PickupRequestModel
from tests.conftest import (
    DEPART,
    OTHER_PROVIDER,
    PARENTS,
    PROVIDER,
    SCHOOL,
    T0,
    home,
    join,
    make_request,
    make_trip,
    participant_for,
    reload,
)

LATER = DEPART + timedelta(days=2)


class TestSendInvitation:
    @pytest.mark.asyncio
    async def test_pending_until_departure(self, pickup):
        trip = await make_trip(pickup)
        req = await make_request(pickup, PARENTS[0])

        inv = await pickup.invitations.send_invitation(trip.id, req.id, PROVIDER)

        assert inv.status == InvitationStatus.PENDING
        assert inv.provider_id == PROVIDER.profile_id
        assert inv.requester_id == PARENTS[0].profile_id
        # 24h TTL is capped by the 23h until departure
        assert inv.expires_at == DEPART

    @pytest.mark.asyncio
    async def test_ttl_applies_when_departure_is_further(self, pickup):
        trip = await make_trip(pickup, start=LATER)
        req = await pickup.requests.create_request(PARENTS[0], LATER, home(1), SCHOOL)

        inv = await pickup.invitations.send_invitation(trip.id, req.id, PROVIDER)
        assert inv.expires_at == T0 + timedelta(hours=24)

    @pytest.mark.asyncio
    async def test_only_owner_invites(self, pickup):
        trip = await make_trip(pickup)
        req = await make_request(pickup, PARENTS[0])
        with pytest.raises(AuthorizationError):
            await pickup.invitations.send_invitation(trip.id, req.id, OTHER_PROVIDER)

    @pytest.mark.asyncio
    async def test_owner_must_still_be_verified(self, pickup):
        trip = await make_trip(pickup)
        req = await make_request(pickup, PARENTS[0])
        revoked = Actor(PROVIDER.profile_id)
        with pytest.raises(AuthorizationError):
            await pickup.invitations.send_invitation(trip.id, req.id, revoked)

    @pytest.mark.asyncio
    async def test_cannot_invite_own_request(self, pickup):
        trip = await make_trip(pickup)
        req = await make_request(pickup, PROVIDER)
        with pytest.raises(PolicyViolationError) as exc:
            await pickup.invitations.send_invitation(trip.id, req.id, PROVIDER)
        assert exc.value.rule == "self_invitation"

    @pytest.mark.asyncio
    async def test_duplicate_live_invitation(self, pickup):
        trip = await make_trip(pickup)
        req = await make_request(pickup, PARENTS[0])
        await pickup.invitations.send_invitation(trip.id, req.id, PROVIDER)
        with pytest.raises(PolicyViolationError) as exc:
            await pickup.invitations.send_invitation(trip.id, req.id, PROVIDER)
        assert exc.value.rule == "duplicate_live_invitation"

    @pytest.mark.asyncio
    async def test_reinvite_after_rejection(self, pickup):
        trip = await make_trip(pickup)
        req = await make_request(pickup, PARENTS[0])
        first = await pickup.invitations.send_invitation(trip.id, req.id, PROVIDER)
        await pickup.invitations.reject_invitation(first.id, PARENTS[0])

        second = await pickup.invitations.send_invitation(trip.id, req.id, PROVIDER)
        assert second.id != first.id
        assert second.status == InvitationStatus.PENDING

    @pytest.mark.asyncio
    async def test_reinvite_replaces_timed_out_offer(self, pickup, clock):
        trip = await make_trip(pickup, start=LATER)
        req = await pickup.requests.create_request(PARENTS[0], LATER, home(1), SCHOOL)
        stale = await pickup.invitations.send_invitation(trip.id, req.id, PROVIDER)
        clock.advance(hours=25)

        fresh = await pickup.invitations.send_invitation(trip.id, req.id, PROVIDER)

        stale = await reload(pickup, InvitationModel, stale.id)
        assert stale.status == InvitationStatus.EXPIRED
        assert stale.close_reason == InvitationCloseReason.TIMED_OUT
        assert fresh.status == InvitationStatus.PENDING

    @pytest.mark.asyncio
    async def test_request_already_matched(self, pickup):
        trip = await make_trip(pickup)
        other = await make_trip(pickup, provider=OTHER_PROVIDER)
        req, _ = await join(pickup, trip, PARENTS[0])
        with pytest.raises(PolicyViolationError) as exc:
            await pickup.invitations.send_invitation(other.id, req.id, OTHER_PROVIDER)
        assert exc.value.rule == "request_not_open"

    @pytest.mark.asyncio
    async def test_lapsed_request_is_expired_and_refused(self, pickup, clock, publisher):
        trip = await make_trip(pickup)
        req = await make_request(pickup, PARENTS[0], minutes=-120)
        clock.set(DEPART - timedelta(hours=1))

        with pytest.raises(PolicyViolationError) as exc:
            await pickup.invitations.send_invitation(trip.id, req.id, PROVIDER)

        assert exc.value.rule == "request_not_open"
        stored = await reload(pickup, PickupRequestModel, req.id)
        assert stored.status == RequestStatus.EXPIRED
        assert publisher.of(EntityType.INVITATION) == []
        async with pickup.uow.read() as tx:
            assert await tx.invitations.list_for_trip(trip.id) == []

    @pytest.mark.asyncio
    async def test_pickup_date_must_match_trip_date(self, pickup):
        trip = await make_trip(pickup)
        req = await pickup.requests.create_request(
            PARENTS[0], DEPART + timedelta(days=1), home(1), SCHOOL
        )
        with pytest.raises(PolicyViolationError) as exc:
            await pickup.invitations.send_invitation(trip.id, req.id, PROVIDER)
        assert exc.value.rule == "date_mismatch"
        assert exc.value.details["trip_date"] == "2026-03-03"

    @pytest.mark.asyncio
    async def test_full_trip_cannot_invite(self, pickup):
        trip = await make_trip(pickup, capacity=1)
        await join(pickup, trip, PARENTS[0])
        req = await make_request(pickup, PARENTS[1], n=2)
        with pytest.raises(PolicyViolationError) as exc:
            await pickup.invitations.send_invitation(trip.id, req.id, PROVIDER)
        assert exc.value.rule == "no_spare_capacity"

    @pytest.mark.asyncio
    async def test_trip_past_departure_cannot_invite(self, pickup, clock):
        trip = await make_trip(pickup)
        req = await make_request(pickup, PARENTS[0], minutes=30)
        clock.set(DEPART)
        with pytest.raises(PolicyViolationError) as exc:
            await pickup.invitations.send_invitation(trip.id, req.id, PROVIDER)
        assert exc.value.rule == "trip_not_open"

    @pytest.mark.asyncio
    async def test_unknown_request(self, pickup):
        trip = await make_trip(pickup)
        with pytest.raises(NotFoundError):
            await pickup.invitations.send_invitation(trip.id, 404, PROVIDER)


class TestAcceptInvitation:
    @pytest.mark.asyncio
    async def test_accept_creates_participant_and_matches(self, pickup, publisher):
        trip = await make_trip(pickup)
        req = await make_request(pickup, PARENTS[0])
        inv = await pickup.invitations.send_invitation(trip.id, req.id, PROVIDER)
        publisher.clear()

        accepted = await pickup.invitations.accept_invitation(inv.id, PARENTS[0])

        assert accepted.status == InvitationStatus.ACCEPTED
        assert accepted.responded_at == T0
        req = await reload(pickup, PickupRequestModel, req.id)
        assert req.status == RequestStatus.MATCHED
        assert req.progress_stage == ProgressStage.MATCHED
        part = await participant_for(pickup, trip.id, req.id)
        assert part.status == ParticipantStatus.ACTIVE
        assert part.sequence_order == 1
        assert not part.is_met_at_pickup

        trip_events = publisher.of(EntityType.TRIP)
        assert trip_events[-1].fields["accepted_count"] == 1

    @pytest.mark.asyncio
    async def test_sibling_offers_are_superseded(self, pickup):
        trip_a = await make_trip(pickup)
        trip_b = await make_trip(pickup, provider=OTHER_PROVIDER)
        req = await make_request(pickup, PARENTS[0])
        inv_a = await pickup.invitations.send_invitation(trip_a.id, req.id, PROVIDER)
        inv_b = await pickup.invitations.send_invitation(
            trip_b.id, req.id, OTHER_PROVIDER
        )

        await pickup.invitations.accept_invitation(inv_b.id, PARENTS[0])

        inv_a = await reload(pickup, InvitationModel, inv_a.id)
        assert inv_a.status == InvitationStatus.REJECTED
        assert inv_a.close_reason == InvitationCloseReason.SUPERSEDED
        with pytest.raises(AlreadyRespondedError):
            await pickup.invitations.accept_invitation(inv_a.id, PARENTS[0])

    @pytest.mark.asyncio
    async def test_only_the_invited_requester_accepts(self, pickup):
        trip = await make_trip(pickup)
        req = await make_request(pickup, PARENTS[0])
        inv = await pickup.invitations.send_invitation(trip.id, req.id, PROVIDER)
        with pytest.raises(AuthorizationError):
            await pickup.invitations.accept_invitation(inv.id, PARENTS[1])

    @pytest.mark.asyncio
    async def test_accepting_twice(self, pickup):
        trip = await make_trip(pickup)
        _, inv = await join(pickup, trip, PARENTS[0])
        with pytest.raises(AlreadyRespondedError):
            await pickup.invitations.accept_invitation(inv.id, PARENTS[0])

    @pytest.mark.asyncio
    async def test_timed_out_offer_cannot_be_accepted(self, pickup, clock):
        trip = await make_trip(pickup, start=LATER)
        req = await pickup.requests.create_request(PARENTS[0], LATER, home(1), SCHOOL)
        inv = await pickup.invitations.send_invitation(trip.id, req.id, PROVIDER)
        clock.advance(hours=24, seconds=1)

        with pytest.raises(InvalidStateError):
            await pickup.invitations.accept_invitation(inv.id, PARENTS[0])

        inv = await reload(pickup, InvitationModel, inv.id)
        assert inv.status == InvitationStatus.EXPIRED
        assert inv.close_reason == InvitationCloseReason.TIMED_OUT
        req = await reload(pickup, PickupRequestModel, req.id)
        assert req.status == RequestStatus.REQUESTED

    @pytest.mark.asyncio
    async def test_capacity_three_fills_then_refuses(self, pickup):
        trip = await make_trip(pickup, capacity=3)
        reqs = [await make_request(pickup, PARENTS[i], n=i) for i in range(4)]
        invs = [
            await pickup.invitations.send_invitation(trip.id, r.id, PROVIDER)
            for r in reqs
        ]

        for i in range(3):
            await pickup.invitations.accept_invitation(invs[i].id, PARENTS[i])

        with pytest.raises(CapacityExceededError):
            await pickup.invitations.accept_invitation(invs[3].id, PARENTS[3])

        late = await make_request(pickup, PARENTS[4], n=5)
        with pytest.raises(PolicyViolationError) as exc:
            await pickup.invitations.send_invitation(trip.id, late.id, PROVIDER)
        assert exc.value.rule == "no_spare_capacity"

        roster = await pickup.trips.get_trip(trip.id, PROVIDER)
        assert roster.accepted_count == 3
        assert roster.spare == 0
        still_open = await reload(pickup, PickupRequestModel, reqs[3].id)
        assert still_open.status == RequestStatus.REQUESTED

    @pytest.mark.asyncio
    async def test_seat_freed_by_cancellation_is_reusable(self, pickup):
        trip = await make_trip(pickup, capacity=1)
        req, _ = await join(pickup, trip, PARENTS[0])
        await pickup.requests.request_cancellation(req.id, PARENTS[0])

        other, _ = await join(pickup, trip, PARENTS[1], n=2)
        part = await participant_for(pickup, trip.id, other.id)
        assert part.status == ParticipantStatus.ACTIVE
        assert part.sequence_order == 2


class TestRejectInvitation:
    @pytest.mark.asyncio
    async def test_reject_records_decline(self, pickup):
        trip = await make_trip(pickup)
        req = await make_request(pickup, PARENTS[0])
        inv = await pickup.invitations.send_invitation(trip.id, req.id, PROVIDER)

        rejected = await pickup.invitations.reject_invitation(inv.id, PARENTS[0])

        assert rejected.status == InvitationStatus.REJECTED
        assert rejected.close_reason == InvitationCloseReason.DECLINED
        req = await reload(pickup, PickupRequestModel, req.id)
        assert req.status == RequestStatus.REQUESTED

    @pytest.mark.asyncio
    async def test_cannot_accept_after_reject(self, pickup):
        trip = await make_trip(pickup)
        req = await make_request(pickup, PARENTS[0])
        inv = await pickup.invitations.send_invitation(trip.id, req.id, PROVIDER)
        await pickup.invitations.reject_invitation(inv.id, PARENTS[0])
        with pytest.raises(AlreadyRespondedError):
            await pickup.invitations.accept_invitation(inv.id, PARENTS[0])


class TestInvitationReads:
    @pytest.mark.asyncio
    async def test_trip_listing_sorted_pending_first(self, pickup):
        trip = await make_trip(pickup)
        await join(pickup, trip, PARENTS[0], n=1)
        declined = await make_request(pickup, PARENTS[1], n=2)
        inv = await pickup.invitations.send_invitation(trip.id, declined.id, PROVIDER)
        await pickup.invitations.reject_invitation(inv.id, PARENTS[1])
        waiting = await make_request(pickup, PARENTS[2], n=3)
        await pickup.invitations.send_invitation(trip.id, waiting.id, PROVIDER)

        rows = await pickup.invitations.list_trip_invitations(trip.id, PROVIDER)
        assert [r.status for r in rows] == [
            InvitationStatus.PENDING,
            InvitationStatus.ACCEPTED,
            InvitationStatus.REJECTED,
        ]

        pending = await pickup.invitations.list_trip_invitations(
            trip.id, PROVIDER, InvitationStatus.PENDING
        )
        assert [r.request_id for r in pending] == [waiting.id]

    @pytest.mark.asyncio
    async def test_trip_listing_is_provider_only(self, pickup):
        trip = await make_trip(pickup)
        with pytest.raises(AuthorizationError):
            await pickup.invitations.list_trip_invitations(trip.id, OTHER_PROVIDER)

    @pytest.mark.asyncio
    async def test_my_invitations_expire_lazily(self, pickup, clock):
        trip = await make_trip(pickup, start=LATER)
        req = await pickup.requests.create_request(PARENTS[0], LATER, home(1), SCHOOL)
        await pickup.invitations.send_invitation(trip.id, req.id, PROVIDER)
        clock.advance(hours=30)

        rows = await pickup.invitations.list_my_invitations(PARENTS[0])
        assert [r.status for r in rows] == [InvitationStatus.EXPIRED]
