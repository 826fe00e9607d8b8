"""Unit tests for status transition tables and progress ordering."""

import pytest

from schoolpool.domain.entities import advance_stage, check_transition
from schoolpool.domain.enums import (
    INVITATION_TRANSITIONS,
    REQUEST_TRANSITIONS,
    TERMINAL_REQUEST_STATUSES,
    TERMINAL_TRIP_STATUSES,
    TRIP_TRANSITIONS,
    InvitationStatus,
    ProgressStage,
    RequestStatus,
    TripStatus,
)
from schoolpool.domain.errors import InvalidStateError


class TestRequestStateMachine:
    # ── Valid transitions ─────────────────────────────────────────

    @pytest.mark.parametrize(
        "current,new",
        [
            (RequestStatus.REQUESTED, RequestStatus.MATCHED),
            (RequestStatus.REQUESTED, RequestStatus.CANCELLED),
            (RequestStatus.MATCHED, RequestStatus.CANCEL_REQUESTED),
            (RequestStatus.MATCHED, RequestStatus.IN_PROGRESS),
            (RequestStatus.CANCEL_REQUESTED, RequestStatus.CANCELLED),
            (RequestStatus.CANCEL_REQUESTED, RequestStatus.EXPIRED),
            (RequestStatus.IN_PROGRESS, RequestStatus.COMPLETED),
        ],
    )
    def test_allowed(self, current, new):
        check_transition("request", current, new, REQUEST_TRANSITIONS)

    # ── Invalid transitions ───────────────────────────────────────

    def test_requested_to_in_progress_fails(self):
        with pytest.raises(InvalidStateError):
            check_transition(
                "request",
                RequestStatus.REQUESTED,
                RequestStatus.IN_PROGRESS,
                REQUEST_TRANSITIONS,
            )

    def test_in_progress_cannot_expire(self):
        """A departed ride is never expired by the clock."""
        with pytest.raises(InvalidStateError):
            check_transition(
                "request",
                RequestStatus.IN_PROGRESS,
                RequestStatus.EXPIRED,
                REQUEST_TRANSITIONS,
            )

    @pytest.mark.parametrize("terminal", sorted(TERMINAL_REQUEST_STATUSES))
    def test_terminal_statuses_are_final(self, terminal):
        assert REQUEST_TRANSITIONS[terminal] == set()

    def test_error_names_both_statuses(self):
        with pytest.raises(InvalidStateError) as exc:
            check_transition(
                "request",
                RequestStatus.COMPLETED,
                RequestStatus.MATCHED,
                REQUEST_TRANSITIONS,
            )
        assert exc.value.details == {
            "entity": "request",
            "from": "COMPLETED",
            "to": "MATCHED",
        }


class TestInvitationStateMachine:
    def test_pending_fans_out(self):
        assert INVITATION_TRANSITIONS[InvitationStatus.PENDING] == {
            InvitationStatus.ACCEPTED,
            InvitationStatus.REJECTED,
            InvitationStatus.EXPIRED,
        }

    def test_rejected_cannot_be_resurrected(self):
        with pytest.raises(InvalidStateError):
            check_transition(
                "invitation",
                InvitationStatus.REJECTED,
                InvitationStatus.PENDING,
                INVITATION_TRANSITIONS,
            )


class TestTripStateMachine:
    def test_open_can_only_depart_expire_or_cancel(self):
        assert TRIP_TRANSITIONS[TripStatus.OPEN] == {
            TripStatus.IN_PROGRESS,
            TripStatus.EXPIRED,
            TripStatus.CANCELLED,
        }

    def test_in_progress_cannot_expire(self):
        with pytest.raises(InvalidStateError):
            check_transition(
                "trip", TripStatus.IN_PROGRESS, TripStatus.EXPIRED, TRIP_TRANSITIONS
            )

    @pytest.mark.parametrize("terminal", sorted(TERMINAL_TRIP_STATUSES))
    def test_terminal_statuses_are_final(self, terminal):
        assert TRIP_TRANSITIONS[terminal] == set()


class TestProgressStage:
    def test_total_order(self):
        ranks = [s.rank for s in ProgressStage]
        assert ranks == sorted(ranks)
        assert ProgressStage.MATCHED.rank < ProgressStage.ARRIVED.rank

    def test_first_stage_from_none(self):
        assert advance_stage(None, ProgressStage.MATCHED) == ProgressStage.MATCHED

    def test_skipping_forward_is_allowed(self):
        assert (
            advance_stage(ProgressStage.STARTED, ProgressStage.ARRIVED)
            == ProgressStage.ARRIVED
        )

    def test_never_regresses(self):
        with pytest.raises(InvalidStateError):
            advance_stage(ProgressStage.PICKED_UP, ProgressStage.STARTED)

    def test_same_stage_is_not_an_advance(self):
        with pytest.raises(InvalidStateError):
            advance_stage(ProgressStage.STARTED, ProgressStage.STARTED)
