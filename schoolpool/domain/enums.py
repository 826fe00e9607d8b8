"""Domain enumerations and state-transition rules."""

import enum


class RequestStatus(str, enum.Enum):
    REQUESTED = "REQUESTED"
    MATCHED = "MATCHED"
    CANCEL_REQUESTED = "CANCEL_REQUESTED"
    IN_PROGRESS = "IN_PROGRESS"
    ARRIVED = "ARRIVED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class ProgressStage(str, enum.Enum):
    MATCHED = "MATCHED"
    STARTED = "STARTED"
    PICKED_UP = "PICKED_UP"
    ARRIVED = "ARRIVED"

    @property
    def rank(self) -> int:
        return _STAGE_ORDER.index(self)


_STAGE_ORDER = [
    ProgressStage.MATCHED,
    ProgressStage.STARTED,
    ProgressStage.PICKED_UP,
    ProgressStage.ARRIVED,
]


class InvitationStatus(str, enum.Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


class InvitationCloseReason(str, enum.Enum):
    """Why a PENDING invitation left the PENDING state without acceptance."""

    DECLINED = "DECLINED"
    SUPERSEDED = "SUPERSEDED"
    TIMED_OUT = "TIMED_OUT"
    TRIP_DEPARTED = "TRIP_DEPARTED"
    TRIP_CLOSED = "TRIP_CLOSED"
    REQUEST_CLOSED = "REQUEST_CLOSED"


class TripStatus(str, enum.Enum):
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    ARRIVED = "ARRIVED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class ParticipantStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"


class CancelReasonCode(str, enum.Enum):
    NO_SHOW = "NO_SHOW"
    CANCEL = "CANCEL"
    OTHER = "OTHER"


class SenderRole(str, enum.Enum):
    PROVIDER = "PROVIDER"
    REQUESTER = "REQUESTER"


# State machines: maps current status -> set of valid next statuses
REQUEST_TRANSITIONS: dict[RequestStatus, set[RequestStatus]] = {
    RequestStatus.REQUESTED: {
        RequestStatus.MATCHED,
        RequestStatus.CANCELLED,
        RequestStatus.EXPIRED,
    },
    RequestStatus.MATCHED: {
        RequestStatus.IN_PROGRESS,
        RequestStatus.CANCEL_REQUESTED,
        RequestStatus.CANCELLED,
        RequestStatus.EXPIRED,
    },
    # A met participant whose cancellation was never approved still departs.
    RequestStatus.CANCEL_REQUESTED: {
        RequestStatus.IN_PROGRESS,
        RequestStatus.CANCELLED,
        RequestStatus.EXPIRED,
    },
    RequestStatus.IN_PROGRESS: {
        RequestStatus.ARRIVED,
        RequestStatus.COMPLETED,
        RequestStatus.CANCELLED,
    },
    RequestStatus.ARRIVED: {RequestStatus.COMPLETED},
    RequestStatus.COMPLETED: set(),
    RequestStatus.CANCELLED: set(),
    RequestStatus.EXPIRED: set(),
}

INVITATION_TRANSITIONS: dict[InvitationStatus, set[InvitationStatus]] = {
    InvitationStatus.PENDING: {
        InvitationStatus.ACCEPTED,
        InvitationStatus.REJECTED,
        InvitationStatus.EXPIRED,
    },
    InvitationStatus.ACCEPTED: set(),
    InvitationStatus.REJECTED: set(),
    InvitationStatus.EXPIRED: set(),
}

TRIP_TRANSITIONS: dict[TripStatus, set[TripStatus]] = {
    TripStatus.OPEN: {
        TripStatus.IN_PROGRESS,
        TripStatus.EXPIRED,
        TripStatus.CANCELLED,
    },
    TripStatus.IN_PROGRESS: {
        TripStatus.ARRIVED,
        TripStatus.COMPLETED,
        TripStatus.CANCELLED,
    },
    TripStatus.ARRIVED: {TripStatus.COMPLETED, TripStatus.CANCELLED},
    TripStatus.COMPLETED: set(),
    TripStatus.CANCELLED: set(),
    TripStatus.EXPIRED: set(),
}

EXPIRABLE_REQUEST_STATUSES = {
    RequestStatus.REQUESTED,
    RequestStatus.MATCHED,
    RequestStatus.CANCEL_REQUESTED,
}

TERMINAL_REQUEST_STATUSES = {
    RequestStatus.COMPLETED,
    RequestStatus.CANCELLED,
    RequestStatus.EXPIRED,
}

TERMINAL_TRIP_STATUSES = {
    TripStatus.COMPLETED,
    TripStatus.CANCELLED,
    TripStatus.EXPIRED,
}

# Listing order used by invitation views
INVITATION_SORT_ORDER = {
    InvitationStatus.PENDING: 1,
    InvitationStatus.ACCEPTED: 2,
    InvitationStatus.REJECTED: 3,
    InvitationStatus.EXPIRED: 4,
}
