"""Pydantic request / response schemas for the REST API."""

from datetime import date, datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from schoolpool.domain.enums import (
    CancelReasonCode,
    InvitationCloseReason,
    InvitationStatus,
    ParticipantStatus,
    ProgressStage,
    RequestStatus,
    SenderRole,
    TripStatus,
)


# ── Requests ──────────────────────────────────────────────────────────


class PlaceIn(BaseModel):
    text: str = Field(..., min_length=1, max_length=255)
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class PickupRequestCreate(BaseModel):
    pickup_time: datetime = Field(
        ..., description="Pickup instant; must carry a UTC offset."
    )
    origin: PlaceIn
    destination: PlaceIn


class CancellationBody(BaseModel):
    reason_code: CancelReasonCode = CancelReasonCode.CANCEL
    reason_text: Optional[str] = Field(None, max_length=500)


class TripCreate(BaseModel):
    scheduled_start_at: datetime
    capacity: Optional[int] = Field(None, ge=1)
    title: Optional[str] = Field(None, max_length=100)


class InvitationCreate(BaseModel):
    request_id: int


class MessageCreate(BaseModel):
    body: str = Field(..., min_length=1, max_length=1000)


class MarkMetBody(BaseModel):
    met: bool = True


class RosterCancellationIn(BaseModel):
    participant_id: int
    reason_code: CancelReasonCode
    reason_text: str = Field(..., min_length=1, max_length=500)


class StartTripBody(BaseModel):
    cancellations: list[RosterCancellationIn] = []


class TripCancelBody(BaseModel):
    reason_text: Optional[str] = Field(None, max_length=500)


class ArrivalCreate(BaseModel):
    request_id: int
    blob_ref: str = Field(..., min_length=1, max_length=512)


class ReviewCreate(BaseModel):
    rating: int
    comment: Optional[str] = None


# ── Responses ─────────────────────────────────────────────────────────


class PickupRequestResponse(BaseModel):
    id: int
    requester_id: str
    pickup_time: datetime
    origin_text: str
    origin_lat: float
    origin_lng: float
    destination_text: str
    destination_lat: float
    destination_lng: float
    status: RequestStatus
    progress_stage: Optional[ProgressStage] = None
    cancel_requested_at: Optional[datetime] = None
    cancel_approved_at: Optional[datetime] = None
    cancel_approved_by: Optional[str] = None
    cancel_reason_code: Optional[CancelReasonCode] = None
    cancel_reason_text: Optional[str] = None
    started_at: Optional[datetime] = None
    picked_up_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class OpenRequestResponse(BaseModel):
    """What a provider sees before inviting: no exact coordinates."""

    id: int
    pickup_time: datetime
    origin_text: str
    destination_text: str
    distance_km: Optional[float] = None


class InvitationResponse(BaseModel):
    id: int
    trip_id: int
    request_id: int
    provider_id: str
    requester_id: str
    status: InvitationStatus
    close_reason: Optional[InvitationCloseReason] = None
    created_at: datetime
    expires_at: datetime
    responded_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class TripResponse(BaseModel):
    id: int
    provider_id: str
    title: Optional[str] = None
    capacity: int
    is_locked: bool
    status: TripStatus
    scheduled_start_at: datetime
    start_at: Optional[datetime] = None
    arrived_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class ParticipantResponse(BaseModel):
    id: int
    trip_id: int
    request_id: int
    requester_id: str
    is_met_at_pickup: bool
    sequence_order: Optional[int] = None
    status: ParticipantStatus
    cancelled_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class TripDetailResponse(BaseModel):
    trip: TripResponse
    participants: list[ParticipantResponse] = []
    accepted_count: int
    spare: int


class RosterEntryResponse(BaseModel):
    participant: ParticipantResponse
    request: PickupRequestResponse
    has_arrived: bool


class ArrivalResponse(BaseModel):
    id: int
    trip_id: int
    request_id: int
    created_at: datetime
    url: Optional[str] = None


class ReviewResponse(BaseModel):
    id: int
    trip_id: int
    request_id: int
    reviewer_id: str
    provider_id: str
    rating: int
    comment: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class ReviewSummaryResponse(BaseModel):
    trip_id: int
    count: int
    average_rating: Optional[float] = None
    reviews: list[ReviewResponse] = []


class MessageResponse(BaseModel):
    id: int
    invitation_id: int
    sender_id: str
    sender_role: SenderRole
    body: str
    created_at: datetime

    model_config = {"from_attributes": True}


class ThreadReadResponse(BaseModel):
    invitation_id: int
    profile_id: str
    last_read_at: datetime

    model_config = {"from_attributes": True}


class DayCountResponse(BaseModel):
    day: date
    count: int
    statuses: list[str] = []

    model_config = {"from_attributes": True}


class SweepResponse(BaseModel):
    invitations: int
    trips: int
    requests: int
    failures: int


class HealthResponse(BaseModel):
    status: str = "ok"


class ErrorResponse(BaseModel):
    error_code: str
    message: str
    details: dict[str, Any] = {}
