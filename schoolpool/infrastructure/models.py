"""
SQLAlchemy ORM models.

Tables
------
* ``pickup_requests``    -- one child's ride need
* ``trips``              -- provider-run carpool sessions with a fixed capacity
* ``invitations``        -- offers from a trip to a request
* ``trip_participants``  -- accepted requests joined into a trip
* ``trip_arrivals``      -- insert-once arrival evidence per (trip, request)
* ``trip_reviews``       -- requester ratings after completion
* ``invitation_messages`` -- the provider/requester thread of one invitation
* ``invitation_message_reads`` -- per-reader read marker of a thread

Indexes
-------
* **B-Tree** on ``status`` and owner columns for the sweeper and list views.
* **Partial unique** indexes backing the engine's invariants at the storage
  level: one live invitation per (trip, request), one ACCEPTED invitation
  per request, one ACTIVE participation per request.
"""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
    text,
)

from .database import Base, UTCDateTime
from schoolpool.domain.entities import utcnow
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


class PickupRequestModel(Base):
    __tablename__ = "pickup_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    requester_id = Column(String(64), nullable=False)
    pickup_time = Column(UTCDateTime, nullable=False)

    origin_text = Column(String(255), nullable=False)
    origin_lat = Column(Float, nullable=False)
    origin_lng = Column(Float, nullable=False)
    destination_text = Column(String(255), nullable=False)
    destination_lat = Column(Float, nullable=False)
    destination_lng = Column(Float, nullable=False)

    status = Column(
        Enum(RequestStatus), default=RequestStatus.REQUESTED, nullable=False
    )
    progress_stage = Column(Enum(ProgressStage), nullable=True)

    cancel_requested_at = Column(UTCDateTime, nullable=True)
    cancel_approved_at = Column(UTCDateTime, nullable=True)
    cancel_approved_by = Column(String(64), nullable=True)
    cancel_reason_code = Column(Enum(CancelReasonCode), nullable=True)
    cancel_reason_text = Column(String(500), nullable=True)

    started_at = Column(UTCDateTime, nullable=True)
    picked_up_at = Column(UTCDateTime, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)
    expired_at = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_pickup_requests_status", "status"),
        Index("idx_pickup_requests_requester", "requester_id"),
        Index("idx_pickup_requests_pickup_time", "pickup_time"),
    )


class TripModel(Base):
    __tablename__ = "trips"

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider_id = Column(String(64), nullable=False)
    title = Column(String(100), nullable=True)
    capacity = Column(SmallInteger, default=3, nullable=False)
    is_locked = Column(Boolean, default=False, nullable=False)
    status = Column(Enum(TripStatus), default=TripStatus.OPEN, nullable=False)

    scheduled_start_at = Column(UTCDateTime, nullable=False)
    start_at = Column(UTCDateTime, nullable=True)
    arrived_at = Column(UTCDateTime, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)
    cancelled_at = Column(UTCDateTime, nullable=True)
    cancel_reason_text = Column(String(500), nullable=True)
    expired_at = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("capacity > 0", name="ck_trips_capacity_positive"),
        Index("idx_trips_status", "status"),
        Index("idx_trips_provider", "provider_id"),
        Index("idx_trips_scheduled_start", "scheduled_start_at"),
    )


class InvitationModel(Base):
    __tablename__ = "invitations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    trip_id = Column(Integer, ForeignKey("trips.id"), nullable=False)
    request_id = Column(Integer, ForeignKey("pickup_requests.id"), nullable=False)
    provider_id = Column(String(64), nullable=False)
    requester_id = Column(String(64), nullable=False)

    status = Column(
        Enum(InvitationStatus), default=InvitationStatus.PENDING, nullable=False
    )
    close_reason = Column(Enum(InvitationCloseReason), nullable=True)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    expires_at = Column(UTCDateTime, nullable=False)
    responded_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("idx_invitations_trip_status", "trip_id", "status"),
        Index("idx_invitations_request_status", "request_id", "status"),
        Index("idx_invitations_requester", "requester_id"),
        Index("idx_invitations_status_expires", "status", "expires_at"),
        Index(
            "uq_invitations_live_pair",
            "trip_id",
            "request_id",
            unique=True,
            postgresql_where=text("status = 'PENDING'"),
            sqlite_where=text("status = 'PENDING'"),
        ),
        Index(
            "uq_invitations_accepted_request",
            "request_id",
            unique=True,
            postgresql_where=text("status = 'ACCEPTED'"),
            sqlite_where=text("status = 'ACCEPTED'"),
        ),
    )


class TripParticipantModel(Base):
    __tablename__ = "trip_participants"

    id = Column(Integer, primary_key=True, autoincrement=True)
    trip_id = Column(Integer, ForeignKey("trips.id"), nullable=False)
    request_id = Column(Integer, ForeignKey("pickup_requests.id"), nullable=False)
    requester_id = Column(String(64), nullable=False)
    is_met_at_pickup = Column(Boolean, default=False, nullable=False)
    sequence_order = Column(Integer, nullable=True)
    status = Column(
        Enum(ParticipantStatus), default=ParticipantStatus.ACTIVE, nullable=False
    )
    cancelled_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("trip_id", "request_id", name="uq_trip_participants_pair"),
        Index("idx_trip_participants_trip", "trip_id"),
        Index(
            "uq_trip_participants_active_request",
            "request_id",
            unique=True,
            postgresql_where=text("status = 'ACTIVE'"),
            sqlite_where=text("status = 'ACTIVE'"),
        ),
    )


class TripArrivalModel(Base):
    __tablename__ = "trip_arrivals"

    id = Column(Integer, primary_key=True, autoincrement=True)
    trip_id = Column(Integer, ForeignKey("trips.id"), nullable=False)
    request_id = Column(Integer, ForeignKey("pickup_requests.id"), nullable=False)
    blob_ref = Column(String(512), nullable=False)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("trip_id", "request_id", name="uq_trip_arrivals_pair"),
        Index("idx_trip_arrivals_trip", "trip_id"),
    )


class TripReviewModel(Base):
    __tablename__ = "trip_reviews"

    id = Column(Integer, primary_key=True, autoincrement=True)
    trip_id = Column(Integer, ForeignKey("trips.id"), nullable=False)
    request_id = Column(Integer, ForeignKey("pickup_requests.id"), nullable=False)
    reviewer_id = Column(String(64), nullable=False)
    provider_id = Column(String(64), nullable=False)
    rating = Column(SmallInteger, nullable=False)
    comment = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("request_id", name="uq_trip_reviews_request"),
        CheckConstraint("rating BETWEEN 1 AND 5", name="ck_trip_reviews_rating"),
        Index("idx_trip_reviews_trip", "trip_id"),
    )


class InvitationMessageModel(Base):
    __tablename__ = "invitation_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    invitation_id = Column(Integer, ForeignKey("invitations.id"), nullable=False)
    trip_id = Column(Integer, ForeignKey("trips.id"), nullable=False)
    request_id = Column(Integer, ForeignKey("pickup_requests.id"), nullable=False)
    sender_id = Column(String(64), nullable=False)
    sender_role = Column(Enum(SenderRole), nullable=False)
    body = Column(Text, nullable=False)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_invitation_messages_thread", "invitation_id", "created_at"),
    )


class MessageReadModel(Base):
    __tablename__ = "invitation_message_reads"

    id = Column(Integer, primary_key=True, autoincrement=True)
    invitation_id = Column(Integer, ForeignKey("invitations.id"), nullable=False)
    profile_id = Column(String(64), nullable=False)
    last_read_at = Column(UTCDateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "invitation_id", "profile_id", name="uq_invitation_message_reads_reader"
        ),
    )
