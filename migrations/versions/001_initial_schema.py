"""Initial schema: pickup requests, trips, invitations, participants,
arrivals and reviews.

Revision ID: 001
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


revision = "001"
down_revision = None
branch_labels = None
depends_on = None


REQUEST_STATUS = sa.Enum(
    "REQUESTED",
    "MATCHED",
    "CANCEL_REQUESTED",
    "IN_PROGRESS",
    "ARRIVED",
    "COMPLETED",
    "CANCELLED",
    "EXPIRED",
    name="requeststatus",
)
PROGRESS_STAGE = sa.Enum(
    "MATCHED", "STARTED", "PICKED_UP", "ARRIVED", name="progressstage"
)
CANCEL_REASON = sa.Enum("NO_SHOW", "CANCEL", "OTHER", name="cancelreasoncode")
TRIP_STATUS = sa.Enum(
    "OPEN",
    "IN_PROGRESS",
    "ARRIVED",
    "COMPLETED",
    "CANCELLED",
    "EXPIRED",
    name="tripstatus",
)
INVITATION_STATUS = sa.Enum(
    "PENDING", "ACCEPTED", "REJECTED", "EXPIRED", name="invitationstatus"
)
INVITATION_CLOSE_REASON = sa.Enum(
    "DECLINED",
    "SUPERSEDED",
    "TIMED_OUT",
    "TRIP_DEPARTED",
    "TRIP_CLOSED",
    "REQUEST_CLOSED",
    name="invitationclosereason",
)
PARTICIPANT_STATUS = sa.Enum("ACTIVE", "CANCELLED", name="participantstatus")


def _timestamp(name: str, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    # ── pickup_requests ───────────────────────────────────────────────
    op.create_table(
        "pickup_requests",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("requester_id", sa.String(64), nullable=False),
        _timestamp("pickup_time", nullable=False),
        sa.Column("origin_text", sa.String(255), nullable=False),
        sa.Column("origin_lat", sa.Float, nullable=False),
        sa.Column("origin_lng", sa.Float, nullable=False),
        sa.Column("destination_text", sa.String(255), nullable=False),
        sa.Column("destination_lat", sa.Float, nullable=False),
        sa.Column("destination_lng", sa.Float, nullable=False),
        sa.Column("status", REQUEST_STATUS, nullable=False),
        sa.Column("progress_stage", PROGRESS_STAGE, nullable=True),
        _timestamp("cancel_requested_at"),
        _timestamp("cancel_approved_at"),
        sa.Column("cancel_approved_by", sa.String(64), nullable=True),
        sa.Column("cancel_reason_code", CANCEL_REASON, nullable=True),
        sa.Column("cancel_reason_text", sa.String(500), nullable=True),
        _timestamp("started_at"),
        _timestamp("picked_up_at"),
        _timestamp("completed_at"),
        _timestamp("expired_at"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index("idx_pickup_requests_status", "pickup_requests", ["status"])
    op.create_index(
        "idx_pickup_requests_requester", "pickup_requests", ["requester_id"]
    )
    op.create_index(
        "idx_pickup_requests_pickup_time", "pickup_requests", ["pickup_time"]
    )

    # ── trips ─────────────────────────────────────────────────────────
    op.create_table(
        "trips",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("provider_id", sa.String(64), nullable=False),
        sa.Column("title", sa.String(100), nullable=True),
        sa.Column("capacity", sa.SmallInteger, nullable=False),
        sa.Column("is_locked", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("status", TRIP_STATUS, nullable=False),
        _timestamp("scheduled_start_at", nullable=False),
        _timestamp("start_at"),
        _timestamp("arrived_at"),
        _timestamp("completed_at"),
        _timestamp("cancelled_at"),
        sa.Column("cancel_reason_text", sa.String(500), nullable=True),
        _timestamp("expired_at"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
        sa.CheckConstraint("capacity > 0", name="ck_trips_capacity_positive"),
    )
    op.create_index("idx_trips_status", "trips", ["status"])
    op.create_index("idx_trips_provider", "trips", ["provider_id"])
    op.create_index("idx_trips_scheduled_start", "trips", ["scheduled_start_at"])

    # ── invitations ───────────────────────────────────────────────────
    op.create_table(
        "invitations",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("trip_id", sa.Integer, sa.ForeignKey("trips.id"), nullable=False),
        sa.Column(
            "request_id",
            sa.Integer,
            sa.ForeignKey("pickup_requests.id"),
            nullable=False,
        ),
        sa.Column("provider_id", sa.String(64), nullable=False),
        sa.Column("requester_id", sa.String(64), nullable=False),
        sa.Column("status", INVITATION_STATUS, nullable=False),
        sa.Column("close_reason", INVITATION_CLOSE_REASON, nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        _timestamp("expires_at", nullable=False),
        _timestamp("responded_at"),
    )
    op.create_index(
        "idx_invitations_trip_status", "invitations", ["trip_id", "status"]
    )
    op.create_index(
        "idx_invitations_request_status", "invitations", ["request_id", "status"]
    )
    op.create_index("idx_invitations_requester", "invitations", ["requester_id"])
    op.create_index(
        "idx_invitations_status_expires", "invitations", ["status", "expires_at"]
    )
    op.create_index(
        "uq_invitations_live_pair",
        "invitations",
        ["trip_id", "request_id"],
        unique=True,
        postgresql_where=sa.text("status = 'PENDING'"),
    )
    op.create_index(
        "uq_invitations_accepted_request",
        "invitations",
        ["request_id"],
        unique=True,
        postgresql_where=sa.text("status = 'ACCEPTED'"),
    )

    # ── trip_participants ─────────────────────────────────────────────
    op.create_table(
        "trip_participants",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("trip_id", sa.Integer, sa.ForeignKey("trips.id"), nullable=False),
        sa.Column(
            "request_id",
            sa.Integer,
            sa.ForeignKey("pickup_requests.id"),
            nullable=False,
        ),
        sa.Column("requester_id", sa.String(64), nullable=False),
        sa.Column(
            "is_met_at_pickup", sa.Boolean, nullable=False, server_default=sa.false()
        ),
        sa.Column("sequence_order", sa.Integer, nullable=True),
        sa.Column("status", PARTICIPANT_STATUS, nullable=False),
        _timestamp("cancelled_at"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.UniqueConstraint(
            "trip_id", "request_id", name="uq_trip_participants_pair"
        ),
    )
    op.create_index("idx_trip_participants_trip", "trip_participants", ["trip_id"])
    op.create_index(
        "uq_trip_participants_active_request",
        "trip_participants",
        ["request_id"],
        unique=True,
        postgresql_where=sa.text("status = 'ACTIVE'"),
    )

    # ── trip_arrivals ─────────────────────────────────────────────────
    op.create_table(
        "trip_arrivals",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("trip_id", sa.Integer, sa.ForeignKey("trips.id"), nullable=False),
        sa.Column(
            "request_id",
            sa.Integer,
            sa.ForeignKey("pickup_requests.id"),
            nullable=False,
        ),
        sa.Column("blob_ref", sa.String(512), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.UniqueConstraint("trip_id", "request_id", name="uq_trip_arrivals_pair"),
    )
    op.create_index("idx_trip_arrivals_trip", "trip_arrivals", ["trip_id"])

    # ── trip_reviews ──────────────────────────────────────────────────
    op.create_table(
        "trip_reviews",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("trip_id", sa.Integer, sa.ForeignKey("trips.id"), nullable=False),
        sa.Column(
            "request_id",
            sa.Integer,
            sa.ForeignKey("pickup_requests.id"),
            nullable=False,
        ),
        sa.Column("reviewer_id", sa.String(64), nullable=False),
        sa.Column("provider_id", sa.String(64), nullable=False),
        sa.Column("rating", sa.SmallInteger, nullable=False),
        sa.Column("comment", sa.Text, nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.UniqueConstraint("request_id", name="uq_trip_reviews_request"),
        sa.CheckConstraint("rating BETWEEN 1 AND 5", name="ck_trip_reviews_rating"),
    )
    op.create_index("idx_trip_reviews_trip", "trip_reviews", ["trip_id"])


def downgrade() -> None:
    op.drop_table("trip_reviews")
    op.drop_table("trip_arrivals")
    op.drop_table("trip_participants")
    op.drop_table("invitations")
    op.drop_table("trips")
    op.drop_table("pickup_requests")
    for enum_name in (
        "participantstatus",
        "invitationclosereason",
        "invitationstatus",
        "tripstatus",
        "cancelreasoncode",
        "progressstage",
        "requeststatus",
    ):
        op.execute(f"DROP TYPE IF EXISTS {enum_name}")
