"""Invitation message threads and per-reader read markers.

Revision ID: 002
Revises: 001
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


revision = "002"
down_revision = "001"
branch_labels = None
depends_on = None


SENDER_ROLE = sa.Enum("PROVIDER", "REQUESTER", name="senderrole")


def upgrade() -> None:
    op.create_table(
        "invitation_messages",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "invitation_id",
            sa.Integer,
            sa.ForeignKey("invitations.id"),
            nullable=False,
        ),
        sa.Column("trip_id", sa.Integer, sa.ForeignKey("trips.id"), nullable=False),
        sa.Column(
            "request_id",
            sa.Integer,
            sa.ForeignKey("pickup_requests.id"),
            nullable=False,
        ),
        sa.Column("sender_id", sa.String(64), nullable=False),
        sa.Column("sender_role", SENDER_ROLE, nullable=False),
        sa.Column("body", sa.Text, nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index(
        "idx_invitation_messages_thread",
        "invitation_messages",
        ["invitation_id", "created_at"],
    )

    op.create_table(
        "invitation_message_reads",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "invitation_id",
            sa.Integer,
            sa.ForeignKey("invitations.id"),
            nullable=False,
        ),
        sa.Column("profile_id", sa.String(64), nullable=False),
        sa.Column("last_read_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "invitation_id",
            "profile_id",
            name="uq_invitation_message_reads_reader",
        ),
    )


def downgrade() -> None:
    op.drop_table("invitation_message_reads")
    op.drop_table("invitation_messages")
    op.execute("DROP TYPE IF EXISTS senderrole")
