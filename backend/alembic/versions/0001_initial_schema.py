"""initial_schema

Revision ID: 0001
Revises:
Create Date: 2026-10-18

Creates the enrollment table and the three event tables: the
campaign_events log (unique on provider + provider_event_id), the durable
orphaned_events retry queue and dead_letter_events.
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ENROLLMENT_STATUSES = (
    "pending", "sent", "delivered", "opened", "clicked",
    "replied", "completed", "bounced", "unsubscribed",
)
DEAD_LETTER_STATUSES = ("failed", "replaying", "replayed", "ignored")


def upgrade() -> None:
    # --- campaign_enrollments ---
    op.create_table(
        "campaign_enrollments",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("campaign_instance_id", sa.String(64), nullable=False),
        sa.Column("contact_identifier", sa.String(255), nullable=False),
        sa.Column("provider_message_id", sa.String(255), nullable=True),
        sa.Column("provider_action_id", sa.String(255), nullable=True),
        sa.Column("status", sa.Enum(*ENROLLMENT_STATUSES, name="enrollmentstatus"), nullable=False,
                  server_default="pending"),
        sa.Column("status_rank", sa.Integer, nullable=False, server_default="1"),
        sa.Column("sent_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("delivered_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("opened_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("clicked_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("replied_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_event_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_campaign_enrollments_campaign_instance_id", "campaign_enrollments", ["campaign_instance_id"])
    op.create_index("ix_campaign_enrollments_provider_message_id", "campaign_enrollments", ["provider_message_id"])
    op.create_index("ix_campaign_enrollments_provider_action_id", "campaign_enrollments", ["provider_action_id"])

    # --- campaign_events ---
    op.create_table(
        "campaign_events",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("provider", sa.String(50), nullable=False),
        sa.Column("provider_event_id", sa.String(255), nullable=False),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("channel", sa.String(20), nullable=False),
        sa.Column("enrollment_key", sa.String(255), nullable=False),
        sa.Column("enrollment_id", sa.String(64), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("raw_payload_ref", sa.String(64), nullable=False),
        sa.Column("payload", sa.JSON, nullable=False),
        sa.Column("status_advanced", sa.Boolean, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("provider", "provider_event_id", name="uq_campaign_events_provider_event"),
    )
    op.create_index("ix_campaign_events_enrollment_id", "campaign_events", ["enrollment_id"])
    op.create_index("ix_campaign_events_enrollment_type", "campaign_events", ["enrollment_id", "event_type"])

    # --- orphaned_events ---
    op.create_table(
        "orphaned_events",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("provider", sa.String(50), nullable=False),
        sa.Column("provider_event_id", sa.String(255), nullable=False),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("channel", sa.String(20), nullable=False),
        sa.Column("enrollment_key", sa.String(255), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("raw_payload_ref", sa.String(64), nullable=False),
        sa.Column("raw_payload", sa.JSON, nullable=False),
        sa.Column("enqueued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.UniqueConstraint("provider", "provider_event_id", name="uq_orphaned_events_provider_event"),
    )
    op.create_index("ix_orphaned_events_next_retry_at", "orphaned_events", ["next_retry_at"])

    # --- dead_letter_events ---
    op.create_table(
        "dead_letter_events",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("provider", sa.String(50), nullable=False),
        sa.Column("provider_event_id", sa.String(255), nullable=True),
        sa.Column("event_type", sa.String(50), nullable=True),
        sa.Column("channel", sa.String(20), nullable=True),
        sa.Column("enrollment_key", sa.String(255), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("raw_payload_ref", sa.String(64), nullable=False),
        sa.Column("raw_payload", sa.JSON, nullable=False),
        sa.Column("failure_reason", sa.Text, nullable=False),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("status", sa.Enum(*DEAD_LETTER_STATUSES, name="deadletterstatus"), nullable=False,
                  server_default="failed"),
        sa.Column("first_attempted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_attempted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("replayed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_dead_letter_events_status", "dead_letter_events", ["status"])
    op.create_index("ix_dead_letter_events_provider", "dead_letter_events", ["provider"])
    op.create_index("ix_dead_letter_events_event_type", "dead_letter_events", ["event_type"])
    op.create_index("ix_dead_letter_events_created_at", "dead_letter_events", ["created_at"])


def downgrade() -> None:
    op.drop_table("dead_letter_events")
    op.drop_table("orphaned_events")
    op.drop_table("campaign_events")
    op.drop_table("campaign_enrollments")
    sa.Enum(name="deadletterstatus").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="enrollmentstatus").drop(op.get_bind(), checkfirst=True)
