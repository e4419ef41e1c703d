"""Create engagement lifecycle tables

Revision ID: engagement_001
Revises:
Create Date: 2026-10-18

Creates the per-user engagement state, the transition audit log, the
message outbox (unique idempotency_key) and the action event log, plus the
profile table columns the lifecycle reads: destination preference,
re-engagement opt-out, tips toggle and onboarding tier progress.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID


# revision identifiers, used by Alembic.
revision: str = "engagement_001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "user_profiles",
        sa.Column("user_id", sa.Text(), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("whatsapp_jid", sa.Text(), nullable=True),
        sa.Column("locale", sa.Text(), nullable=False, server_default="pt-BR"),
        sa.Column("preferred_destination", sa.Text(), nullable=True),
        sa.Column("preferred_group_jid", sa.Text(), nullable=True),
        sa.Column("reengagement_opt_out", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("onboarding_tips_enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("onboarding_tier", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("onboarding_tier_progress", JSONB(), nullable=True),
        sa.Column("magic_moment_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("onboarding_tier BETWEEN 0 AND 3", name="ck_user_profiles_onboarding_tier"),
    )

    op.create_table(
        "user_engagement_states",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("state", sa.Text(), nullable=False, server_default="active"),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("goodbye_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("goodbye_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("remind_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("user_id", name="uq_engagement_state_user_id"),
        sa.CheckConstraint(
            "state IN ('active', 'goodbye_sent', 'remind_later', 'dormant', 'help_flow')",
            name="ck_engagement_state_valid",
        ),
    )
    op.create_index("ix_engagement_states_state_last_activity", "user_engagement_states", ["state", "last_activity_at"])
    op.create_index("ix_engagement_states_goodbye_expires", "user_engagement_states", ["goodbye_expires_at"])
    op.create_index("ix_engagement_states_remind_at", "user_engagement_states", ["remind_at"])

    op.create_table(
        "engagement_state_transitions",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("from_state", sa.Text(), nullable=True),
        sa.Column("to_state", sa.Text(), nullable=False),
        sa.Column("trigger", sa.Text(), nullable=False),
        sa.Column("metadata", JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_engagement_state_transitions_user_id", "engagement_state_transitions", ["user_id"])
    op.create_index("ix_engagement_transitions_created_at", "engagement_state_transitions", ["created_at"])

    op.create_table(
        "engagement_message_queue",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("message_type", sa.Text(), nullable=False),
        sa.Column("message_key", sa.Text(), nullable=False),
        sa.Column("message_params", JSONB(), nullable=True),
        sa.Column("destination", sa.Text(), nullable=False, server_default="individual"),
        sa.Column("destination_jid", sa.Text(), nullable=False),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        # Sole duplicate-prevention mechanism for proactive messages
        sa.Column("idempotency_key", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("idempotency_key", name="uq_message_queue_idempotency_key"),
        sa.CheckConstraint(
            "message_type IN ('welcome', 'tier_unlock', 'goodbye', 'weekly_review', 'reminder', 'help_restart')",
            name="ck_message_queue_type",
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'sending', 'sent', 'failed', 'cancelled')",
            name="ck_message_queue_status",
        ),
        sa.CheckConstraint(
            "destination IN ('individual', 'group')",
            name="ck_message_queue_destination",
        ),
    )
    op.create_index("ix_engagement_message_queue_user_id", "engagement_message_queue", ["user_id"])
    op.create_index("ix_message_queue_status_scheduled", "engagement_message_queue", ["status", "scheduled_for"])

    op.create_table(
        "user_action_events",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("action", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_user_action_events_user_created", "user_action_events", ["user_id", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_user_action_events_user_created", table_name="user_action_events")
    op.drop_table("user_action_events")
    op.drop_index("ix_message_queue_status_scheduled", table_name="engagement_message_queue")
    op.drop_index("ix_engagement_message_queue_user_id", table_name="engagement_message_queue")
    op.drop_table("engagement_message_queue")
    op.drop_index("ix_engagement_transitions_created_at", table_name="engagement_state_transitions")
    op.drop_index("ix_engagement_state_transitions_user_id", table_name="engagement_state_transitions")
    op.drop_table("engagement_state_transitions")
    op.drop_index("ix_engagement_states_remind_at", table_name="user_engagement_states")
    op.drop_index("ix_engagement_states_goodbye_expires", table_name="user_engagement_states")
    op.drop_index("ix_engagement_states_state_last_activity", table_name="user_engagement_states")
    op.drop_table("user_engagement_states")
    op.drop_table("user_profiles")
