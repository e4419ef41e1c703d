from sqlalchemy import Column, Integer, Boolean, CheckConstraint, Text, Index, JSON, UniqueConstraint, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from core.database import Base, UTCDateTime
import uuid

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

ENGAGEMENT_STATES = ("active", "goodbye_sent", "remind_later", "dormant", "help_flow")
MESSAGE_TYPES = ("welcome", "tier_unlock", "goodbye", "weekly_review", "reminder", "help_restart")
MESSAGE_STATUSES = ("pending", "sending", "sent", "failed", "cancelled")
DESTINATIONS = ("individual", "group")


def _in_clause(column: str, values) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


class UserProfile(Base):
    """
    Per-user profile fields the engagement subsystem reads and writes.

    The wider product owns this table; engagement only touches destination
    preferences, opt-out flags, locale and onboarding progress.
    """
    __tablename__ = "user_profiles"

    user_id = Column(Text, primary_key=True)
    created_at = Column(UTCDateTime(), server_default=func.now(), nullable=False)

    whatsapp_jid = Column(Text, nullable=True)
    locale = Column(Text, nullable=False, default="pt-BR")

    # --- Message routing ---
    preferred_destination = Column(Text, nullable=True)  # 'individual' | 'group' | NULL (not chosen yet)
    preferred_group_jid = Column(Text, nullable=True)

    # --- Outreach preferences ---
    reengagement_opt_out = Column(Boolean, nullable=False, default=False)
    onboarding_tips_enabled = Column(Boolean, nullable=False, default=True)

    # --- Onboarding tiers ---
    onboarding_tier = Column(Integer, nullable=False, default=0)
    onboarding_tier_progress = Column(JSONType, nullable=True)
    magic_moment_at = Column(UTCDateTime(), nullable=True)

    __table_args__ = (
        CheckConstraint("onboarding_tier BETWEEN 0 AND 3", name="ck_user_profiles_onboarding_tier"),
    )


class EngagementState(Base):
    """
    One row per user. Mutated only through EngagementStateMachine transitions.

    goodbye_expires_at is set iff state = 'goodbye_sent';
    remind_at is set iff state = 'remind_later'.
    """
    __tablename__ = "user_engagement_states"

    id = Column(Uuid(), primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False)
    state = Column(Text, nullable=False, default="active")

    last_activity_at = Column(UTCDateTime(), nullable=False)
    goodbye_sent_at = Column(UTCDateTime(), nullable=True)
    goodbye_expires_at = Column(UTCDateTime(), nullable=True)
    remind_at = Column(UTCDateTime(), nullable=True)

    created_at = Column(UTCDateTime(), server_default=func.now(), nullable=False)
    updated_at = Column(UTCDateTime(), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", name="uq_engagement_state_user_id"),
        CheckConstraint(_in_clause("state", ENGAGEMENT_STATES), name="ck_engagement_state_valid"),
        Index("ix_engagement_states_state_last_activity", "state", "last_activity_at"),
        Index("ix_engagement_states_goodbye_expires", "goodbye_expires_at"),
        Index("ix_engagement_states_remind_at", "remind_at"),
    )


class StateTransition(Base):
    """Append-only audit log of engagement transitions. Never read for decisions."""
    __tablename__ = "engagement_state_transitions"

    id = Column(Uuid(), primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False, index=True)
    from_state = Column(Text, nullable=True)
    to_state = Column(Text, nullable=False)
    trigger = Column(Text, nullable=False)
    # "metadata" is reserved on declarative classes
    transition_metadata = Column("metadata", JSONType, nullable=True)
    created_at = Column(UTCDateTime(), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_engagement_transitions_created_at", "created_at"),
    )


class QueuedMessage(Base):
    """
    Outbox row for a proactive message.

    idempotency_key is UNIQUE and is the only duplicate-prevention mechanism:
    two writers queueing the same logical event both succeed, one row exists.
    """
    __tablename__ = "engagement_message_queue"

    id = Column(Uuid(), primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False, index=True)
    message_type = Column(Text, nullable=False)
    message_key = Column(Text, nullable=False)
    message_params = Column(JSONType, nullable=True)

    destination = Column(Text, nullable=False, default="individual")
    destination_jid = Column(Text, nullable=False)

    scheduled_for = Column(UTCDateTime(), nullable=False)
    sent_at = Column(UTCDateTime(), nullable=True)
    status = Column(Text, nullable=False, default="pending")
    claimed_at = Column(UTCDateTime(), nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)

    idempotency_key = Column(Text, nullable=False)
    created_at = Column(UTCDateTime(), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_message_queue_idempotency_key"),
        CheckConstraint(_in_clause("message_type", MESSAGE_TYPES), name="ck_message_queue_type"),
        CheckConstraint(_in_clause("status", MESSAGE_STATUSES), name="ck_message_queue_status"),
        CheckConstraint(_in_clause("destination", DESTINATIONS), name="ck_message_queue_destination"),
        Index("ix_message_queue_status_scheduled", "status", "scheduled_for"),
    )


class UserActionEvent(Base):
    """Append-only log of recorded product actions, counted by the weekly review."""
    __tablename__ = "user_action_events"

    id = Column(Uuid(), primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False)
    action = Column(Text, nullable=False)
    created_at = Column(UTCDateTime(), nullable=False)

    __table_args__ = (
        Index("ix_user_action_events_user_created", "user_id", "created_at"),
    )
