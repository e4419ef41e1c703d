"""
Message Outbox

Durable queue of proactive messages. Every row carries a deterministic
idempotency key; inserting a key that already exists is a successful
no-op, which is what keeps re-run and concurrent sweeps from ever
producing a second message for the same logical event.

Key format (stored rows depend on it, do not change):
    {user_id}:{event_type}:{YYYY-MM-DD}        daily events
    {user_id}:{event_type}:{ISOYear}-W{ww}     weekly events (ISO-8601 week)
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.clock import SystemClock
from core.database import insert_ignore_conflict
from models import DESTINATIONS, MESSAGE_TYPES, QueuedMessage
from services.engagement_constants import WEEKLY_EVENT_TYPES

logger = logging.getLogger(__name__)


def get_idempotency_key(user_id: str, event_type: str, when: Union[date, datetime]) -> str:
    """
    Deterministic outbox key for (user, event type, time bucket).

    Datetimes are bucketed by their UTC calendar date. Weekly event types
    use the ISO week-numbering year, so Dec 29 2025 -> 2026-W01.
    """
    if isinstance(when, datetime):
        if when.tzinfo is not None:
            when = when.astimezone(timezone.utc)
        day = when.date()
    else:
        day = when

    if event_type in WEEKLY_EVENT_TYPES:
        iso_year, iso_week, _ = day.isocalendar()
        return f"{user_id}:{event_type}:{iso_year}-W{iso_week:02d}"
    return f"{user_id}:{event_type}:{day.isoformat()}"


@dataclass
class QueueMessageParams:
    user_id: str
    message_type: str
    message_key: str
    destination: str
    destination_jid: str
    message_params: Dict[str, Any] = field(default_factory=dict)
    scheduled_for: Optional[datetime] = None
    idempotency_key: Optional[str] = None


class MessageOutbox:
    """Insert-only side of the outbox. The processor owns status changes."""

    get_idempotency_key = staticmethod(get_idempotency_key)

    def __init__(self, db: Session, clock=None):
        self.db = db
        self.clock = clock or SystemClock()

    def queue_message(self, params: QueueMessageParams) -> bool:
        """
        Queue a message, deduplicated by idempotency key.

        Returns True when the row exists afterwards (new or pre-existing),
        False when the message was rejected or storage failed.
        """
        message_type = getattr(params.message_type, "value", params.message_type)
        destination = getattr(params.destination, "value", params.destination)

        if message_type not in MESSAGE_TYPES:
            logger.error(f"Refusing to queue unknown message type {message_type!r} for user {params.user_id}")
            return False
        if destination not in DESTINATIONS:
            logger.error(f"Refusing to queue message with destination {destination!r} for user {params.user_id}")
            return False
        if not params.destination_jid:
            logger.error(f"Refusing to queue {message_type} for user {params.user_id}: no destination JID")
            return False

        scheduled_for = params.scheduled_for or self.clock.now()
        idempotency_key = params.idempotency_key or get_idempotency_key(
            params.user_id, message_type, scheduled_for
        )

        values = {
            "user_id": params.user_id,
            "message_type": message_type,
            "message_key": params.message_key,
            "message_params": dict(params.message_params or {}),
            "destination": destination,
            "destination_jid": params.destination_jid,
            "scheduled_for": scheduled_for,
            "status": "pending",
            "retry_count": 0,
            "idempotency_key": idempotency_key,
            "created_at": self.clock.now(),
        }

        try:
            inserted = insert_ignore_conflict(self.db, QueuedMessage, values, "uq_message_queue_idempotency_key")
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to queue {message_type} message for user {params.user_id}: {e}")
            return False

        if inserted:
            logger.info(f"Queued {message_type} message for user {params.user_id} (key={idempotency_key})")
        else:
            logger.info(f"Message already queued, skipping duplicate (key={idempotency_key})")
        return True
