"""
Outbox Processor

Drains pending engagement messages through the chat transport.

- Skips the whole pass (without touching storage) when the transport is
  not connected.
- Re-resolves each destination at send time; the JID stored on the row is
  only a fallback.
- Sends are serialized with a fixed delay between them to stay inside the
  provider's rate limit.
- Each row is claimed (pending -> sending) with a conditional UPDATE and
  committed before the transport is called, so overlapping passes never
  send the same row twice. A row that stays in sending past the claim
  timeout was abandoned mid-send; it is marked failed rather than resent.
- A failed send increments retry_count and returns the row to pending; the
  attempt that reaches the retry cap marks the row failed with the error text.
- One message's failure never aborts the batch.
"""
import logging
import time
from datetime import timedelta
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.clock import SystemClock
from core.config import settings
from core.exceptions import NotFoundError
from models import QueuedMessage, UserProfile
from services.localization import Localizer

logger = logging.getLogger(__name__)


@dataclass
class ProcessResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "errors": list(self.errors),
        }


class OutboxProcessor:
    def __init__(
        self,
        db: Session,
        transport,
        resolver,
        localizer: Optional[Localizer] = None,
        clock=None,
        send_delay_ms: Optional[int] = None,
        max_retries: Optional[int] = None,
        batch_size: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
        lock=None,
        claim_timeout_s: Optional[int] = None,
    ):
        self.db = db
        self.transport = transport
        self.resolver = resolver
        self.localizer = localizer or Localizer()
        self.clock = clock or SystemClock()
        self.send_delay_ms = settings.ENGAGEMENT_SEND_DELAY_MS if send_delay_ms is None else send_delay_ms
        self.max_retries = max_retries or settings.ENGAGEMENT_MAX_MESSAGE_RETRIES
        self.batch_size = batch_size or settings.ENGAGEMENT_OUTBOX_BATCH_SIZE
        self._sleep = sleep
        self.lock = lock
        self.claim_timeout_s = claim_timeout_s or settings.ENGAGEMENT_SEND_CLAIM_TIMEOUT_S

    def process_message_queue(self) -> ProcessResult:
        if not self.transport.is_connected():
            logger.warning("Transport not connected, skipping outbox pass")
            return ProcessResult()

        if self.lock is not None and not self.lock.acquire():
            logger.info("Another worker is draining the outbox, skipping this pass")
            return ProcessResult()
        try:
            return self._process_pending()
        finally:
            if self.lock is not None:
                self.lock.release()

    def _process_pending(self) -> ProcessResult:
        result = ProcessResult()
        now = self.clock.now()
        self._fail_abandoned_claims(now)
        messages = (
            self.db.query(QueuedMessage)
            .filter(
                QueuedMessage.status == "pending",
                QueuedMessage.scheduled_for <= now,
            )
            .order_by(QueuedMessage.scheduled_for.asc())
            .limit(self.batch_size)
            .all()
        )
        if not messages:
            return result

        logger.info(f"Processing {len(messages)} pending engagement messages")

        for message in messages:
            if not self._claim(message):
                continue

            if result.processed > 0 and self.send_delay_ms:
                self._sleep(self.send_delay_ms / 1000.0)

            result.processed += 1
            try:
                self._send(message)
            except Exception as e:
                if self._record_failure(message, str(e)):
                    result.failed += 1
                    result.errors.append({"message_id": str(message.id), "error": str(e)})
                continue

            try:
                message.status = "sent"
                message.sent_at = self.clock.now()
                message.error_message = None
                self.db.commit()
                result.succeeded += 1
            except SQLAlchemyError as e:
                # Delivered but not marked; the row stays claimed and is never resent.
                self.db.rollback()
                logger.error(f"Sent message {message.id} but failed to mark it sent: {e}")
                result.errors.append({"message_id": str(message.id), "error": str(e)})

        logger.info(
            f"Outbox pass complete: processed={result.processed} "
            f"succeeded={result.succeeded} failed={result.failed}"
        )
        return result

    def _claim(self, message: QueuedMessage) -> bool:
        """Move one row from pending to sending. False when another pass got there first."""
        message_id = message.id
        try:
            claimed = (
                self.db.query(QueuedMessage)
                .filter(
                    QueuedMessage.id == message_id,
                    QueuedMessage.status == "pending",
                )
                .update(
                    {"status": "sending", "claimed_at": self.clock.now()},
                    synchronize_session=False,
                )
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to claim message {message_id}: {e}")
            return False

        if not claimed:
            logger.info(f"Message {message_id} already claimed by another pass, skipping")
            return False
        return True

    def _fail_abandoned_claims(self, now) -> None:
        """A row still in sending after the claim timeout may or may not have been delivered."""
        cutoff = now - timedelta(seconds=self.claim_timeout_s)
        try:
            abandoned = (
                self.db.query(QueuedMessage)
                .filter(
                    QueuedMessage.status == "sending",
                    QueuedMessage.claimed_at <= cutoff,
                )
                .update(
                    {"status": "failed", "error_message": "Delivery outcome unknown: send claim expired"},
                    synchronize_session=False,
                )
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to expire abandoned outbox claims: {e}")
            return
        if abandoned:
            logger.warning(f"Marked {abandoned} abandoned outbox messages as failed")

    def _send(self, message: QueuedMessage) -> None:
        destination = self.resolver.get_message_destination(message.user_id)
        if destination is not None:
            jid = destination.destination_jid
        else:
            jid = message.destination_jid
        if not jid:
            raise NotFoundError("Destination", message.user_id)

        text = self.localizer.get_message(
            message.message_key,
            self._locale_for(message),
            message.message_params or {},
        )
        self.transport.send(jid, text)
        logger.info(f"Sent {message.message_type} message {message.id} to user {message.user_id}")

    def _locale_for(self, message: QueuedMessage) -> Optional[str]:
        profile = self.db.get(UserProfile, message.user_id)
        if profile is not None and profile.locale:
            return profile.locale
        return (message.message_params or {}).get("locale")

    def _record_failure(self, message: QueuedMessage, error: str) -> bool:
        """Bump the retry count. Returns True when the message is now terminally failed."""
        new_retry_count = message.retry_count + 1
        terminal = new_retry_count >= self.max_retries
        try:
            message.retry_count = new_retry_count
            if terminal:
                message.status = "failed"
                message.error_message = error
            else:
                message.status = "pending"
                message.claimed_at = None
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to record send failure for message {message.id}: {e}")
            return False

        if terminal:
            logger.error(
                f"Message {message.id} failed after {new_retry_count} attempts: {error}"
            )
        else:
            logger.warning(
                f"Message {message.id} send failed, will retry (retry_count={new_retry_count}): {error}"
            )
        return terminal
