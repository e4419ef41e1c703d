"""
Scheduled Engagement Sweeps

Daily: inactive users -> goodbye, expired goodbyes -> dormant,
due reminders -> dormant, then drain the outbox.
Weekly: recap message for users who recorded actions in the last week.

Both sweeps are safe to re-run and to run concurrently. Eligibility
queries only select users still needing work, the state machine guards
each transition, and every queued message carries a bucketed idempotency
key. One user's failure is recorded in errors and never blocks the others.
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Optional

from sqlalchemy import func, or_

from core.config import settings
from core.logging import log_context
from models import EngagementState, UserActionEvent, UserProfile
from services.engagement import EngagementServices
from services.engagement_analytics import safe_track
from services.engagement_constants import (
    EVENT_WEEKLY_REVIEW_SENT,
    WEEKLY_REVIEW_MESSAGE_KEY,
    EngagementStatus,
    MessageType,
    Trigger,
)
from services.localization import normalize_locale
from services.message_outbox import QueueMessageParams, get_idempotency_key

logger = logging.getLogger(__name__)


@dataclass
class JobResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)
    duration_ms: int = 0

    def record_error(self, user_id: str, error: str) -> None:
        self.failed += 1
        self.errors.append({"user_id": user_id, "error": error})

    def to_dict(self) -> Dict:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": list(self.errors),
            "duration_ms": self.duration_ms,
        }


@dataclass
class ActiveUser:
    user_id: str
    action_count: int
    locale: str


def _sweep(services: EngagementServices, result: JobResult, rows, trigger: Trigger, label: str) -> None:
    for row in rows:
        user_id = row.user_id
        result.processed += 1
        try:
            with log_context(user_id=user_id, trigger=trigger.value):
                outcome = services.state_machine.transition(user_id, trigger)
        except Exception as e:
            logger.error(f"{label}: unexpected error for user {user_id}: {e}")
            result.record_error(user_id, str(e))
            continue
        if outcome.success:
            result.succeeded += 1
        else:
            result.record_error(user_id, outcome.error or "transition failed")


def _opted_out_users(services: EngagementServices, user_ids: List[str]) -> set:
    if not user_ids:
        return set()
    rows = (
        services.db.query(UserProfile.user_id)
        .filter(
            UserProfile.user_id.in_(user_ids),
            UserProfile.reengagement_opt_out.is_(True),
        )
        .all()
    )
    return {row.user_id for row in rows}


def run_daily_engagement_job(services: EngagementServices) -> JobResult:
    started = time.monotonic()
    result = JobResult()
    machine = services.state_machine

    inactive = machine.get_inactive_users(settings.ENGAGEMENT_INACTIVITY_DAYS)
    opted_out = _opted_out_users(services, [row.user_id for row in inactive])
    logger.info(f"Daily engagement job: {len(inactive)} inactive users ({len(opted_out)} opted out)")

    eligible = []
    for row in inactive:
        if row.user_id in opted_out:
            result.skipped += 1
        else:
            eligible.append(row)
    _sweep(services, result, eligible, Trigger.INACTIVITY_14D, "inactivity")

    _sweep(services, result, machine.get_expired_goodbyes(), Trigger.GOODBYE_TIMEOUT, "goodbye timeout")
    _sweep(services, result, machine.get_due_reminders(), Trigger.REMINDER_DUE, "reminder due")

    try:
        services.processor.process_message_queue()
    except Exception as e:
        logger.error(f"Daily engagement job: outbox drain failed: {e}")

    result.duration_ms = int((time.monotonic() - started) * 1000)
    logger.info(
        f"Daily engagement job complete: processed={result.processed} succeeded={result.succeeded} "
        f"failed={result.failed} skipped={result.skipped} duration_ms={result.duration_ms}"
    )
    return result


def get_active_users_last_week(services: EngagementServices, lookback_days: Optional[int] = None) -> List[ActiveUser]:
    """Users with recorded actions in the lookback window, not dormant and not opted out."""
    lookback_days = lookback_days or settings.ENGAGEMENT_WEEKLY_LOOKBACK_DAYS
    since = services.clock.now() - timedelta(days=lookback_days)

    action_count = func.count(UserActionEvent.id).label("action_count")
    rows = (
        services.db.query(UserActionEvent.user_id, action_count, UserProfile.locale)
        .join(UserProfile, UserProfile.user_id == UserActionEvent.user_id)
        .outerjoin(EngagementState, EngagementState.user_id == UserActionEvent.user_id)
        .filter(
            UserActionEvent.created_at >= since,
            UserProfile.reengagement_opt_out.is_(False),
            or_(
                EngagementState.state.is_(None),
                EngagementState.state != EngagementStatus.DORMANT.value,
            ),
        )
        .group_by(UserActionEvent.user_id, UserProfile.locale)
        .order_by(UserActionEvent.user_id)
        .all()
    )
    return [
        ActiveUser(user_id=row.user_id, action_count=row.action_count, locale=normalize_locale(row.locale))
        for row in rows
    ]


def run_weekly_review_job(services: EngagementServices) -> JobResult:
    started = time.monotonic()
    result = JobResult()
    now = services.clock.now()

    active_users = get_active_users_last_week(services)
    logger.info(f"Weekly review job: {len(active_users)} active users")

    for user in active_users:
        result.processed += 1
        try:
            destination = services.resolver.get_message_destination(user.user_id)
            if destination is None:
                result.record_error(user.user_id, "No destination available")
                continue

            queued = services.outbox.queue_message(QueueMessageParams(
                user_id=user.user_id,
                message_type=MessageType.WEEKLY_REVIEW.value,
                message_key=WEEKLY_REVIEW_MESSAGE_KEY,
                message_params={"count": user.action_count},
                destination=destination.destination,
                destination_jid=destination.destination_jid,
                scheduled_for=now,
                idempotency_key=get_idempotency_key(user.user_id, MessageType.WEEKLY_REVIEW.value, now),
            ))
            if not queued:
                result.record_error(user.user_id, "Failed to queue message")
                continue

            result.succeeded += 1
            safe_track(services.analytics, EVENT_WEEKLY_REVIEW_SENT, user.user_id, {
                "transaction_count": user.action_count,
                "destination": destination.destination,
                "locale": user.locale,
            })
        except Exception as e:
            logger.error(f"Weekly review failed for user {user.user_id}: {e}")
            result.record_error(user.user_id, str(e))

    result.duration_ms = int((time.monotonic() - started) * 1000)
    logger.info(
        f"Weekly review job complete: processed={result.processed} succeeded={result.succeeded} "
        f"failed={result.failed} duration_ms={result.duration_ms}"
    )
    return result
