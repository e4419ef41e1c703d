"""
Engagement State Machine

Owns every write to user_engagement_states. A transition:

1. Loads the current row and checks the trigger against TRANSITIONS.
   An invalid trigger returns success=False and writes nothing.
2. Applies the new state with a conditional UPDATE that only matches the
   expected prior state. If another process moved the row first, the UPDATE
   matches nothing and the transition reports failure.
3. Appends an audit row to engagement_state_transitions.
4. Runs side effects (queue a message, reset onboarding). These are
   isolated: their failure is logged and reflected only in side_effects,
   never in success.

Racing sweeps can both log a transition for the same user; the outbox
idempotency key still guarantees a single message. The audit log is
informational and tolerates that duplicate.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.clock import SystemClock
from core.config import settings
from core.database import insert_ignore_conflict
from core.exceptions import GuardViolation, NotFoundError
from models import EngagementState, StateTransition, UserProfile
from services.engagement_analytics import safe_track
from services.engagement_constants import (
    EVENT_GOODBYE_RESPONSE,
    EVENT_STATE_CHANGED,
    EVENT_UNPROMPTED_RETURN,
    GOODBYE_MESSAGE_KEY,
    GOODBYE_RESPONSE_TYPES,
    REACTIVATION_STATES,
    TRANSITIONS,
    USER_TRIGGERS,
    EngagementStatus,
    MessageType,
    Trigger,
)
from services.localization import normalize_locale
from services.message_outbox import MessageOutbox, QueueMessageParams, get_idempotency_key
from services.tier_progress import reset_onboarding_progress

logger = logging.getLogger(__name__)

CONCURRENT_MODIFICATION_ERROR = "State was modified by another process"


@dataclass
class TransitionResult:
    success: bool
    previous_state: Optional[str] = None
    new_state: Optional[str] = None
    side_effects: List[str] = field(default_factory=list)
    error: Optional[str] = None


def days_between(earlier: Optional[datetime], later: datetime) -> int:
    if earlier is None:
        return 0
    return max(0, (later - earlier).days)


class EngagementStateMachine:
    def __init__(
        self,
        db: Session,
        outbox: Optional[MessageOutbox] = None,
        resolver=None,
        analytics=None,
        clock=None,
    ):
        self.db = db
        self.clock = clock or SystemClock()
        self.outbox = outbox or MessageOutbox(db, self.clock)
        self.resolver = resolver
        self.analytics = analytics

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def transition(
        self,
        user_id: str,
        trigger: Union[Trigger, str],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TransitionResult:
        metadata = dict(metadata or {})
        try:
            trigger = Trigger(trigger)
        except ValueError:
            return TransitionResult(success=False, error=f"Unknown trigger: {trigger}")

        try:
            row = self._get_state_row(user_id)
            if row is None:
                if trigger == Trigger.USER_MESSAGE:
                    return self._initialize(user_id, metadata)
                raise NotFoundError("Engagement state", user_id)

            current = EngagementStatus(row.state)
            valid_from, target = TRANSITIONS[trigger]
            if current not in valid_from:
                raise GuardViolation(trigger.value, current.value)

            now = self.clock.now()
            metadata = self._build_metadata(trigger, current, row, now, metadata)

            if not self._apply(user_id, trigger, current, target, now):
                self.db.rollback()
                logger.warning(
                    f"Transition {trigger.value} for user {user_id} lost a race: "
                    f"state is no longer {current.value}"
                )
                return TransitionResult(
                    success=False,
                    previous_state=current.value,
                    error=CONCURRENT_MODIFICATION_ERROR,
                )
            self._log_transition(user_id, current, target, trigger, metadata, now)
            self.db.commit()
        except GuardViolation as e:
            logger.info(f"Rejected transition for user {user_id}: {e}")
            return TransitionResult(success=False, previous_state=e.current_state, error=str(e))
        except NotFoundError as e:
            logger.warning(f"Transition {trigger.value} for user {user_id} failed: {e}")
            return TransitionResult(success=False, error=f"No engagement state found for user {user_id}")
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Transition {trigger.value} for user {user_id} failed: {e}")
            return TransitionResult(success=False, error=str(e))

        logger.info(f"User {user_id}: {current.value} -> {target.value} ({trigger.value})")
        result = TransitionResult(
            success=True,
            previous_state=current.value,
            new_state=target.value,
        )
        self._track_transition(user_id, current, target, trigger, metadata)
        result.side_effects.extend(self._run_side_effects(user_id, trigger, target, now))

        if trigger == Trigger.GOODBYE_RESPONSE_1:
            self._complete_help_flow(user_id, result)

        return result

    def _initialize(self, user_id: str, metadata: Dict[str, Any]) -> TransitionResult:
        now = self.clock.now()
        inserted = insert_ignore_conflict(
            self.db,
            EngagementState,
            {
                "user_id": user_id,
                "state": EngagementStatus.ACTIVE.value,
                "last_activity_at": now,
                "created_at": now,
                "updated_at": now,
            },
            "uq_engagement_state_user_id",
        )
        if inserted:
            metadata.setdefault("trigger_source", "user_message")
            self._log_transition(user_id, None, EngagementStatus.ACTIVE, Trigger.USER_MESSAGE, metadata, now)
        self.db.commit()
        return TransitionResult(
            success=True,
            previous_state=None,
            new_state=EngagementStatus.ACTIVE.value,
            side_effects=["initialized_state"] if inserted else [],
        )

    def _complete_help_flow(self, user_id: str, result: TransitionResult) -> None:
        """Second leg of goodbye_response_1: help_flow -> active."""
        follow_up = self.transition(
            user_id,
            Trigger.USER_MESSAGE,
            {"reactivation_source": "help_flow"},
        )
        if follow_up.success:
            result.new_state = follow_up.new_state
            result.side_effects.append("transitioned_to_active")
        else:
            logger.error(f"User {user_id} stuck in help_flow: {follow_up.error}")

    def _apply(
        self,
        user_id: str,
        trigger: Trigger,
        current: EngagementStatus,
        target: EngagementStatus,
        now: datetime,
    ) -> bool:
        values = self._timestamps_for(target, now)
        values["state"] = target.value
        values["updated_at"] = now
        query = self.db.query(EngagementState).filter(
            EngagementState.user_id == user_id,
            EngagementState.state == current.value,
        )
        if trigger == Trigger.INACTIVITY_14D:
            # A message that lands after the sweep selected the user cancels the goodbye
            cutoff = now - timedelta(days=settings.ENGAGEMENT_INACTIVITY_DAYS)
            query = query.filter(EngagementState.last_activity_at <= cutoff)
        updated = query.update(values)
        return updated == 1

    @staticmethod
    def _timestamps_for(target: EngagementStatus, now: datetime) -> Dict[str, Any]:
        cleared = {"goodbye_sent_at": None, "goodbye_expires_at": None, "remind_at": None}
        if target == EngagementStatus.ACTIVE:
            return {**cleared, "last_activity_at": now}
        if target == EngagementStatus.GOODBYE_SENT:
            return {
                **cleared,
                "goodbye_sent_at": now,
                "goodbye_expires_at": now + timedelta(hours=settings.ENGAGEMENT_GOODBYE_TIMEOUT_HOURS),
            }
        if target == EngagementStatus.REMIND_LATER:
            return {**cleared, "remind_at": now + timedelta(days=settings.ENGAGEMENT_REMIND_LATER_DAYS)}
        return cleared

    def _build_metadata(
        self,
        trigger: Trigger,
        current: EngagementStatus,
        row: EngagementState,
        now: datetime,
        metadata: Dict[str, Any],
    ) -> Dict[str, Any]:
        metadata.setdefault("days_inactive", days_between(row.last_activity_at, now))

        if trigger == Trigger.USER_MESSAGE and current in REACTIVATION_STATES:
            metadata.setdefault(
                "reactivation_source",
                "dormant" if current == EngagementStatus.DORMANT else "non_response_message",
            )

        response_type = GOODBYE_RESPONSE_TYPES.get(trigger)
        if response_type:
            metadata["response_type"] = response_type
            if row.goodbye_sent_at is not None:
                hours_waited = int((now - row.goodbye_sent_at).total_seconds() // 3600)
                metadata["hours_waited"] = hours_waited
                metadata["days_since_goodbye"] = hours_waited // 24

        metadata.setdefault("trigger_source", "user_message" if trigger in USER_TRIGGERS else "scheduler")
        return metadata

    def _log_transition(
        self,
        user_id: str,
        from_state: Optional[EngagementStatus],
        to_state: EngagementStatus,
        trigger: Trigger,
        metadata: Dict[str, Any],
        now: datetime,
    ) -> None:
        self.db.add(StateTransition(
            user_id=user_id,
            from_state=from_state.value if from_state else None,
            to_state=to_state.value,
            trigger=trigger.value,
            transition_metadata=metadata,
            created_at=now,
        ))

    # ------------------------------------------------------------------
    # Side effects (never fail the transition)
    # ------------------------------------------------------------------

    def _run_side_effects(self, user_id: str, trigger: Trigger, target: EngagementStatus, now: datetime) -> List[str]:
        effects: List[str] = []
        if target == EngagementStatus.GOODBYE_SENT:
            try:
                if self._queue_goodbye(user_id, now):
                    effects.append("queued_goodbye_message")
            except Exception as e:
                self.db.rollback()
                logger.error(f"Failed to queue goodbye message for user {user_id}: {e}")
        elif target == EngagementStatus.HELP_FLOW:
            try:
                if reset_onboarding_progress(self.db, user_id):
                    effects.append("reset_onboarding_tips")
            except Exception as e:
                self.db.rollback()
                logger.error(f"Failed to reset onboarding for user {user_id}: {e}")
        return effects

    def _queue_goodbye(self, user_id: str, now: datetime) -> bool:
        if self.resolver is None:
            logger.warning(f"No destination resolver configured, goodbye for user {user_id} not queued")
            return False
        destination = self.resolver.get_message_destination(user_id)
        if destination is None:
            logger.warning(f"No destination for user {user_id}, goodbye message omitted")
            return False
        profile = self.db.get(UserProfile, user_id)
        locale = normalize_locale(profile.locale if profile else None)
        return self.outbox.queue_message(QueueMessageParams(
            user_id=user_id,
            message_type=MessageType.GOODBYE.value,
            message_key=GOODBYE_MESSAGE_KEY,
            message_params={"locale": locale},
            destination=destination.destination,
            destination_jid=destination.destination_jid,
            scheduled_for=now,
            idempotency_key=get_idempotency_key(user_id, "goodbye_sent", now),
        ))

    def _track_transition(
        self,
        user_id: str,
        current: EngagementStatus,
        target: EngagementStatus,
        trigger: Trigger,
        metadata: Dict[str, Any],
    ) -> None:
        properties = {
            "from_state": current.value,
            "to_state": target.value,
            "trigger": trigger.value,
            "days_inactive": metadata.get("days_inactive"),
        }
        safe_track(self.analytics, EVENT_STATE_CHANGED, user_id, properties)

        response_type = GOODBYE_RESPONSE_TYPES.get(trigger)
        if response_type:
            safe_track(self.analytics, EVENT_GOODBYE_RESPONSE, user_id, {
                "response_type": response_type,
                "days_since_goodbye": metadata.get("days_since_goodbye"),
            })
        if metadata.get("unprompted_return"):
            safe_track(self.analytics, EVENT_UNPROMPTED_RETURN, user_id, {
                "days_inactive": metadata.get("days_inactive"),
                "previous_state": current.value,
            })

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _get_state_row(self, user_id: str) -> Optional[EngagementState]:
        return (
            self.db.query(EngagementState)
            .filter(EngagementState.user_id == user_id)
            .populate_existing()
            .first()
        )

    def get_engagement_state(self, user_id: str) -> str:
        """Current state, 'active' for users with no row yet."""
        row = self._get_state_row(user_id)
        return row.state if row else EngagementStatus.ACTIVE.value

    def get_inactive_users(self, days: Optional[int] = None) -> List[EngagementState]:
        days = days if days is not None else settings.ENGAGEMENT_INACTIVITY_DAYS
        cutoff = self.clock.now() - timedelta(days=days)
        return (
            self.db.query(EngagementState)
            .filter(
                EngagementState.state == EngagementStatus.ACTIVE.value,
                EngagementState.last_activity_at <= cutoff,
            )
            .order_by(EngagementState.last_activity_at.asc())
            .all()
        )

    def get_expired_goodbyes(self) -> List[EngagementState]:
        return (
            self.db.query(EngagementState)
            .filter(
                EngagementState.state == EngagementStatus.GOODBYE_SENT.value,
                EngagementState.goodbye_expires_at <= self.clock.now(),
            )
            .order_by(EngagementState.goodbye_expires_at.asc())
            .all()
        )

    def get_due_reminders(self) -> List[EngagementState]:
        return (
            self.db.query(EngagementState)
            .filter(
                EngagementState.state == EngagementStatus.REMIND_LATER.value,
                EngagementState.remind_at <= self.clock.now(),
            )
            .order_by(EngagementState.remind_at.asc())
            .all()
        )

    def get_user_transition_history(self, user_id: str, limit: int = 50) -> List[StateTransition]:
        return (
            self.db.query(StateTransition)
            .filter(StateTransition.user_id == user_id)
            .order_by(StateTransition.created_at.desc())
            .limit(limit)
            .all()
        )

    def get_transition_stats(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> Dict[str, Any]:
        query = self.db.query(StateTransition)
        if start is not None:
            query = query.filter(StateTransition.created_at >= start)
        if end is not None:
            query = query.filter(StateTransition.created_at <= end)

        stats: Dict[str, Any] = {
            "total_transitions": 0,
            "transitions_by_trigger": {},
            "response_type_distribution": {},
            "unprompted_returns": 0,
            "average_days_inactive": 0,
        }
        total_days = 0
        days_count = 0

        for row in query.all():
            stats["total_transitions"] += 1
            by_trigger = stats["transitions_by_trigger"]
            by_trigger[row.trigger] = by_trigger.get(row.trigger, 0) + 1

            meta = row.transition_metadata or {}
            response_type = meta.get("response_type")
            if response_type:
                distribution = stats["response_type_distribution"]
                distribution[response_type] = distribution.get(response_type, 0) + 1
            if meta.get("unprompted_return"):
                stats["unprompted_returns"] += 1
            if isinstance(meta.get("days_inactive"), (int, float)):
                total_days += meta["days_inactive"]
                days_count += 1

        if days_count:
            stats["average_days_inactive"] = round(total_days / days_count)
        return stats
