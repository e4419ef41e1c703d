"""
Activity Tracker

Called for every inbound user message before intent handling. Records
liveness and auto-reactivates users who come back from dormant,
goodbye_sent or remind_later.

Fail-open: any storage error returns a "normal returning active user"
result instead of raising, so engagement tracking can never block
message processing.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from core.clock import SystemClock
from core.config import settings
from core.exceptions import PersistenceError
from models import EngagementState
from services.engagement_constants import Destination, EngagementStatus, Trigger
from services.engagement_state_machine import days_between
from services.goodbye_responses import is_goodbye_response

logger = logging.getLogger(__name__)


@dataclass
class MessageContext:
    message_text: Optional[str] = None
    is_group: bool = False
    group_jid: Optional[str] = None


@dataclass
class ActivityResult:
    user_id: str
    is_first_message: bool
    engagement_state: str
    reactivated: bool = False
    previous_state: Optional[str] = None
    preferred_destination: str = Destination.INDIVIDUAL.value


class ActivityTracker:
    def __init__(self, db: Session, state_machine, resolver=None, clock=None):
        self.db = db
        self.state_machine = state_machine
        self.resolver = resolver
        self.clock = clock or SystemClock()

    def check_and_record_activity(self, user_id: str, context: Optional[MessageContext] = None) -> ActivityResult:
        context = context or MessageContext()
        preferred = Destination.GROUP.value if context.is_group else Destination.INDIVIDUAL.value

        try:
            return self._check_and_record(user_id, context, preferred)
        except Exception as e:
            try:
                self.db.rollback()
            except Exception as rollback_error:
                logger.debug(f"Rollback after tracking failure also failed: {rollback_error}")
            logger.error(f"Activity tracking failed for user {user_id}, failing open: {e}")
            return ActivityResult(
                user_id=user_id,
                is_first_message=False,
                engagement_state=EngagementStatus.ACTIVE.value,
                preferred_destination=preferred,
            )

    def _check_and_record(self, user_id: str, context: MessageContext, preferred: str) -> ActivityResult:
        row = (
            self.db.query(EngagementState)
            .filter(EngagementState.user_id == user_id)
            .populate_existing()
            .first()
        )

        if row is None:
            result = self.state_machine.transition(user_id, Trigger.USER_MESSAGE, {"first_message": True})
            if not result.success:
                raise PersistenceError(result.error or "state initialization failed")
            self._auto_detect_destination(user_id, context)
            logger.info(f"First message from user {user_id}, engagement state initialized")
            return ActivityResult(
                user_id=user_id,
                is_first_message=True,
                engagement_state=EngagementStatus.ACTIVE.value,
                preferred_destination=preferred,
            )

        now = self.clock.now()
        previous = row.state
        days_inactive = days_between(row.last_activity_at, now)

        (
            self.db.query(EngagementState)
            .filter(EngagementState.user_id == user_id)
            .update({"last_activity_at": now, "updated_at": now})
        )
        self.db.commit()

        is_menu_response = is_goodbye_response(context.message_text) is not None
        if previous == EngagementStatus.DORMANT.value:
            source = "dormant"
        elif previous in (EngagementStatus.GOODBYE_SENT.value, EngagementStatus.REMIND_LATER.value) and not is_menu_response:
            source = "non_response_message"
        else:
            # Active, help_flow, or a goodbye-menu reply left for the goodbye handler
            return ActivityResult(
                user_id=user_id,
                is_first_message=False,
                engagement_state=previous,
                previous_state=previous,
                preferred_destination=preferred,
            )

        metadata = {
            "unprompted_return": days_inactive >= settings.ENGAGEMENT_UNPROMPTED_RETURN_DAYS,
            "days_inactive": days_inactive,
            "reactivation_source": source,
        }
        result = self.state_machine.transition(user_id, Trigger.USER_MESSAGE, metadata)
        if not result.success:
            logger.warning(f"Reactivation of user {user_id} from {previous} failed: {result.error}")

        return ActivityResult(
            user_id=user_id,
            is_first_message=False,
            engagement_state=result.new_state if result.success else previous,
            reactivated=result.success,
            previous_state=previous,
            preferred_destination=preferred,
        )

    def _auto_detect_destination(self, user_id: str, context: MessageContext) -> None:
        if self.resolver is None:
            return
        try:
            self.resolver.auto_detect_destination(user_id, context.is_group, context.group_jid)
        except Exception as e:
            logger.warning(f"Destination auto-detect failed for user {user_id}: {e}")
