"""
Onboarding Tier Progress

Tracks which product actions a user has performed and detects when a tier
(a bundle of actions) becomes complete. Independent of the engagement
state machine.

There is no gating: any action may be recorded first, and an action counts
toward every tier that lists it (edit_category is in tiers 1 and 3).
Action flags never flip back to False and completed_at is set once per tier,
so re-recording is always a no-op for completion detection.
"""
import logging
from dataclasses import dataclass, fields
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.clock import SystemClock
from core.exceptions import PersistenceError
from models import UserActionEvent, UserProfile
from services.engagement_analytics import safe_track
from services.engagement_constants import EVENT_TIER_COMPLETED, MessageType, TIER_UNLOCK_MESSAGE_KEYS
from services.message_outbox import QueueMessageParams

logger = logging.getLogger(__name__)


class OnboardingAction(str, Enum):
    ADD_EXPENSE = "add_expense"
    EDIT_CATEGORY = "edit_category"
    DELETE_EXPENSE = "delete_expense"
    ADD_CATEGORY = "add_category"
    SET_BUDGET = "set_budget"
    ADD_RECURRING = "add_recurring"
    LIST_CATEGORIES = "list_categories"
    VIEW_REPORT = "view_report"


def _parse_ts(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass
class _TierRecord:
    number: ClassVar[int]
    actions: ClassVar[Tuple[OnboardingAction, ...]]

    completed_at: Optional[datetime] = None

    def mark(self, action: OnboardingAction) -> bool:
        """Set the action's flag if this tier defines it. Returns whether it applied."""
        if action not in self.actions:
            return False
        setattr(self, action.value, True)
        return True

    def is_complete(self) -> bool:
        return all(getattr(self, action.value) for action in self.actions)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {action.value: getattr(self, action.value) for action in self.actions}
        data["completed_at"] = self.completed_at.isoformat() if self.completed_at else None
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]):
        data = data or {}
        known = {f.name for f in fields(cls)}
        kwargs = {k: bool(v) for k, v in data.items() if k in known and k != "completed_at"}
        return cls(completed_at=_parse_ts(data.get("completed_at")), **kwargs)


@dataclass
class Tier1Progress(_TierRecord):
    number: ClassVar[int] = 1
    actions: ClassVar[Tuple[OnboardingAction, ...]] = (
        OnboardingAction.ADD_EXPENSE,
        OnboardingAction.EDIT_CATEGORY,
        OnboardingAction.DELETE_EXPENSE,
        OnboardingAction.ADD_CATEGORY,
    )

    add_expense: bool = False
    edit_category: bool = False
    delete_expense: bool = False
    add_category: bool = False


@dataclass
class Tier2Progress(_TierRecord):
    number: ClassVar[int] = 2
    actions: ClassVar[Tuple[OnboardingAction, ...]] = (
        OnboardingAction.SET_BUDGET,
        OnboardingAction.ADD_RECURRING,
        OnboardingAction.LIST_CATEGORIES,
    )

    set_budget: bool = False
    add_recurring: bool = False
    list_categories: bool = False


@dataclass
class Tier3Progress(_TierRecord):
    number: ClassVar[int] = 3
    actions: ClassVar[Tuple[OnboardingAction, ...]] = (
        OnboardingAction.EDIT_CATEGORY,
        OnboardingAction.VIEW_REPORT,
    )

    edit_category: bool = False
    view_report: bool = False


@dataclass
class TierProgress:
    """Typed form of user_profiles.onboarding_tier_progress."""

    tier1: Tier1Progress
    tier2: Tier2Progress
    tier3: Tier3Progress

    @classmethod
    def empty(cls) -> "TierProgress":
        return cls(Tier1Progress(), Tier2Progress(), Tier3Progress())

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "TierProgress":
        data = data or {}
        return cls(
            tier1=Tier1Progress.from_dict(data.get("tier1")),
            tier2=Tier2Progress.from_dict(data.get("tier2")),
            tier3=Tier3Progress.from_dict(data.get("tier3")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier1": self.tier1.to_dict(),
            "tier2": self.tier2.to_dict(),
            "tier3": self.tier3.to_dict(),
        }

    @property
    def tiers(self) -> Tuple[_TierRecord, ...]:
        return (self.tier1, self.tier2, self.tier3)

    def record(self, action: OnboardingAction, now: datetime) -> List[int]:
        """Mark the action everywhere it counts; return tier numbers completed by this call."""
        newly_completed = []
        for tier in self.tiers:
            tier.mark(action)
            if tier.completed_at is None and tier.is_complete():
                tier.completed_at = now
                newly_completed.append(tier.number)
        return newly_completed

    def completed_tiers(self) -> List[int]:
        return [tier.number for tier in self.tiers if tier.completed_at is not None]

    def highest_completed_tier(self) -> int:
        return max(self.completed_tiers(), default=0)


@dataclass
class TierUpdate:
    action: str
    tier_completed: Optional[int] = None
    should_send_unlock: bool = False


def reset_onboarding_progress(db: Session, user_id: str) -> bool:
    """
    Restart onboarding from scratch: tier 0, no recorded actions, tips on.

    Commits. Returns False when the profile is missing.
    """
    updated = (
        db.query(UserProfile)
        .filter(UserProfile.user_id == user_id)
        .update({
            "onboarding_tier": 0,
            "onboarding_tier_progress": {},
            "onboarding_tips_enabled": True,
        })
    )
    db.commit()
    return bool(updated)


class TierProgressTracker:
    def __init__(self, db: Session, clock=None, analytics=None, outbox=None, resolver=None):
        self.db = db
        self.clock = clock or SystemClock()
        self.analytics = analytics
        self.outbox = outbox
        self.resolver = resolver

    def record_action(self, user_id: str, action: str) -> TierUpdate:
        """
        Record one product action and report a newly completed tier.

        When a single action completes several tiers at once the highest is
        reported. Raises PersistenceError when the write fails; callers on
        the message path wrap this call.
        """
        action = OnboardingAction(action)
        result = TierUpdate(action=action.value)

        profile = self.db.get(UserProfile, user_id)
        if profile is None:
            logger.warning(f"No profile for user {user_id}, tier action {action.value} not recorded")
            return result

        now = self.clock.now()
        progress = TierProgress.from_dict(profile.onboarding_tier_progress)
        newly_completed = progress.record(action, now)

        profile.onboarding_tier_progress = progress.to_dict()
        profile.onboarding_tier = progress.highest_completed_tier()
        self.db.add(UserActionEvent(user_id=user_id, action=action.value, created_at=now))
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Failed to record {action.value} for user {user_id}: {e}") from e

        if newly_completed:
            result.tier_completed = max(newly_completed)
            result.should_send_unlock = True
            for tier_number in newly_completed:
                try:
                    self._track_completion(profile, progress, tier_number, now)
                except Exception as e:
                    logger.warning(f"Tier completion analytics failed for user {user_id}: {e}")
            logger.info(f"User {user_id} completed onboarding tier(s) {newly_completed}")

        return result

    def record_action_and_notify(self, user_id: str, action: str) -> TierUpdate:
        """record_action, then queue the unlock celebration if tips are on."""
        result = self.record_action(user_id, action)
        if not result.should_send_unlock or result.tier_completed is None:
            return result
        if not self.are_tips_enabled(user_id):
            logger.info(f"Tips disabled for user {user_id}, skipping tier {result.tier_completed} unlock message")
            return result
        self._queue_unlock(user_id, result.tier_completed)
        return result

    def get_tier_progress(self, user_id: str) -> TierProgress:
        profile = self.db.get(UserProfile, user_id)
        if profile is None:
            return TierProgress.empty()
        return TierProgress.from_dict(profile.onboarding_tier_progress)

    def record_magic_moment(self, user_id: str, was_nlp_parsed: bool) -> bool:
        """Stamp magic_moment_at on the first NLP-parsed action. Returns True if set now."""
        if not was_nlp_parsed:
            return False
        try:
            updated = (
                self.db.query(UserProfile)
                .filter(UserProfile.user_id == user_id, UserProfile.magic_moment_at.is_(None))
                .update({"magic_moment_at": self.clock.now()})
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to record magic moment for user {user_id}: {e}")
            return False
        return bool(updated)

    def are_tips_enabled(self, user_id: str) -> bool:
        try:
            profile = self.db.get(UserProfile, user_id)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning(f"Tips lookup failed for user {user_id}, assuming enabled: {e}")
            return True
        if profile is None or profile.onboarding_tips_enabled is None:
            return True
        return bool(profile.onboarding_tips_enabled)

    def _queue_unlock(self, user_id: str, tier: int) -> bool:
        if self.outbox is None or self.resolver is None:
            return False
        destination = self.resolver.get_message_destination(user_id)
        if destination is None:
            logger.warning(f"No destination for tier {tier} unlock, user {user_id}")
            return False
        return self.outbox.queue_message(QueueMessageParams(
            user_id=user_id,
            message_type=MessageType.TIER_UNLOCK.value,
            message_key=TIER_UNLOCK_MESSAGE_KEYS[tier],
            message_params={"tier": tier},
            destination=destination.destination,
            destination_jid=destination.destination_jid,
            scheduled_for=self.clock.now(),
            # One celebration per tier, ever
            idempotency_key=f"{user_id}:tier_unlock:{tier}",
        ))

    def _track_completion(self, profile: UserProfile, progress: TierProgress, tier_number: int, now: datetime) -> None:
        properties: Dict[str, Any] = {"tier": tier_number, "completed_at": now.isoformat()}
        if profile.created_at is not None:
            properties["days_since_signup"] = (now - profile.created_at).days
        previous = [t.completed_at for t in progress.tiers if t.number < tier_number and t.completed_at]
        start = max(previous) if previous else profile.created_at
        if start is not None:
            properties["time_to_complete_days"] = (now - start).days
        safe_track(self.analytics, EVENT_TIER_COMPLETED, profile.user_id, properties)
