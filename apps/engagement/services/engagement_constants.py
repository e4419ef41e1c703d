"""
Engagement lifecycle vocabulary.

States, triggers, message types and the transition table shared by the
state machine, the activity tracker and the scheduled sweeps.
"""
from enum import Enum
from typing import Dict, FrozenSet, Tuple


class EngagementStatus(str, Enum):
    ACTIVE = "active"
    GOODBYE_SENT = "goodbye_sent"
    REMIND_LATER = "remind_later"
    DORMANT = "dormant"
    HELP_FLOW = "help_flow"


class Trigger(str, Enum):
    INACTIVITY_14D = "inactivity_14d"
    GOODBYE_TIMEOUT = "goodbye_timeout"
    REMINDER_DUE = "reminder_due"
    GOODBYE_RESPONSE_1 = "goodbye_response_1"
    GOODBYE_RESPONSE_2 = "goodbye_response_2"
    GOODBYE_RESPONSE_3 = "goodbye_response_3"
    USER_MESSAGE = "user_message"


class MessageType(str, Enum):
    WELCOME = "welcome"
    TIER_UNLOCK = "tier_unlock"
    GOODBYE = "goodbye"
    WEEKLY_REVIEW = "weekly_review"
    REMINDER = "reminder"
    HELP_RESTART = "help_restart"


class Destination(str, Enum):
    INDIVIDUAL = "individual"
    GROUP = "group"


# trigger -> (valid from-states, target state)
TRANSITIONS: Dict[Trigger, Tuple[FrozenSet[EngagementStatus], EngagementStatus]] = {
    Trigger.INACTIVITY_14D: (
        frozenset({EngagementStatus.ACTIVE}),
        EngagementStatus.GOODBYE_SENT,
    ),
    Trigger.GOODBYE_TIMEOUT: (
        frozenset({EngagementStatus.GOODBYE_SENT}),
        EngagementStatus.DORMANT,
    ),
    Trigger.REMINDER_DUE: (
        frozenset({EngagementStatus.REMIND_LATER}),
        EngagementStatus.DORMANT,
    ),
    # Lands in help_flow, then the machine immediately re-enters active.
    Trigger.GOODBYE_RESPONSE_1: (
        frozenset({EngagementStatus.GOODBYE_SENT}),
        EngagementStatus.HELP_FLOW,
    ),
    Trigger.GOODBYE_RESPONSE_2: (
        frozenset({EngagementStatus.GOODBYE_SENT}),
        EngagementStatus.REMIND_LATER,
    ),
    Trigger.GOODBYE_RESPONSE_3: (
        frozenset({EngagementStatus.GOODBYE_SENT}),
        EngagementStatus.DORMANT,
    ),
    Trigger.USER_MESSAGE: (
        frozenset({
            EngagementStatus.DORMANT,
            EngagementStatus.GOODBYE_SENT,
            EngagementStatus.REMIND_LATER,
            EngagementStatus.HELP_FLOW,
        }),
        EngagementStatus.ACTIVE,
    ),
}

# States a user_message "returns" from; transitions out of these carry
# reactivation_source and days_inactive.
REACTIVATION_STATES = frozenset({
    EngagementStatus.DORMANT,
    EngagementStatus.GOODBYE_SENT,
    EngagementStatus.REMIND_LATER,
})

# Triggers fired from the inbound-message path rather than a scheduled sweep.
USER_TRIGGERS = frozenset({
    Trigger.USER_MESSAGE,
    Trigger.GOODBYE_RESPONSE_1,
    Trigger.GOODBYE_RESPONSE_2,
    Trigger.GOODBYE_RESPONSE_3,
})

# Analytics response_type for the goodbye menu outcomes.
GOODBYE_RESPONSE_TYPES: Dict[Trigger, str] = {
    Trigger.GOODBYE_RESPONSE_1: "confused",
    Trigger.GOODBYE_RESPONSE_2: "busy",
    Trigger.GOODBYE_RESPONSE_3: "all_good",
    Trigger.GOODBYE_TIMEOUT: "timeout",
}

# Event types bucketed by ISO week instead of calendar day.
WEEKLY_EVENT_TYPES = frozenset({MessageType.WEEKLY_REVIEW.value})

# Message keys rendered by services.localization
GOODBYE_MESSAGE_KEY = "engagement.goodbye_self_select"
HELP_RESTART_MESSAGE_KEY = "engagement.help_restart"
WEEKLY_REVIEW_MESSAGE_KEY = "engagement.weekly_review_celebration"
TIER_UNLOCK_MESSAGE_KEYS: Dict[int, str] = {
    1: "engagement.tier_1_complete",
    2: "engagement.tier_2_complete",
    3: "engagement.tier_3_complete",
}

# Analytics event names
EVENT_STATE_CHANGED = "engagement_state_changed"
EVENT_GOODBYE_RESPONSE = "engagement_goodbye_response"
EVENT_UNPROMPTED_RETURN = "engagement_unprompted_return"
EVENT_TIER_COMPLETED = "onboarding_tier_completed"
EVENT_WEEKLY_REVIEW_SENT = "engagement_weekly_review_sent"
