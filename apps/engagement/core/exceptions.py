"""
Engagement error taxonomy.

Components raise these internally; public operations convert them into
result objects or safe defaults so that callers on the inbound-message path
never see an exception from this subsystem.
"""
from typing import Optional


class EngagementError(Exception):
    """Base class for engagement subsystem errors."""


class GuardViolation(EngagementError):
    """A trigger was fired against a state it is not valid from."""

    def __init__(self, trigger: str, current_state: Optional[str]):
        self.trigger = trigger
        self.current_state = current_state
        super().__init__(
            f"Invalid transition: trigger '{trigger}' is not valid from state '{current_state}'"
        )


class TransientDeliveryError(EngagementError):
    """The transport failed to deliver a message. Retried up to the outbox cap."""


class PersistenceError(EngagementError):
    """Storage was unavailable or rejected a write."""


class NotFoundError(EngagementError):
    """A profile, state row or destination does not exist."""

    def __init__(self, resource: str, identifier: str):
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} not found: {identifier}")
