"""
Wiring for the engagement components.

Every component receives its collaborators through its constructor; this
module is the one place that picks the production implementations.
"""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from core.clock import SystemClock
from services.activity_tracker import ActivityTracker
from services.engagement_analytics import BackgroundAnalytics
from services.engagement_preferences import PreferenceService
from services.engagement_state_machine import EngagementStateMachine
from services.goodbye_responses import GoodbyeResponseHandler
from services.localization import Localizer
from services.message_outbox import MessageOutbox
from services.message_router import DestinationResolver
from services.outbox_processor import OutboxProcessor
from services.tier_progress import TierProgressTracker
from services.transport import HttpBridgeTransport


@dataclass
class EngagementServices:
    db: Session
    clock: object
    analytics: object
    transport: object
    localizer: Localizer
    resolver: DestinationResolver
    outbox: MessageOutbox
    state_machine: EngagementStateMachine
    processor: OutboxProcessor
    activity_tracker: ActivityTracker
    tier_tracker: TierProgressTracker
    goodbye_handler: GoodbyeResponseHandler
    preferences: PreferenceService


def build_engagement_services(
    db: Session,
    clock=None,
    transport=None,
    analytics=None,
    localizer: Optional[Localizer] = None,
    send_delay_ms: Optional[int] = None,
    outbox_lock=None,
) -> EngagementServices:
    clock = clock or SystemClock()
    transport = transport if transport is not None else HttpBridgeTransport()
    analytics = analytics if analytics is not None else BackgroundAnalytics()
    localizer = localizer or Localizer()

    resolver = DestinationResolver(db)
    outbox = MessageOutbox(db, clock)
    state_machine = EngagementStateMachine(
        db, outbox=outbox, resolver=resolver, analytics=analytics, clock=clock
    )
    processor = OutboxProcessor(
        db, transport, resolver, localizer=localizer, clock=clock,
        send_delay_ms=send_delay_ms, lock=outbox_lock,
    )

    return EngagementServices(
        db=db,
        clock=clock,
        analytics=analytics,
        transport=transport,
        localizer=localizer,
        resolver=resolver,
        outbox=outbox,
        state_machine=state_machine,
        processor=processor,
        activity_tracker=ActivityTracker(db, state_machine, resolver=resolver, clock=clock),
        tier_tracker=TierProgressTracker(
            db, clock=clock, analytics=analytics, outbox=outbox, resolver=resolver
        ),
        goodbye_handler=GoodbyeResponseHandler(
            db, state_machine, outbox, resolver, localizer=localizer, clock=clock
        ),
        preferences=PreferenceService(db, localizer=localizer),
    )
