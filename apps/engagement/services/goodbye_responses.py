"""
Goodbye Menu Responses

Classifies a free-text reply to the goodbye check-in and applies the
matching lifecycle transition.

The pattern table is keyed by (locale, canonical response). Adding a locale
or a synonym is a data change: append to GOODBYE_RESPONSE_PATTERNS.
Text is normalized once (trim, case-fold, diacritic-fold) before matching,
which also turns keycap emoji like "1️⃣" into their bare digit.
"""
import logging
import re
import unicodedata
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Pattern, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.clock import SystemClock
from models import EngagementState
from services.engagement_constants import (
    EngagementStatus,
    HELP_RESTART_MESSAGE_KEY,
    MessageType,
    Trigger,
)
from services.localization import Localizer, normalize_locale
from services.message_outbox import MessageOutbox, QueueMessageParams, get_idempotency_key

logger = logging.getLogger(__name__)


class GoodbyeResponse(str, Enum):
    CONFUSED = "confused"
    BUSY = "busy"
    ALL_GOOD = "all_good"


# "*" rows apply to every locale.
GOODBYE_RESPONSE_PATTERNS: Dict[Tuple[str, GoodbyeResponse], Tuple[str, ...]] = {
    ("*", GoodbyeResponse.CONFUSED): (r"1",),
    ("*", GoodbyeResponse.BUSY): (r"2",),
    ("*", GoodbyeResponse.ALL_GOOD): (r"3",),
    ("pt-BR", GoodbyeResponse.CONFUSED): (r"confuso", r"confusa"),
    ("pt-BR", GoodbyeResponse.BUSY): (r"ocupado", r"ocupada"),
    ("pt-BR", GoodbyeResponse.ALL_GOOD): (r"tudo\s*certo",),
    ("en", GoodbyeResponse.CONFUSED): (r"confused",),
    ("en", GoodbyeResponse.BUSY): (r"busy",),
    ("en", GoodbyeResponse.ALL_GOOD): (r"all\s*good",),
}

TRIGGER_FOR_RESPONSE: Dict[GoodbyeResponse, Trigger] = {
    GoodbyeResponse.CONFUSED: Trigger.GOODBYE_RESPONSE_1,
    GoodbyeResponse.BUSY: Trigger.GOODBYE_RESPONSE_2,
    GoodbyeResponse.ALL_GOOD: Trigger.GOODBYE_RESPONSE_3,
}

CONFIRMATION_KEYS: Dict[GoodbyeResponse, str] = {
    GoodbyeResponse.CONFUSED: "engagement.goodbye_response_1",
    GoodbyeResponse.BUSY: "engagement.goodbye_response_2",
    GoodbyeResponse.ALL_GOOD: "engagement.goodbye_response_3",
}


def normalize_response_text(text: str) -> str:
    """Trim, case-fold and strip combining marks (accents, keycaps, variation selectors)."""
    decomposed = unicodedata.normalize("NFKD", text.strip().casefold())
    return "".join(ch for ch in decomposed if not unicodedata.category(ch).startswith("M"))


def _compile_table(
    table: Dict[Tuple[str, GoodbyeResponse], Tuple[str, ...]]
) -> List[Tuple[GoodbyeResponse, Pattern]]:
    compiled = []
    for (_locale, response), patterns in table.items():
        for pattern in patterns:
            # Patterns are folded the same way as the input so "confusão"-style
            # synonyms can be written with their accents.
            compiled.append((response, re.compile(normalize_response_text(pattern))))
    return compiled


_COMPILED_PATTERNS = _compile_table(GOODBYE_RESPONSE_PATTERNS)


def is_goodbye_response(text: Optional[str]) -> Optional[GoodbyeResponse]:
    """Return the canonical menu choice for a reply, or None if it is not one."""
    if not text:
        return None
    normalized = normalize_response_text(text)
    if not normalized:
        return None
    for response, pattern in _COMPILED_PATTERNS:
        if pattern.fullmatch(normalized):
            return response
    return None


@dataclass
class GoodbyeHandlingResult:
    should_process_normally: bool
    response_text: Optional[str] = None
    response: Optional[GoodbyeResponse] = None
    new_state: Optional[str] = None
    error: Optional[str] = None


class GoodbyeResponseHandler:
    """
    Applies a classified goodbye reply for a user in goodbye_sent.

    Users in any other state get should_process_normally=True so the
    message flows through the regular intent pipeline.
    """

    def __init__(
        self,
        db: Session,
        state_machine,
        outbox: MessageOutbox,
        resolver,
        localizer: Optional[Localizer] = None,
        clock=None,
    ):
        self.db = db
        self.state_machine = state_machine
        self.outbox = outbox
        self.resolver = resolver
        self.localizer = localizer or Localizer()
        self.clock = clock or SystemClock()

    def process_goodbye_response(
        self,
        user_id: str,
        response: GoodbyeResponse,
        locale: Optional[str] = None,
    ) -> GoodbyeHandlingResult:
        try:
            row = self.db.query(EngagementState).filter(EngagementState.user_id == user_id).first()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Goodbye response lookup failed for user {user_id}: {e}")
            return GoodbyeHandlingResult(should_process_normally=True, error=str(e))

        if row is None or row.state != EngagementStatus.GOODBYE_SENT.value:
            return GoodbyeHandlingResult(should_process_normally=True)

        response = GoodbyeResponse(response)
        result = self.state_machine.transition(
            user_id,
            TRIGGER_FOR_RESPONSE[response],
            {"response_type": response.value},
        )
        if not result.success:
            logger.warning(f"Goodbye response {response.value} for user {user_id} not applied: {result.error}")
            return GoodbyeHandlingResult(
                should_process_normally=True,
                response=response,
                error=result.error,
            )

        if response == GoodbyeResponse.CONFUSED:
            self._queue_help_restart(user_id)

        locale = normalize_locale(locale)
        return GoodbyeHandlingResult(
            should_process_normally=False,
            response_text=self.localizer.get_message(CONFIRMATION_KEYS[response], locale),
            response=response,
            new_state=result.new_state,
        )

    def _queue_help_restart(self, user_id: str) -> bool:
        destination = self.resolver.get_message_destination(user_id)
        if destination is None:
            logger.warning(f"No destination for help restart message, user {user_id}")
            return False
        now = self.clock.now()
        return self.outbox.queue_message(QueueMessageParams(
            user_id=user_id,
            message_type=MessageType.HELP_RESTART.value,
            message_key=HELP_RESTART_MESSAGE_KEY,
            destination=destination.destination,
            destination_jid=destination.destination_jid,
            scheduled_for=now,
            idempotency_key=get_idempotency_key(user_id, MessageType.HELP_RESTART.value, now),
        ))
