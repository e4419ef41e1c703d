"""
User outreach preferences: onboarding tips and re-engagement opt-out.

Commands are matched against a small table of pt-BR and en phrasings
after the same normalization the goodbye parser uses.
"""
import logging
import re
from typing import Dict, Optional, Pattern, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import UserProfile
from services.goodbye_responses import normalize_response_text
from services.localization import Localizer

logger = logging.getLogger(__name__)

TIP_COMMAND_PATTERNS: Dict[str, Tuple[str, ...]] = {
    "disable": (r"parar\s*dicas", r"stop\s*tips", r"desativar\s*dicas", r"disable\s*tips"),
    "enable": (r"ativar\s*dicas", r"enable\s*tips", r"start\s*tips", r"ligar\s*dicas"),
}

REENGAGEMENT_COMMAND_PATTERNS: Dict[str, Tuple[str, ...]] = {
    "opt_out": (r"parar\s*lembretes", r"stop\s*reminders", r"desativar\s*lembretes", r"disable\s*reminders"),
    "opt_in": (r"ativar\s*lembretes", r"start\s*reminders", r"enable\s*reminders", r"ligar\s*lembretes"),
}


def _compile(table: Dict[str, Tuple[str, ...]]) -> Tuple[Tuple[str, Pattern], ...]:
    return tuple(
        (command, re.compile(pattern))
        for command, patterns in table.items()
        for pattern in patterns
    )


_TIP_PATTERNS = _compile(TIP_COMMAND_PATTERNS)
_REENGAGEMENT_PATTERNS = _compile(REENGAGEMENT_COMMAND_PATTERNS)


def _match(text: Optional[str], patterns) -> Optional[str]:
    if not text:
        return None
    normalized = normalize_response_text(text)
    for command, pattern in patterns:
        if pattern.fullmatch(normalized):
            return command
    return None


def is_tip_command(text: Optional[str]) -> Optional[str]:
    """'enable', 'disable' or None."""
    return _match(text, _TIP_PATTERNS)


def is_reengagement_command(text: Optional[str]) -> Optional[str]:
    """'opt_out', 'opt_in' or None."""
    return _match(text, _REENGAGEMENT_PATTERNS)


class PreferenceService:
    def __init__(self, db: Session, localizer: Optional[Localizer] = None):
        self.db = db
        self.localizer = localizer or Localizer()

    def _update_profile(self, user_id: str, values: dict) -> bool:
        try:
            updated = (
                self.db.query(UserProfile)
                .filter(UserProfile.user_id == user_id)
                .update(values)
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to update preferences for user {user_id}: {e}")
            return False
        return bool(updated)

    def set_tips_enabled(self, user_id: str, enabled: bool) -> bool:
        ok = self._update_profile(user_id, {"onboarding_tips_enabled": enabled})
        if ok:
            logger.info(f"Tip preference updated for user {user_id}: enabled={enabled}")
        return ok

    def set_reengagement_opt_out(self, user_id: str, opted_out: bool) -> bool:
        ok = self._update_profile(user_id, {"reengagement_opt_out": opted_out})
        if ok:
            logger.info(f"Re-engagement opt-out updated for user {user_id}: opted_out={opted_out}")
        return ok

    def handle_preference_command(self, user_id: str, text: str, locale: Optional[str] = None) -> Optional[str]:
        """
        Apply a tip or reminder command if the text is one.

        Returns the localized confirmation to send back, or None when the
        text is not a preference command.
        """
        tip_command = is_tip_command(text)
        if tip_command:
            enabled = tip_command == "enable"
            if not self.set_tips_enabled(user_id, enabled):
                return self.localizer.get_message("engagement.preference_error", locale)
            key = "engagement.tips_enabled" if enabled else "engagement.tips_disabled"
            return self.localizer.get_message(key, locale)

        reengagement_command = is_reengagement_command(text)
        if reengagement_command:
            opted_out = reengagement_command == "opt_out"
            if not self.set_reengagement_opt_out(user_id, opted_out):
                return self.localizer.get_message("engagement.preference_error", locale)
            key = "engagement.opt_out_confirmed" if opted_out else "engagement.opt_in_confirmed"
            return self.localizer.get_message(key, locale)

        return None
