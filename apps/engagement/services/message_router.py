"""
Message destination routing.

Decides whether proactive messages go to the user's private chat or to the
group they use the bot from. Resolved fresh at send time because the user
can switch preference after a message was queued.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import UserProfile
from services.engagement_constants import Destination

logger = logging.getLogger(__name__)


@dataclass
class MessageDestination:
    destination: str
    destination_jid: str
    fallback_used: bool = False


class DestinationResolver:
    def __init__(self, db: Session):
        self.db = db

    def get_message_destination(self, user_id: str) -> Optional[MessageDestination]:
        """
        Resolve where proactive messages for a user should go.

        A group preference without a known group JID falls back to the
        private chat. Returns None when the user has no reachable JID at all.
        """
        try:
            profile = self.db.get(UserProfile, user_id)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Destination lookup failed for user {user_id}: {e}")
            return None

        if profile is None:
            logger.warning(f"No profile for user {user_id}, cannot route message")
            return None

        if profile.preferred_destination == Destination.GROUP.value:
            if profile.preferred_group_jid:
                return MessageDestination(
                    destination=Destination.GROUP.value,
                    destination_jid=profile.preferred_group_jid,
                )
            logger.warning(f"User {user_id} prefers group delivery but has no group JID, using individual")
            if not profile.whatsapp_jid:
                return None
            return MessageDestination(
                destination=Destination.INDIVIDUAL.value,
                destination_jid=profile.whatsapp_jid,
                fallback_used=True,
            )

        if not profile.whatsapp_jid:
            logger.warning(f"User {user_id} has no WhatsApp JID")
            return None
        return MessageDestination(
            destination=Destination.INDIVIDUAL.value,
            destination_jid=profile.whatsapp_jid,
        )

    def set_preferred_destination(
        self,
        user_id: str,
        destination: str,
        group_jid: Optional[str] = None,
    ) -> bool:
        destination = Destination(destination)
        if destination == Destination.GROUP and not group_jid:
            logger.warning(f"Group destination requested without group JID for user {user_id}")
            return False

        values = {"preferred_destination": destination.value}
        if destination == Destination.GROUP:
            values["preferred_group_jid"] = group_jid

        try:
            updated = (
                self.db.query(UserProfile)
                .filter(UserProfile.user_id == user_id)
                .update(values)
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to set destination for user {user_id}: {e}")
            return False

        if not updated:
            logger.warning(f"No profile to update destination for user {user_id}")
        return bool(updated)

    def auto_detect_destination(
        self,
        user_id: str,
        is_group: bool,
        group_jid: Optional[str] = None,
    ) -> bool:
        """
        Record the chat type of the user's first contact as their preference.

        Never overrides an explicit choice. Returns True when a preference
        was written.
        """
        if is_group and not group_jid:
            return False
        destination = Destination.GROUP if is_group else Destination.INDIVIDUAL
        values = {"preferred_destination": destination.value}
        if is_group:
            values["preferred_group_jid"] = group_jid

        try:
            updated = (
                self.db.query(UserProfile)
                .filter(
                    UserProfile.user_id == user_id,
                    UserProfile.preferred_destination.is_(None),
                )
                .update(values)
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Destination auto-detect failed for user {user_id}: {e}")
            return False
        return bool(updated)
