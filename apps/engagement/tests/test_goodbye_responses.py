"""
Goodbye menu reply tests: the text classifier and the handler that
applies the matching lifecycle transition.
"""
import pytest
import sys
import os
from datetime import timedelta

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from models import EngagementState, QueuedMessage
from services.goodbye_responses import (
    GoodbyeResponse,
    is_goodbye_response,
    normalize_response_text,
)


class TestParser:
    @pytest.mark.parametrize("text", ["1", "1️⃣", "confuso", "CONFUSED", " 1 ", "Confusa"])
    def test_confused(self, text):
        assert is_goodbye_response(text) == GoodbyeResponse.CONFUSED

    @pytest.mark.parametrize("text", ["2", "2️⃣", "ocupado", "Busy", "OCUPADA"])
    def test_busy(self, text):
        assert is_goodbye_response(text) == GoodbyeResponse.BUSY

    @pytest.mark.parametrize("text", ["3", "3️⃣", "tudo certo", "Tudo Certo", "all good", "allgood"])
    def test_all_good(self, text):
        assert is_goodbye_response(text) == GoodbyeResponse.ALL_GOOD

    @pytest.mark.parametrize("text", ["hello", "4", "11", "", "   ", None, "1 2", "estou confuso hoje"])
    def test_not_a_menu_reply(self, text):
        assert is_goodbye_response(text) is None

    def test_normalization_folds_case_and_accents(self):
        assert normalize_response_text("  ÁÉÎ  ") == "aei"


def _seed_goodbye_sent(db_session, clock, user_id="user-1"):
    db_session.add(EngagementState(
        user_id=user_id,
        state="goodbye_sent",
        last_activity_at=clock.now() - timedelta(days=15),
        goodbye_sent_at=clock.now() - timedelta(hours=3),
        goodbye_expires_at=clock.now() + timedelta(hours=45),
        created_at=clock.now(),
        updated_at=clock.now(),
    ))
    db_session.commit()


class TestGoodbyeResponseHandler:
    def test_confused_restarts_onboarding(self, services, db_session, clock, make_profile):
        make_profile()
        _seed_goodbye_sent(db_session, clock)

        result = services.goodbye_handler.process_goodbye_response("user-1", GoodbyeResponse.CONFUSED, "pt-BR")

        assert result.should_process_normally is False
        assert result.new_state == "active"
        assert "Vou te ajudar a começar de novo" in result.response_text
        message = db_session.query(QueuedMessage).one()
        assert message.message_type == "help_restart"
        assert message.message_key == "engagement.help_restart"

    def test_busy_in_english(self, services, db_session, clock, make_profile):
        make_profile(locale="en")
        _seed_goodbye_sent(db_session, clock)

        result = services.goodbye_handler.process_goodbye_response("user-1", "busy", "en")

        assert result.should_process_normally is False
        assert result.new_state == "remind_later"
        assert result.response_text.startswith("Got it! See you in 2 weeks")

    def test_all_good(self, services, db_session, clock, make_profile):
        make_profile()
        _seed_goodbye_sent(db_session, clock)

        result = services.goodbye_handler.process_goodbye_response("user-1", GoodbyeResponse.ALL_GOOD)

        assert result.new_state == "dormant"
        assert result.response_text.startswith("Tudo certo!")
        assert db_session.query(QueuedMessage).count() == 0

    def test_not_in_goodbye_sent_processes_normally(self, services, db_session, clock, make_profile):
        make_profile()
        db_session.add(EngagementState(
            user_id="user-1", state="active", last_activity_at=clock.now(),
            created_at=clock.now(), updated_at=clock.now(),
        ))
        db_session.commit()

        result = services.goodbye_handler.process_goodbye_response("user-1", GoodbyeResponse.BUSY)

        assert result.should_process_normally is True
        assert result.response_text is None

    def test_unknown_user_processes_normally(self, services):
        result = services.goodbye_handler.process_goodbye_response("nobody", GoodbyeResponse.BUSY)

        assert result.should_process_normally is True
