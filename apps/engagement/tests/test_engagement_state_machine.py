"""
Engagement state machine tests.

Transition table guards, timestamp bookkeeping, side effects (goodbye
message, onboarding reset), the two-step confused flow, and races
between processes updating the same user.
"""
import pytest
import sys
import os
from datetime import timedelta
from unittest.mock import MagicMock, patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from models import EngagementState, QueuedMessage, StateTransition, UserProfile
from services.activity_tracker import MessageContext
from services.engagement_constants import Trigger
from services.engagement_state_machine import CONCURRENT_MODIFICATION_ERROR, days_between


def _seed_state(db_session, clock, user_id="user-1", state="active", **overrides):
    values = {
        "user_id": user_id,
        "state": state,
        "last_activity_at": clock.now(),
        "created_at": clock.now(),
        "updated_at": clock.now(),
    }
    values.update(overrides)
    row = EngagementState(**values)
    db_session.add(row)
    db_session.commit()
    return row


def _state(db_session, user_id="user-1"):
    return (
        db_session.query(EngagementState)
        .filter(EngagementState.user_id == user_id)
        .populate_existing()
        .one()
    )


class TestDaysBetween:
    def test_none_is_zero(self, clock):
        assert days_between(None, clock.now()) == 0

    def test_whole_days(self, clock):
        assert days_between(clock.now() - timedelta(days=14, hours=5), clock.now()) == 14

    def test_never_negative(self, clock):
        assert days_between(clock.now() + timedelta(days=1), clock.now()) == 0


class TestInitialization:
    def test_first_user_message_creates_active_row(self, services, db_session, make_profile):
        make_profile()

        result = services.state_machine.transition("user-1", Trigger.USER_MESSAGE, {"first_message": True})

        assert result.success is True
        assert result.previous_state is None
        assert result.new_state == "active"
        assert result.side_effects == ["initialized_state"]
        assert _state(db_session).state == "active"

        log = db_session.query(StateTransition).one()
        assert log.from_state is None
        assert log.to_state == "active"
        assert log.transition_metadata["first_message"] is True

    def test_other_triggers_need_existing_row(self, services, db_session):
        result = services.state_machine.transition("ghost", Trigger.INACTIVITY_14D)

        assert result.success is False
        assert result.error == "No engagement state found for user ghost"
        assert db_session.query(EngagementState).count() == 0

    def test_unknown_trigger(self, services):
        result = services.state_machine.transition("user-1", "teleport")

        assert result.success is False
        assert "Unknown trigger" in result.error

    def test_get_engagement_state_defaults_to_active(self, services):
        assert services.state_machine.get_engagement_state("nobody") == "active"


class TestGuards:
    @pytest.mark.parametrize("state,trigger", [
        ("active", Trigger.GOODBYE_TIMEOUT),
        ("active", Trigger.GOODBYE_RESPONSE_2),
        ("active", Trigger.USER_MESSAGE),
        ("dormant", Trigger.INACTIVITY_14D),
        ("dormant", Trigger.REMINDER_DUE),
        ("remind_later", Trigger.GOODBYE_TIMEOUT),
        ("goodbye_sent", Trigger.REMINDER_DUE),
    ])
    def test_invalid_trigger_writes_nothing(self, services, db_session, clock, state, trigger):
        _seed_state(db_session, clock, state=state)

        result = services.state_machine.transition("user-1", trigger)

        assert result.success is False
        assert result.previous_state == state
        assert "Invalid transition" in result.error
        assert _state(db_session).state == state
        assert db_session.query(StateTransition).count() == 0


class TestTransitions:
    def test_inactivity_sends_goodbye(self, services, db_session, clock, make_profile):
        make_profile(locale="en")
        _seed_state(db_session, clock, last_activity_at=clock.now() - timedelta(days=14))

        result = services.state_machine.transition("user-1", Trigger.INACTIVITY_14D)

        assert result.success is True
        assert result.previous_state == "active"
        assert result.new_state == "goodbye_sent"
        assert "queued_goodbye_message" in result.side_effects

        row = _state(db_session)
        assert row.goodbye_sent_at == clock.now()
        assert row.goodbye_expires_at == clock.now() + timedelta(hours=48)
        assert row.remind_at is None

        message = db_session.query(QueuedMessage).one()
        assert message.message_type == "goodbye"
        assert message.message_key == "engagement.goodbye_self_select"
        assert message.destination_jid == "user-1@s.whatsapp.net"
        assert message.message_params == {"locale": "en"}
        assert message.idempotency_key == "user-1:goodbye_sent:2025-03-10"

        log = db_session.query(StateTransition).one()
        assert log.transition_metadata["days_inactive"] == 14
        assert log.transition_metadata["trigger_source"] == "scheduler"

    def test_goodbye_without_destination_still_transitions(self, services, db_session, clock, make_profile):
        make_profile(whatsapp_jid=None)
        _seed_state(db_session, clock, last_activity_at=clock.now() - timedelta(days=14))

        result = services.state_machine.transition("user-1", Trigger.INACTIVITY_14D)

        assert result.success is True
        assert result.new_state == "goodbye_sent"
        assert "queued_goodbye_message" not in result.side_effects
        assert db_session.query(QueuedMessage).count() == 0

    def test_goodbye_queue_failure_is_isolated(self, services, db_session, clock, make_profile):
        make_profile()
        _seed_state(db_session, clock, last_activity_at=clock.now() - timedelta(days=14))
        services.outbox.queue_message = MagicMock(side_effect=RuntimeError("outbox down"))

        result = services.state_machine.transition("user-1", Trigger.INACTIVITY_14D)

        assert result.success is True
        assert result.side_effects == []
        assert _state(db_session).state == "goodbye_sent"

    def test_busy_sets_reminder(self, services, db_session, clock, make_profile):
        make_profile()
        _seed_state(db_session, clock, state="goodbye_sent",
                    goodbye_sent_at=clock.now() - timedelta(hours=5),
                    goodbye_expires_at=clock.now() + timedelta(hours=43))

        result = services.state_machine.transition("user-1", Trigger.GOODBYE_RESPONSE_2)

        assert result.success is True
        row = _state(db_session)
        assert row.state == "remind_later"
        assert row.remind_at == clock.now() + timedelta(days=14)
        assert row.goodbye_sent_at is None
        assert row.goodbye_expires_at is None

        meta = db_session.query(StateTransition).one().transition_metadata
        assert meta["response_type"] == "busy"
        assert meta["hours_waited"] == 5
        assert meta["trigger_source"] == "user_message"

    def test_all_good_goes_dormant(self, services, db_session, clock, make_profile):
        make_profile()
        _seed_state(db_session, clock, state="goodbye_sent", goodbye_sent_at=clock.now())

        result = services.state_machine.transition("user-1", Trigger.GOODBYE_RESPONSE_3)

        assert result.success is True
        assert _state(db_session).state == "dormant"

    def test_timeout_goes_dormant_with_response_type(self, services, db_session, clock):
        _seed_state(db_session, clock, state="goodbye_sent",
                    goodbye_sent_at=clock.now() - timedelta(hours=49),
                    goodbye_expires_at=clock.now() - timedelta(hours=1))

        result = services.state_machine.transition("user-1", Trigger.GOODBYE_TIMEOUT)

        assert result.success is True
        row = _state(db_session)
        assert row.state == "dormant"
        assert row.goodbye_expires_at is None
        meta = db_session.query(StateTransition).one().transition_metadata
        assert meta["response_type"] == "timeout"
        assert meta["days_since_goodbye"] == 2

    def test_reminder_due_goes_dormant(self, services, db_session, clock):
        _seed_state(db_session, clock, state="remind_later", remind_at=clock.now())

        result = services.state_machine.transition("user-1", Trigger.REMINDER_DUE)

        assert result.success is True
        row = _state(db_session)
        assert row.state == "dormant"
        assert row.remind_at is None

    def test_user_message_from_dormant_records_reactivation(self, services, db_session, clock):
        _seed_state(db_session, clock, state="dormant", last_activity_at=clock.now() - timedelta(days=30))

        result = services.state_machine.transition("user-1", Trigger.USER_MESSAGE)

        assert result.success is True
        row = _state(db_session)
        assert row.state == "active"
        assert row.last_activity_at == clock.now()
        meta = db_session.query(StateTransition).one().transition_metadata
        assert meta["reactivation_source"] == "dormant"
        assert meta["days_inactive"] == 30

    def test_analytics_emitted(self, services, db_session, clock, analytics, make_profile):
        make_profile()
        _seed_state(db_session, clock, state="goodbye_sent", goodbye_sent_at=clock.now())

        services.state_machine.transition("user-1", Trigger.GOODBYE_RESPONSE_3)

        names = [call.args[0] for call in analytics.track_event.call_args_list]
        assert "engagement_state_changed" in names
        assert "engagement_goodbye_response" in names

    def test_analytics_failure_does_not_fail_transition(self, services, db_session, clock, analytics):
        analytics.track_event.side_effect = RuntimeError("analytics down")
        _seed_state(db_session, clock, state="remind_later", remind_at=clock.now())

        result = services.state_machine.transition("user-1", Trigger.REMINDER_DUE)

        assert result.success is True


class TestConfusedFlow:
    def test_confused_passes_through_help_flow_to_active(self, services, db_session, clock, make_profile):
        make_profile(onboarding_tier=2, onboarding_tips_enabled=False,
                     onboarding_tier_progress={"tier1": {"add_expense": True}})
        _seed_state(db_session, clock, state="goodbye_sent", goodbye_sent_at=clock.now())

        result = services.state_machine.transition("user-1", Trigger.GOODBYE_RESPONSE_1)

        assert result.success is True
        assert result.previous_state == "goodbye_sent"
        assert result.new_state == "active"
        assert "reset_onboarding_tips" in result.side_effects
        assert "transitioned_to_active" in result.side_effects
        assert _state(db_session).state == "active"

        profile = db_session.query(UserProfile).populate_existing().one()
        assert profile.onboarding_tier == 0
        assert profile.onboarding_tier_progress == {}
        assert profile.onboarding_tips_enabled is True

        history = (
            db_session.query(StateTransition)
            .order_by(StateTransition.to_state.desc())
            .all()
        )
        assert [(h.from_state, h.to_state) for h in history] == [
            ("goodbye_sent", "help_flow"),
            ("help_flow", "active"),
        ]


class TestConcurrency:
    def test_lost_race_reports_concurrent_modification(self, services, db_session, clock, make_profile):
        make_profile()
        _seed_state(db_session, clock)
        stale = _state(db_session)
        db_session.expunge(stale)

        # Another process moves the user first
        db_session.query(EngagementState).filter(EngagementState.user_id == "user-1").update(
            {"state": "goodbye_sent"}, synchronize_session=False
        )
        db_session.commit()

        with patch.object(services.state_machine, "_get_state_row", return_value=stale):
            result = services.state_machine.transition("user-1", Trigger.INACTIVITY_14D)

        assert result.success is False
        assert result.error == CONCURRENT_MODIFICATION_ERROR
        assert db_session.query(StateTransition).count() == 0
        assert db_session.query(QueuedMessage).count() == 0

    def test_message_after_selection_cancels_goodbye(self, services, db_session, clock, make_profile):
        make_profile()
        _seed_state(db_session, clock, last_activity_at=clock.now() - timedelta(days=15))
        assert [row.user_id for row in services.state_machine.get_inactive_users()] == ["user-1"]

        services.activity_tracker.check_and_record_activity("user-1", MessageContext("oi"))
        result = services.state_machine.transition("user-1", Trigger.INACTIVITY_14D)

        assert result.success is False
        assert result.error == CONCURRENT_MODIFICATION_ERROR
        assert _state(db_session).state == "active"
        assert db_session.query(QueuedMessage).count() == 0

    def test_second_sweep_is_guarded(self, services, db_session, clock, make_profile):
        make_profile()
        _seed_state(db_session, clock, last_activity_at=clock.now() - timedelta(days=20))

        first = services.state_machine.transition("user-1", Trigger.INACTIVITY_14D)
        second = services.state_machine.transition("user-1", Trigger.INACTIVITY_14D)

        assert first.success is True
        assert second.success is False
        assert db_session.query(QueuedMessage).count() == 1


class TestQueries:
    def test_inactive_users_boundary(self, services, db_session, clock):
        _seed_state(db_session, clock, user_id="old", last_activity_at=clock.now() - timedelta(days=14))
        _seed_state(db_session, clock, user_id="recent", last_activity_at=clock.now() - timedelta(days=13))
        _seed_state(db_session, clock, user_id="gone", state="dormant",
                    last_activity_at=clock.now() - timedelta(days=60))

        users = [row.user_id for row in services.state_machine.get_inactive_users(14)]

        assert users == ["old"]

    def test_expired_goodbyes_and_due_reminders(self, services, db_session, clock):
        _seed_state(db_session, clock, user_id="expired", state="goodbye_sent",
                    goodbye_expires_at=clock.now() - timedelta(minutes=1))
        _seed_state(db_session, clock, user_id="waiting", state="goodbye_sent",
                    goodbye_expires_at=clock.now() + timedelta(hours=1))
        _seed_state(db_session, clock, user_id="due", state="remind_later",
                    remind_at=clock.now())
        _seed_state(db_session, clock, user_id="later", state="remind_later",
                    remind_at=clock.now() + timedelta(days=1))

        assert [r.user_id for r in services.state_machine.get_expired_goodbyes()] == ["expired"]
        assert [r.user_id for r in services.state_machine.get_due_reminders()] == ["due"]

    def test_history_newest_first(self, services, db_session, clock, make_profile):
        make_profile()
        services.state_machine.transition("user-1", Trigger.USER_MESSAGE)
        clock.advance(days=14)
        services.state_machine.transition("user-1", Trigger.INACTIVITY_14D)
        clock.advance(hours=1)
        services.state_machine.transition("user-1", Trigger.GOODBYE_RESPONSE_2)

        history = services.state_machine.get_user_transition_history("user-1")

        assert [h.trigger for h in history] == ["goodbye_response_2", "inactivity_14d", "user_message"]
        assert len(services.state_machine.get_user_transition_history("user-1", limit=1)) == 1

    def test_transition_stats(self, services, db_session, clock, make_profile):
        make_profile()
        _seed_state(db_session, clock, last_activity_at=clock.now() - timedelta(days=20))
        services.state_machine.transition("user-1", Trigger.INACTIVITY_14D)
        services.state_machine.transition("user-1", Trigger.GOODBYE_RESPONSE_2)

        stats = services.state_machine.get_transition_stats()

        assert stats["total_transitions"] == 2
        assert stats["transitions_by_trigger"] == {"inactivity_14d": 1, "goodbye_response_2": 1}
        assert stats["response_type_distribution"] == {"busy": 1}
        assert stats["unprompted_returns"] == 0
        assert stats["average_days_inactive"] == 20

    def test_transition_stats_window(self, services, db_session, clock, make_profile):
        make_profile()
        _seed_state(db_session, clock)
        services.state_machine.transition("user-1", Trigger.INACTIVITY_14D)

        stats = services.state_machine.get_transition_stats(start=clock.now() + timedelta(days=1))

        assert stats["total_transitions"] == 0
        assert stats["average_days_inactive"] == 0
