"""
Storage primitive tests: the conflict-ignoring insert.
"""
import pytest
import sys
import os
from unittest.mock import MagicMock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.database import insert_ignore_conflict
from core.exceptions import EngagementError
from models import EngagementState


def _state_values(clock, user_id="user-1"):
    now = clock.now()
    return {
        "user_id": user_id,
        "state": "active",
        "last_activity_at": now,
        "created_at": now,
        "updated_at": now,
    }


class TestInsertIgnoreConflict:
    def test_first_insert_writes_row(self, db_session, clock):
        assert insert_ignore_conflict(
            db_session, EngagementState, _state_values(clock), "uq_engagement_state_user_id"
        ) is True
        assert db_session.query(EngagementState).count() == 1

    def test_conflict_is_a_noop(self, db_session, clock):
        insert_ignore_conflict(db_session, EngagementState, _state_values(clock), "uq_engagement_state_user_id")

        assert insert_ignore_conflict(
            db_session, EngagementState, _state_values(clock), "uq_engagement_state_user_id"
        ) is False
        assert db_session.query(EngagementState).count() == 1

    def test_unknown_constraint_raises(self, db_session, clock):
        with pytest.raises(EngagementError, match="no constraint named uq_missing"):
            insert_ignore_conflict(db_session, EngagementState, _state_values(clock), "uq_missing")

    def test_unsupported_dialect_raises(self, clock):
        db = MagicMock()
        db.get_bind.return_value.dialect.name = "mysql"

        with pytest.raises(EngagementError, match="mysql"):
            insert_ignore_conflict(db, EngagementState, _state_values(clock), "uq_engagement_state_user_id")

        db.execute.assert_not_called()
