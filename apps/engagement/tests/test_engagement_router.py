"""
Engagement ops endpoint tests.
"""
import pytest
import sys
import os
from datetime import timedelta

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fastapi.testclient import TestClient

from core.database import get_db
from main import app
from models import EngagementState
from routers.engagement import get_clock
from services.engagement_constants import Trigger


@pytest.fixture
def client(db_session, clock):
    def _override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_clock] = lambda: clock
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _seed(db_session, clock, user_id="user-1", state="active", days_ago=0):
    db_session.add(EngagementState(
        user_id=user_id,
        state=state,
        last_activity_at=clock.now() - timedelta(days=days_ago),
        created_at=clock.now(),
        updated_at=clock.now(),
    ))
    db_session.commit()


class TestEngagementRouter:
    def test_health(self, client):
        response = client.get("/v1/engagement/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "database": True}

    def test_user_state(self, client, db_session, clock):
        _seed(db_session, clock, state="dormant")

        response = client.get("/v1/engagement/users/user-1/state")

        assert response.status_code == 200
        body = response.json()
        assert body["user_id"] == "user-1"
        assert body["state"] == "dormant"
        assert body["remind_at"] is None

    def test_user_state_not_found(self, client):
        response = client.get("/v1/engagement/users/ghost/state")

        assert response.status_code == 404
        assert "ghost" in response.json()["detail"]
        assert response.json()["error_code"] == "NOT_FOUND"

    def test_transitions_and_stats(self, client, services, db_session, clock, make_profile):
        make_profile()
        _seed(db_session, clock, days_ago=14)
        services.state_machine.transition("user-1", Trigger.INACTIVITY_14D)
        services.state_machine.transition("user-1", Trigger.GOODBYE_RESPONSE_3)

        transitions = client.get("/v1/engagement/users/user-1/transitions?limit=10").json()
        assert len(transitions) == 2
        assert {t["to_state"] for t in transitions} == {"goodbye_sent", "dormant"}
        assert all("days_inactive" in t["metadata"] for t in transitions)

        stats = client.get("/v1/engagement/stats?days=7").json()
        assert stats["total_transitions"] == 2
        assert stats["response_type_distribution"] == {"all_good": 1}
        assert stats["average_days_inactive"] == 14

    def test_outbox_summary(self, client, services, db_session, clock, make_profile):
        make_profile()
        _seed(db_session, clock, days_ago=14)
        services.state_machine.transition("user-1", Trigger.INACTIVITY_14D)

        response = client.get("/v1/engagement/outbox/summary")

        assert response.status_code == 200
        assert response.json() == {"pending": 1, "sending": 0, "sent": 0, "failed": 0, "cancelled": 0}

    def test_stats_rejects_bad_window(self, client):
        assert client.get("/v1/engagement/stats?days=0").status_code == 422
