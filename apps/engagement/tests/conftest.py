"""
Pytest configuration and fixtures

Tests run against an in-memory SQLite database. The schema is created
fresh for every test and dropped afterwards, so nothing leaks between tests.
"""
import pytest
import sys
import os
from datetime import datetime, timezone
from unittest.mock import MagicMock

# Must be set before core.config / core.database are imported anywhere
os.environ.setdefault("DATABASE_URL", "sqlite://")

# Add the parent directory to the path so we can import from services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.clock import FrozenClock
from core.database import Base, SessionLocal, engine
from models import UserProfile


NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


class FakeTransport:
    """Records sends. fail_times makes the first N sends raise."""

    def __init__(self, connected=True, fail_times=0, always_fail=False):
        self.connected = connected
        self.fail_times = fail_times
        self.always_fail = always_fail
        self.sent = []
        self.attempts = 0

    def is_connected(self):
        return self.connected

    def send(self, destination_jid, text):
        self.attempts += 1
        if self.always_fail or self.attempts <= self.fail_times:
            raise ConnectionError("socket closed")
        self.sent.append((destination_jid, text))


@pytest.fixture(scope="function")
def db_session():
    """Fresh schema per test."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def clock():
    return FrozenClock(NOW)


@pytest.fixture
def analytics():
    return MagicMock()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def make_profile(db_session, clock):
    """Create a user profile; keyword args override column defaults."""

    def _make(user_id="user-1", **overrides):
        values = {
            "user_id": user_id,
            "whatsapp_jid": f"{user_id}@s.whatsapp.net",
            "locale": "pt-BR",
            "created_at": clock.now(),
            "reengagement_opt_out": False,
            "onboarding_tips_enabled": True,
            "onboarding_tier": 0,
        }
        values.update(overrides)
        profile = UserProfile(**values)
        db_session.add(profile)
        db_session.commit()
        return profile

    return _make


@pytest.fixture
def services(db_session, clock, transport, analytics):
    """All engagement components wired with test doubles, no send delay."""
    from services.engagement import build_engagement_services

    built = build_engagement_services(
        db_session,
        clock=clock,
        transport=transport,
        analytics=analytics,
        send_delay_ms=0,
    )
    built.processor._sleep = MagicMock()
    return built
