"""
Engagement Analytics

Fire-and-forget product events (state changes, goodbye responses, tier
completions, weekly reviews).

Events are dispatched as a Celery background task so the caller never waits
on, or sees an error from, analytics. The task writes one JSON line per
event to the analytics logger (see core.logging), which the log pipeline
ships to the analytics store.
"""
import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol

from core.logging import ANALYTICS_LOGGER_NAME

analytics_logger = logging.getLogger(ANALYTICS_LOGGER_NAME)

logger = logging.getLogger(__name__)


class AnalyticsClient(Protocol):
    def track_event(self, name: str, user_id: str, properties: Optional[Dict[str, Any]] = None) -> None:
        ...


def _anonymize_id(user_id: str) -> str:
    """Hash user ID for privacy in logs."""
    return hashlib.sha256(str(user_id).encode()).hexdigest()[:12]


def write_analytics_event(name: str, user_id: str, properties: Optional[Dict[str, Any]] = None) -> None:
    event = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event": name,
        "user_hash": _anonymize_id(user_id),
        "properties": properties or {},
    }
    analytics_logger.info(json.dumps(event, default=str))


class BackgroundAnalytics:
    """Dispatches each event to the worker. Never raises."""

    def track_event(self, name: str, user_id: str, properties: Optional[Dict[str, Any]] = None) -> None:
        try:
            from tasks.analytics_tasks import track_engagement_event_task
            track_engagement_event_task.delay(name, user_id, properties or {})
        except Exception as e:
            logger.warning(f"Failed to dispatch analytics event {name} for user {user_id}: {e}")


class InlineAnalytics:
    """Writes events in-process. Used by the worker itself and in scripts."""

    def track_event(self, name: str, user_id: str, properties: Optional[Dict[str, Any]] = None) -> None:
        try:
            write_analytics_event(name, user_id, properties)
        except Exception as e:
            logger.warning(f"Failed to write analytics event {name} for user {user_id}: {e}")


def safe_track(analytics: Optional[AnalyticsClient], name: str, user_id: str, properties: Optional[Dict[str, Any]] = None) -> None:
    """Call an injected analytics client, logging and dropping any failure."""
    if analytics is None:
        return
    try:
        analytics.track_event(name, user_id, properties or {})
    except Exception as e:
        logger.warning(f"Analytics event {name} for user {user_id} failed: {e}")
