"""
Analytics event writer.

Runs on the worker so request and sweep code never block on analytics.
"""
from typing import Dict, Optional

from tasks import celery_app
from services.engagement_analytics import write_analytics_event
import logging

logger = logging.getLogger(__name__)


@celery_app.task(name="tasks.track_engagement_event", ignore_result=True)
def track_engagement_event_task(name: str, user_id: str, properties: Optional[Dict] = None) -> None:
    try:
        write_analytics_event(name, user_id, properties or {})
    except Exception as e:
        logger.warning(f"Failed to write analytics event {name}: {e}")
