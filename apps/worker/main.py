"""
Celery worker entry point.

Imports the Celery app and the engagement tasks from the engagement app.
Start with both queues so analytics events are consumed:

    celery -A main worker -Q celery,analytics
"""
import sys
from pathlib import Path

# Engagement app directory (mounted at /engagement in the container)
sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "engagement"))
sys.path.insert(0, "/engagement")

from tasks import celery_app  # noqa: E402

celery_app.autodiscover_tasks(["tasks"])


@celery_app.task(name="worker.health_check")
def health_check():
    """Health check task"""
    return {"status": "ok"}
