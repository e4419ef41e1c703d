"""
Scheduled Engagement Tasks

Celery entry points for the daily sweep, the weekly review and the outbox
drain. Runs via Celery Beat scheduler (see celerybeat_schedule.py).

Each task opens its own session and builds the engagement services with
production collaborators. Errors are reported in the returned dict rather
than raised so that beat keeps firing on schedule.
"""

from typing import Dict
from celery import Task
from sqlalchemy.orm import Session
from core.database import get_db_sync
from core.logging import log_context
from core.locks import JobLock
from tasks import celery_app
from services.engagement import build_engagement_services
from services.engagement_analytics import InlineAnalytics
from services.engagement_jobs import run_daily_engagement_job, run_weekly_review_job
import logging

logger = logging.getLogger(__name__)


def _services(db: Session):
    # Already on the worker: write analytics inline instead of re-enqueueing.
    return build_engagement_services(
        db,
        analytics=InlineAnalytics(),
        outbox_lock=JobLock("outbox"),
    )


@celery_app.task(name="tasks.run_daily_engagement_job", bind=True)
def run_daily_engagement_job_task(self: Task) -> Dict:
    """
    Daily lifecycle sweep.

    Safe under overlap with another worker running the same job: the
    state machine guards each transition and the outbox deduplicates.
    """
    db: Session = get_db_sync()

    try:
        with log_context(job="daily_engagement", task_id=self.request.id):
            result = run_daily_engagement_job(_services(db))
        return {"status": "success", **result.to_dict()}
    except Exception as e:
        logger.error(f"Error in run_daily_engagement_job_task: {str(e)}")
        return {"status": "error", "message": str(e)}
    finally:
        db.close()


@celery_app.task(name="tasks.run_weekly_review_job", bind=True)
def run_weekly_review_job_task(self: Task) -> Dict:
    """Weekly recap for users active in the last 7 days."""
    db: Session = get_db_sync()

    try:
        with log_context(job="weekly_review", task_id=self.request.id):
            result = run_weekly_review_job(_services(db))
        return {"status": "success", **result.to_dict()}
    except Exception as e:
        logger.error(f"Error in run_weekly_review_job_task: {str(e)}")
        return {"status": "error", "message": str(e)}
    finally:
        db.close()


@celery_app.task(name="tasks.process_message_queue", bind=True)
def process_message_queue_task(self: Task) -> Dict:
    """Deliver pending outbox messages."""
    db: Session = get_db_sync()

    try:
        with log_context(job="process_message_queue", task_id=self.request.id):
            result = _services(db).processor.process_message_queue()
        return {"status": "success", **result.to_dict()}
    except Exception as e:
        logger.error(f"Error in process_message_queue_task: {str(e)}")
        return {"status": "error", "message": str(e)}
    finally:
        db.close()
