"""
Celery app for the engagement worker and beat.

The API process imports this only to enqueue analytics events; sweeps and
the outbox drain run exclusively on the worker.
"""
from celery import Celery
from core.config import settings
from core.logging import setup_logging
from celerybeat_schedule import beat_schedule

# Worker and beat share the API's log format; Celery must not replace it.
setup_logging()

celery_app = Celery(
    "engagement",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    worker_hijack_root_logger=False,
    # A sweep that dies mid-run is redelivered; every step is idempotent.
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_time_limit=30 * 60,
    task_soft_time_limit=25 * 60,
    # Analytics writes must never queue behind a long sweep.
    task_routes={
        "tasks.track_engagement_event": {"queue": "analytics"},
    },
    result_expires=24 * 60 * 60,
    beat_schedule=beat_schedule,
)

# Import tasks to register them
from . import engagement_tasks  # noqa: E402
from . import analytics_tasks  # noqa: E402

__all__ = ["celery_app"]
