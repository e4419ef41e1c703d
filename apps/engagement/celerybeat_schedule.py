"""
Celery Beat Schedule Configuration

Defines periodic tasks that run on a schedule.
"""

from celery.schedules import crontab

# Schedule configuration
beat_schedule = {
    # Daily engagement sweep - inactivity goodbyes, goodbye timeouts,
    # due reminders, then an outbox drain. Safe to re-run.
    'daily-engagement-job': {
        'task': 'tasks.run_daily_engagement_job',
        'schedule': crontab(hour=6, minute=0),  # 06:00 UTC
    },
    # Weekly review - every Monday at 9 AM UTC
    'weekly-review-job': {
        'task': 'tasks.run_weekly_review_job',
        'schedule': crontab(hour=9, minute=0, day_of_week=1),  # Monday
    },
    # Outbox drain for messages queued from the inbound path
    # (tier unlocks, help restarts) between daily runs.
    'process-message-queue': {
        'task': 'tasks.process_message_queue',
        'schedule': crontab(minute='*'),
    },
}
