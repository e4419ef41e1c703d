"""
Celery task wrapper tests.

The tasks only own the session lifecycle and error reporting; the job
logic itself is covered in test_engagement_jobs.py.
"""
import pytest
import sys
import os
from unittest.mock import MagicMock, patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from services.engagement_jobs import JobResult
from services.outbox_processor import ProcessResult
from tasks.engagement_tasks import (
    process_message_queue_task,
    run_daily_engagement_job_task,
    run_weekly_review_job_task,
)


@pytest.fixture
def mock_db():
    db = MagicMock()
    with patch("tasks.engagement_tasks.get_db_sync", return_value=db):
        yield db


class TestDailyTask:
    def test_success(self, mock_db):
        with patch("tasks.engagement_tasks._services") as services, \
             patch("tasks.engagement_tasks.run_daily_engagement_job",
                   return_value=JobResult(processed=3, succeeded=2, failed=1)) as job:
            result = run_daily_engagement_job_task()

        services.assert_called_once_with(mock_db)
        job.assert_called_once_with(services.return_value)
        assert result["status"] == "success"
        assert result["processed"] == 3
        assert result["failed"] == 1
        mock_db.close.assert_called_once()

    def test_error_is_reported_not_raised(self, mock_db):
        with patch("tasks.engagement_tasks._services"), \
             patch("tasks.engagement_tasks.run_daily_engagement_job", side_effect=RuntimeError("db gone")):
            result = run_daily_engagement_job_task()

        assert result == {"status": "error", "message": "db gone"}
        mock_db.close.assert_called_once()


class TestWeeklyTask:
    def test_success(self, mock_db):
        with patch("tasks.engagement_tasks._services"), \
             patch("tasks.engagement_tasks.run_weekly_review_job",
                   return_value=JobResult(processed=5, succeeded=5)):
            result = run_weekly_review_job_task()

        assert result["status"] == "success"
        assert result["succeeded"] == 5
        mock_db.close.assert_called_once()


class TestProcessQueueTask:
    def test_success(self, mock_db):
        with patch("tasks.engagement_tasks._services") as services:
            services.return_value.processor.process_message_queue.return_value = ProcessResult(
                processed=2, succeeded=2
            )
            result = process_message_queue_task()

        assert result == {"status": "success", "processed": 2, "succeeded": 2, "failed": 0, "errors": []}
        mock_db.close.assert_called_once()

    def test_services_use_outbox_lock(self, mock_db):
        with patch("tasks.engagement_tasks.build_engagement_services") as build:
            from tasks.engagement_tasks import _services
            _services(mock_db)

        kwargs = build.call_args.kwargs
        assert kwargs["outbox_lock"].name == "outbox"
