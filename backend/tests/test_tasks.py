"""
Tests for the Celery task wrappers and app configuration.

Tasks are called in-process; the services they wrap are patched.
"""

import uuid
from unittest.mock import AsyncMock, MagicMock

from fptracker.celery_app import app, on_worker_ready
from fptracker.core.ingestion.upload_recovery_service import upload_recovery_service
from fptracker.core.ops.aggregation_scheduler import aggregation_scheduler
from fptracker.core.ops.stall_sweeper import stall_sweeper
from fptracker.core.ops.statistics_service import statistics_service
from fptracker.core.shared.database_service import database_service
from fptracker.core.tasks import aggregation as aggregation_tasks
from fptracker.core.tasks import (
    aggregate_project_task,
    aggregate_subproject_task,
    delete_upload_session_task,
    retry_failed_batches_task,
    sweep_stalled_uploads_task,
)


class TestCeleryConfiguration:
    """Test routing and the beat schedule."""

    def test_routes(self):
        routes = app.conf.task_routes
        assert routes["fptracker.tasks.sweep_stalled_uploads_task"] == {"queue": "maintenance"}
        assert routes["fptracker.tasks.aggregate_subproject_task"] == {"queue": "processing"}
        assert routes["fptracker.tasks.retry_failed_batches_task"] == {"queue": "maintenance"}
        assert routes["fptracker.tasks.delete_upload_session_task"] == {"queue": "maintenance"}

    def test_stall_sweep_is_periodic(self):
        entry = app.conf.beat_schedule["sweep-stalled-uploads"]
        assert entry["task"] == "fptracker.tasks.sweep_stalled_uploads_task"
        assert entry["schedule"] == 60

    def test_aggregation_retry_policy(self):
        assert aggregate_subproject_task.max_retries == 2
        assert aggregate_subproject_task.retry_backoff == 2
        assert aggregate_subproject_task.retry_jitter is False


class TestSweepTask:
    """Test the stall sweep task wrapper."""

    def test_returns_sweep_counts(self, monkeypatch):
        monkeypatch.setattr(
            stall_sweeper, "sweep", AsyncMock(return_value={"examined": 2, "resolved": 1, "skipped": 1})
        )

        result = sweep_stalled_uploads_task()

        assert result == {"status": "completed", "examined": 2, "resolved": 1, "skipped": 1}

    def test_failure_is_reported_not_raised(self, monkeypatch):
        monkeypatch.setattr(stall_sweeper, "sweep", AsyncMock(side_effect=RuntimeError("database unavailable")))

        result = sweep_stalled_uploads_task()

        assert result == {"status": "failed", "error": "database unavailable"}


class TestAggregationTasks:
    """Test the aggregation task bodies and outcome hooks."""

    def test_project_task_releases_marker_and_recomputes(self, monkeypatch):
        project_id = uuid.uuid4()
        monkeypatch.setattr(aggregation_scheduler, "clear_marker", AsyncMock(return_value=True))
        monkeypatch.setattr(statistics_service, "recompute_project", AsyncMock(return_value={"total_elements": 12}))

        result = aggregate_project_task(target_id=str(project_id))

        assert result == {"project_id": str(project_id), "total_elements": 12}
        aggregation_scheduler.clear_marker.assert_awaited_once()
        assert aggregation_scheduler.clear_marker.await_args.args[:2] == ("project", str(project_id))
        statistics_service.recompute_project.assert_awaited_once_with(project_id)

    def test_marker_failure_does_not_block_recompute(self, monkeypatch):
        monkeypatch.setattr(aggregation_scheduler, "clear_marker", AsyncMock(side_effect=ConnectionError("redis down")))
        monkeypatch.setattr(statistics_service, "recompute_project", AsyncMock(return_value={"total_elements": 0}))

        result = aggregate_project_task(target_id=str(uuid.uuid4()))

        assert result["total_elements"] == 0

    def test_success_hook_records_outcome(self, monkeypatch):
        outcomes = MagicMock()
        monkeypatch.setattr(aggregation_tasks, "aggregation_outcomes", outcomes)

        aggregate_subproject_task.on_success({"total_elements": 3}, "task-1", (), {"target_id": "abc"})

        outcomes.record_completed.assert_called_once_with("subproject", "abc", "task-1", {"total_elements": 3})

    def test_failure_hook_records_outcome(self, monkeypatch):
        outcomes = MagicMock()
        monkeypatch.setattr(aggregation_tasks, "aggregation_outcomes", outcomes)

        aggregate_project_task.on_failure(RuntimeError("boom"), "task-2", (), {"target_id": "abc"}, None)

        outcomes.record_failed.assert_called_once_with("project", "abc", "task-2", "boom")

    def test_outcome_store_errors_are_logged(self, monkeypatch):
        outcomes = MagicMock()
        outcomes.record_completed.side_effect = ConnectionError("redis down")
        monkeypatch.setattr(aggregation_tasks, "aggregation_outcomes", outcomes)

        aggregate_subproject_task.on_success({}, "task-3", (), {"target_id": "abc"})


class TestRecoveryTasks:
    """Test the upload recovery task wrappers."""

    def test_retry_reports_counts(self, monkeypatch):
        session_id = uuid.uuid4()
        retry = AsyncMock(return_value={"batches_reset": 2, "elements_deleted": 0, "jobs_deleted": 0, "task_id": "t-1"})
        monkeypatch.setattr(upload_recovery_service, "retry_failed_batches", retry)

        result = retry_failed_batches_task(session_id=str(session_id))

        retry.assert_awaited_once_with(session_id)
        assert result == {
            "status": "completed",
            "session_id": str(session_id),
            "batches_reset": 2,
            "elements_deleted": 0,
            "jobs_deleted": 0,
            "task_id": "t-1",
        }

    def test_failure_is_reported_not_raised(self, monkeypatch):
        monkeypatch.setattr(
            upload_recovery_service, "delete_upload_session", AsyncMock(side_effect=RuntimeError("store unavailable"))
        )
        session_id = str(uuid.uuid4())

        result = delete_upload_session_task(session_id=session_id)

        assert result == {"status": "failed", "session_id": session_id, "error": "store unavailable"}


class TestWorkerReady:
    """Test the worker startup hook."""

    def test_creates_tables(self, monkeypatch):
        init_db = AsyncMock()
        monkeypatch.setattr(database_service, "init_db", init_db)
        monkeypatch.setattr(aggregation_scheduler, "open", MagicMock())

        on_worker_ready(sender=None)

        init_db.assert_awaited_once()
        aggregation_scheduler.open.assert_called_once()

    def test_table_creation_failure_is_logged(self, monkeypatch):
        monkeypatch.setattr(database_service, "init_db", AsyncMock(side_effect=OSError("database unreachable")))
        monkeypatch.setattr(aggregation_scheduler, "open", MagicMock())

        on_worker_ready(sender=None)

        aggregation_scheduler.open.assert_called_once()
