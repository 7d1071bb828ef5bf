"""
Tests for the stall sweeper.
"""

from datetime import timedelta

import pytest

from fptracker.core.database import utcnow
from fptracker.core.ops.stall_sweeper import StallSweeper


@pytest.fixture
def sweeper(repository):
    return StallSweeper(repository=repository, threshold_seconds=120)


async def _begin(state, db):
    state.begin_processing()


@pytest.fixture
def started_upload(repository, project):
    async def _create(total_rows=10, batch_size=5, upload_id="upload-s"):
        upload = await repository.create(
            upload_id=upload_id, project_id=project.id, file_name="schedule.xlsx",
            total_rows=total_rows, batch_size=batch_size,
        )
        upload, _ = await repository.mutate(upload.id, _begin)
        return upload

    return _create


def _later():
    return utcnow() + timedelta(minutes=3)


class TestStallSweeper:
    """Test resolution of abandoned upload sessions."""

    @pytest.mark.asyncio
    async def test_nothing_processed_fails_every_batch(self, sweeper, repository, started_upload):
        upload = await started_upload()

        result = await sweeper.sweep(now=_later())

        assert result == {"examined": 1, "resolved": 1, "skipped": 0}
        stored = await repository.get(upload.id)
        assert stored.status == "failed"
        assert stored.completed_at is not None
        assert all(b["status"] == "failed" for b in stored.batches)
        assert all(b["error_message"] == "Worker stalled - no batches processed" for b in stored.batches)
        assert stored.batches[0]["error_details"]["type"] == "StallDetected"

    @pytest.mark.asyncio
    async def test_partially_processed_session(self, sweeper, processor, repository, started_upload, make_rows):
        upload = await started_upload()
        await processor.process_batch(upload.id, 1, make_rows(10))

        await sweeper.sweep(now=_later())

        stored = await repository.get(upload.id)
        assert stored.status == "partially_completed"
        assert stored.batches[0]["status"] == "success"
        assert len(stored.batches[0]["elements_created"]) == 5
        assert stored.batches[1]["status"] == "failed"
        assert stored.batches[1]["error_message"] == "Worker stalled - batch not processed"

    @pytest.mark.asyncio
    async def test_fresh_session_left_alone(self, sweeper, repository, started_upload):
        upload = await started_upload()

        result = await sweeper.sweep(now=utcnow() + timedelta(seconds=30))

        assert result == {"examined": 0, "resolved": 0, "skipped": 0}
        assert (await repository.get(upload.id)).status == "in_progress"

    @pytest.mark.asyncio
    async def test_session_never_started_is_not_stalled(self, sweeper, repository, project):
        await repository.create(
            upload_id="upload-p", project_id=project.id, file_name="schedule.xlsx", total_rows=3, batch_size=5,
        )

        result = await sweeper.sweep(now=_later())

        assert result["examined"] == 0

    @pytest.mark.asyncio
    async def test_session_written_after_selection_is_skipped(
        self, sweeper, repository, started_upload, monkeypatch
    ):
        upload = await started_upload()
        snapshot = await repository.get(upload.id)

        # A live worker records progress after the sweeper picked the session
        async def progress(state, db):
            state.mark_batch_success(1, [], [])

        await repository.mutate(upload.id, progress)

        async def stale_listing(updated_before, upload_id=None):
            return [snapshot]

        monkeypatch.setattr(repository, "list_stale_in_progress", stale_listing)

        result = await sweeper.sweep(now=_later())

        assert result == {"examined": 1, "resolved": 0, "skipped": 1}
        stored = await repository.get(upload.id)
        assert stored.status == "in_progress"
        assert stored.batches[1]["status"] == "pending"

    @pytest.mark.asyncio
    async def test_session_without_pending_batches_is_recomputed(self, sweeper, repository, started_upload):
        upload = await started_upload(total_rows=3)

        async def finish_without_status(state, db):
            state.get_batch(1).status = "success"

        await repository.mutate(upload.id, finish_without_status)
        assert (await repository.get(upload.id)).status == "in_progress"

        result = await sweeper.sweep(now=_later())

        assert result["resolved"] == 1
        assert (await repository.get(upload.id)).status == "completed"

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, sweeper, repository, started_upload):
        upload = await started_upload()

        result = await sweeper.sweep(now=_later(), dry_run=True)

        assert result == {"examined": 1, "resolved": 1, "skipped": 0}
        stored = await repository.get(upload.id)
        assert stored.status == "in_progress"
        assert stored.version == upload.version
        assert all(b["status"] == "pending" for b in stored.batches)

    @pytest.mark.asyncio
    async def test_specific_upload_only(self, sweeper, repository, started_upload):
        target = await started_upload(upload_id="upload-t")
        other = await started_upload(upload_id="upload-u")

        result = await sweeper.sweep(now=_later(), upload_id="upload-t")

        assert result == {"examined": 1, "resolved": 1, "skipped": 0}
        assert (await repository.get(target.id)).status == "failed"
        assert (await repository.get(other.id)).status == "in_progress"
