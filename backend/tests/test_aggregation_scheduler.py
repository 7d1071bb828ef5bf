"""
Tests for the debounced aggregation scheduler and the outcome log.

Redis and the Celery tasks are replaced with in-memory doubles.
"""

import json
import uuid
from unittest.mock import MagicMock

import pytest

from fptracker.core.ops import aggregation_scheduler as module
from fptracker.core.ops.aggregation_scheduler import (
    COMPLETED_KEY,
    FAILED_KEY,
    AggregationOutcomeLog,
    AggregationScheduler,
    marker_key,
)


class FakeRedis:
    """Just enough of redis.asyncio for SET NX and the compare-and-delete script."""

    def __init__(self):
        self.values = {}
        self.ttls = {}

    async def set(self, key, value, nx=False, px=None):
        if nx and key in self.values:
            return None
        self.values[key] = value
        self.ttls[key] = px
        return True

    async def eval(self, script, numkeys, key, expected):
        if self.values.get(key) == expected:
            del self.values[key]
            return 1
        return 0


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def tasks(monkeypatch):
    """Records apply_async calls per task kind."""
    calls = {"subproject": MagicMock(), "project": MagicMock()}
    for kind, task in calls.items():
        task.apply_async.side_effect = lambda kind=kind, **options: MagicMock(id=options.get("task_id") or f"{kind}-now")
    monkeypatch.setattr(module, "_task_for", lambda kind: calls[kind])
    return calls


@pytest.fixture
def scheduler(fake_redis, tasks, monkeypatch):
    scheduler = AggregationScheduler(redis_url="redis://unused", debounce_seconds=10)

    async def get_redis():
        return fake_redis

    monkeypatch.setattr(scheduler, "_get_redis", get_redis)
    scheduler.open()
    return scheduler


class TestScheduling:
    """Test immediate and debounced scheduling."""

    @pytest.mark.asyncio
    async def test_immediate_request_sets_no_marker(self, scheduler, fake_redis, tasks):
        target = uuid.uuid4()

        task_id = await scheduler.schedule_project_aggregation(target)

        assert task_id == "project-now"
        tasks["project"].apply_async.assert_called_once_with(kwargs={"target_id": str(target)}, countdown=0)
        assert fake_redis.values == {}

    @pytest.mark.asyncio
    async def test_burst_for_one_sub_project_coalesces(self, scheduler, fake_redis, tasks):
        project_id, sub_project_id = uuid.uuid4(), uuid.uuid4()

        results = [await scheduler.schedule_batch_aggregation(project_id, sub_project_id) for _ in range(5)]

        assert results[0] is not None
        assert results[1:] == [None] * 4
        tasks["subproject"].apply_async.assert_called_once()
        options = tasks["subproject"].apply_async.call_args.kwargs
        assert options["countdown"] == 10
        assert options["task_id"] == results[0]
        assert fake_redis.values[marker_key("subproject", sub_project_id)] == results[0]
        assert fake_redis.ttls[marker_key("subproject", sub_project_id)] == 40_000
        tasks["project"].apply_async.assert_not_called()

    @pytest.mark.asyncio
    async def test_batch_without_sub_project_targets_project(self, scheduler, tasks):
        project_id = uuid.uuid4()

        await scheduler.schedule_batch_aggregation(project_id)

        assert tasks["project"].apply_async.call_args.kwargs["kwargs"] == {"target_id": str(project_id)}

    @pytest.mark.asyncio
    async def test_new_request_after_task_started_is_queued(self, scheduler, tasks):
        sub_project_id = uuid.uuid4()
        first = await scheduler.schedule_subproject_aggregation(sub_project_id, delay=10)

        assert await scheduler.clear_marker("subproject", sub_project_id, first) is True
        second = await scheduler.schedule_subproject_aggregation(sub_project_id, delay=10)

        assert second is not None and second != first
        assert tasks["subproject"].apply_async.call_count == 2

    @pytest.mark.asyncio
    async def test_clear_marker_ignores_other_task(self, scheduler, fake_redis):
        sub_project_id = uuid.uuid4()
        task_id = await scheduler.schedule_subproject_aggregation(sub_project_id, delay=10)

        assert await scheduler.clear_marker("subproject", sub_project_id, "someone-else") is False
        assert fake_redis.values[marker_key("subproject", sub_project_id)] == task_id


class TestFailureHandling:
    """Test that scheduling never raises."""

    @pytest.mark.asyncio
    async def test_closed_scheduler_drops_requests(self, scheduler, tasks):
        await scheduler.close()

        assert await scheduler.schedule_project_aggregation(uuid.uuid4()) is None
        tasks["project"].apply_async.assert_not_called()

    @pytest.mark.asyncio
    async def test_enqueue_failure_is_swallowed_and_marker_released(self, scheduler, fake_redis, tasks):
        tasks["subproject"].apply_async.side_effect = ConnectionError("broker unavailable")
        sub_project_id = uuid.uuid4()

        assert await scheduler.schedule_subproject_aggregation(sub_project_id, delay=10) is None
        assert marker_key("subproject", sub_project_id) not in fake_redis.values

    @pytest.mark.asyncio
    async def test_redis_failure_is_swallowed(self, scheduler, fake_redis):
        async def broken_set(*args, **kwargs):
            raise ConnectionError("redis down")

        fake_redis.set = broken_set

        assert await scheduler.schedule_subproject_aggregation(uuid.uuid4(), delay=10) is None


class TestOutcomeLog:
    """Test bounded outcome retention."""

    def test_completed_outcome_is_pruned_and_capped(self):
        log = AggregationOutcomeLog(redis_url="redis://unused")
        log._client = MagicMock()
        pipe = log._client.pipeline.return_value

        log.record_completed("subproject", "abc", "task-1", {"total_elements": 3})

        entry = json.loads(next(iter(pipe.zadd.call_args.args[1])))
        assert entry["kind"] == "subproject"
        assert entry["task_id"] == "task-1"
        assert pipe.zadd.call_args.args[0] == COMPLETED_KEY
        pipe.zremrangebyscore.assert_called_once()
        pipe.zremrangebyrank.assert_called_once_with(COMPLETED_KEY, 0, -101)
        pipe.expire.assert_called_once_with(COMPLETED_KEY, 3600)
        pipe.execute.assert_called_once()

    def test_failed_outcome_is_not_capped(self):
        log = AggregationOutcomeLog(redis_url="redis://unused")
        log._client = MagicMock()
        pipe = log._client.pipeline.return_value

        log.record_failed("project", "abc", "task-2", "boom")

        assert pipe.zadd.call_args.args[0] == FAILED_KEY
        pipe.zremrangebyrank.assert_not_called()
        pipe.expire.assert_called_once_with(FAILED_KEY, 86400)

    def test_recent(self):
        log = AggregationOutcomeLog(redis_url="redis://unused")
        log._client = MagicMock()
        log._client.zrevrange.return_value = [json.dumps({"task_id": "t"})]

        assert log.recent(limit=5) == [{"task_id": "t"}]
        log._client.zrevrange.assert_called_once_with(COMPLETED_KEY, 0, 4)
