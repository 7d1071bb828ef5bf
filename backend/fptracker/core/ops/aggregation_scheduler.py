"""
Aggregation scheduler: queues statistics recomputation after ingestion.

Two task kinds exist, both carrying only the target id:
    - subproject: recompute a sub-project, then its parent project
    - project: recompute a project from its sub-projects

Debounce:
    ``schedule_batch_aggregation`` delays the task by
    ``settings.aggregation_debounce_seconds``. Calls for the same target
    inside that window coalesce into one task: the first call sets a Redis
    marker with SET NX PX and enqueues, later calls find the marker and
    return. The task clears its own marker (compare-and-delete on its task
    id) as soon as it starts, so activity after that point schedules a fresh
    recomputation that will observe it.

Lifecycle:
    The scheduler is opened once per worker process and closed at shutdown
    (see ``fptracker.celery_app``). A closed scheduler drops requests with a
    warning.

Marker Key Format:
    fptracker:aggregation:pending:{kind}:{target_id}

Scheduling never raises: enqueue failures are logged and reported as None.
"""

import asyncio
import json
import logging
import time
import uuid
from typing import Any, Dict, List, Optional
from uuid import UUID

import redis
import redis.asyncio as aioredis

from fptracker.config import settings

logger = logging.getLogger("fptracker.ops.aggregation")

KIND_SUBPROJECT = "subproject"
KIND_PROJECT = "project"

MARKER_PREFIX = "fptracker:aggregation:pending:"
COMPLETED_KEY = "fptracker:aggregation:completed"
FAILED_KEY = "fptracker:aggregation:failed"

# Extra marker lifetime beyond the countdown, covering broker and worker pickup latency
MARKER_SAFETY_SECONDS = 30

# Only delete the marker if it still holds our task id
CLEAR_MARKER_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if current == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


def marker_key(kind: str, target_id: Any) -> str:
    return f"{MARKER_PREFIX}{kind}:{target_id}"


def _task_for(kind: str):
    from fptracker.core.tasks.aggregation import aggregate_project_task, aggregate_subproject_task

    return aggregate_subproject_task if kind == KIND_SUBPROJECT else aggregate_project_task


class AggregationScheduler:
    """
    Explicitly constructed queue client for aggregation tasks.

    Attributes:
        debounce_seconds: Countdown used by ``schedule_batch_aggregation``
        is_open: Whether requests are accepted
    """

    def __init__(self, redis_url: Optional[str] = None, debounce_seconds: Optional[int] = None):
        self._redis_url = redis_url
        self._redis: Optional[aioredis.Redis] = None
        self._redis_loop: Optional[asyncio.AbstractEventLoop] = None
        self.debounce_seconds = settings.aggregation_debounce_seconds if debounce_seconds is None else debounce_seconds
        self.is_open = False

    def open(self) -> None:
        self.is_open = True
        logger.info(f"Aggregation scheduler opened (debounce={self.debounce_seconds}s)")

    async def close(self) -> None:
        self.is_open = False
        if self._redis is not None:
            try:
                if self._redis_loop is asyncio.get_running_loop():
                    await self._redis.close()
            finally:
                self._redis = None
                self._redis_loop = None
        logger.info("Aggregation scheduler closed")

    async def _get_redis(self) -> aioredis.Redis:
        loop = asyncio.get_running_loop()
        if self._redis is None or self._redis_loop is not loop:
            # Celery tasks run one event loop per task; a client bound to a
            # finished loop is abandoned, not closed
            self._redis_loop = loop
            self._redis = aioredis.from_url(self._redis_url or settings.redis_url, decode_responses=True)
        return self._redis

    async def _enqueue(self, kind: str, target_id: Any, countdown: int, task_id: Optional[str] = None) -> str:
        task = _task_for(kind)
        options: Dict[str, Any] = {"kwargs": {"target_id": str(target_id)}, "countdown": countdown}
        if task_id:
            options["task_id"] = task_id
        # apply_async does blocking broker I/O
        result = await asyncio.to_thread(task.apply_async, **options)
        return result.id

    async def _schedule(self, kind: str, target_id: Any, delay: int) -> Optional[str]:
        if not self.is_open:
            logger.warning(f"Aggregation scheduler is closed, dropping {kind} aggregation for {target_id}")
            return None

        try:
            if delay <= 0:
                task_id = await self._enqueue(kind, target_id, 0)
                logger.debug(f"Queued {kind} aggregation for {target_id} (task={task_id})")
                return task_id

            r = await self._get_redis()
            key = marker_key(kind, target_id)
            task_id = str(uuid.uuid4())
            acquired = await r.set(key, task_id, nx=True, px=(delay + MARKER_SAFETY_SECONDS) * 1000)
            if not acquired:
                logger.debug(f"{kind} aggregation for {target_id} already pending, coalesced")
                return None

            try:
                await self._enqueue(kind, target_id, delay, task_id=task_id)
            except Exception:
                await r.eval(CLEAR_MARKER_SCRIPT, 1, key, task_id)
                raise

            logger.debug(f"Queued {kind} aggregation for {target_id} in {delay}s (task={task_id})")
            return task_id

        except Exception as e:
            logger.warning(f"Failed to schedule {kind} aggregation for {target_id}: {e}")
            return None

    async def schedule_subproject_aggregation(self, sub_project_id: UUID, delay: int = 0) -> Optional[str]:
        return await self._schedule(KIND_SUBPROJECT, sub_project_id, delay)

    async def schedule_project_aggregation(self, project_id: UUID, delay: int = 0) -> Optional[str]:
        return await self._schedule(KIND_PROJECT, project_id, delay)

    async def schedule_batch_aggregation(
        self, project_id: UUID, sub_project_id: Optional[UUID] = None
    ) -> Optional[str]:
        """
        Debounced recomputation after a batch changed a project's elements.

        Targets the sub-project when there is one (its task also refreshes
        the project), otherwise the project.

        Returns:
            The queued task id, or None when coalesced, closed or failed
        """
        if sub_project_id:
            return await self.schedule_subproject_aggregation(sub_project_id, self.debounce_seconds)
        return await self.schedule_project_aggregation(project_id, self.debounce_seconds)

    async def clear_marker(self, kind: str, target_id: Any, task_id: str) -> bool:
        """Drop the debounce marker if it belongs to ``task_id``."""
        r = await self._get_redis()
        return await r.eval(CLEAR_MARKER_SCRIPT, 1, marker_key(kind, target_id), task_id) == 1


class AggregationOutcomeLog:
    """
    Bounded history of aggregation task outcomes.

    Completed and failed outcomes live in two Redis sorted sets scored by
    finish time. Completed entries are kept for
    ``aggregation_completed_retention_seconds`` and at most
    ``aggregation_completed_retention_count``; failed entries for
    ``aggregation_failed_retention_seconds``.

    Written from Celery task hooks, which run outside the task event loop,
    so this uses the synchronous client.
    """

    def __init__(self, redis_url: Optional[str] = None):
        self._redis_url = redis_url
        self._client: Optional[redis.Redis] = None

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.Redis.from_url(self._redis_url or settings.redis_url, decode_responses=True)
        return self._client

    def _record(self, key: str, entry: Dict[str, Any], retention_seconds: int, max_entries: Optional[int]) -> None:
        now = time.time()
        pipe = self.client.pipeline()
        pipe.zadd(key, {json.dumps(entry, default=str): now})
        pipe.zremrangebyscore(key, "-inf", now - retention_seconds)
        if max_entries:
            pipe.zremrangebyrank(key, 0, -(max_entries + 1))
        pipe.expire(key, retention_seconds)
        pipe.execute()

    def record_completed(self, kind: str, target_id: Any, task_id: str, result: Any = None) -> None:
        self._record(
            COMPLETED_KEY,
            {"kind": kind, "target_id": str(target_id), "task_id": task_id, "result": result, "finished_at": time.time()},
            settings.aggregation_completed_retention_seconds,
            settings.aggregation_completed_retention_count,
        )

    def record_failed(self, kind: str, target_id: Any, task_id: str, error: str) -> None:
        self._record(
            FAILED_KEY,
            {"kind": kind, "target_id": str(target_id), "task_id": task_id, "error": error, "finished_at": time.time()},
            settings.aggregation_failed_retention_seconds,
            None,
        )

    def recent(self, failed: bool = False, limit: int = 20) -> List[Dict[str, Any]]:
        key = FAILED_KEY if failed else COMPLETED_KEY
        return [json.loads(raw) for raw in self.client.zrevrange(key, 0, limit - 1)]


# Process-wide instances, opened/closed by the Celery worker signals
aggregation_scheduler = AggregationScheduler()
aggregation_outcomes = AggregationOutcomeLog()
