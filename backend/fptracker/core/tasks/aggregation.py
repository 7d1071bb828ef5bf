"""
Statistics aggregation Celery tasks.

Queued by ``AggregationScheduler``; each task carries only the target id.
Retried up to ``aggregation_max_attempts`` in total with exponential backoff
(``aggregation_backoff_base_seconds``, doubling). Final outcomes are kept in
``AggregationOutcomeLog``.
"""
import asyncio
import logging
from typing import Any, Dict
from uuid import UUID

from celery import Task

from fptracker.celery_app import app as celery_app
from fptracker.config import settings
from fptracker.core.ops.aggregation_scheduler import (
    KIND_PROJECT,
    KIND_SUBPROJECT,
    aggregation_outcomes,
    aggregation_scheduler,
)

logger = logging.getLogger("fptracker.tasks.aggregation")

RETRY_OPTIONS = {
    "autoretry_for": (Exception,),
    "retry_backoff": settings.aggregation_backoff_base_seconds,
    "retry_jitter": False,
    "max_retries": settings.aggregation_max_attempts - 1,
}


class AggregationTask(Task):
    kind = ""

    def on_success(self, retval: Any, task_id: str, args: Any, kwargs: Any):
        try:
            aggregation_outcomes.record_completed(self.kind, kwargs.get("target_id"), task_id, retval)
        except Exception as e:
            logger.warning(f"Could not record outcome of {task_id}: {e}")

    def on_failure(self, exc: Exception, task_id: str, args: Any, kwargs: Any, einfo):
        logger.error(f"{self.kind} aggregation for {kwargs.get('target_id')} failed permanently: {exc}")
        try:
            aggregation_outcomes.record_failed(self.kind, kwargs.get("target_id"), task_id, str(exc))
        except Exception as e:
            logger.warning(f"Could not record outcome of {task_id}: {e}")


class SubProjectAggregationTask(AggregationTask):
    kind = KIND_SUBPROJECT


class ProjectAggregationTask(AggregationTask):
    kind = KIND_PROJECT


async def _release_marker(kind: str, target_id: str, task_id: str) -> None:
    try:
        await aggregation_scheduler.clear_marker(kind, target_id, task_id)
    except Exception as e:
        logger.warning(f"Could not clear debounce marker for {kind} {target_id}: {e}")


@celery_app.task(bind=True, base=SubProjectAggregationTask, name="fptracker.tasks.aggregate_subproject_task", **RETRY_OPTIONS)
def aggregate_subproject_task(self, target_id: str) -> Dict[str, Any]:
    """
    Recompute a sub-project's statistics, then its project's.

    Args:
        target_id: SubProject UUID string
    """
    from fptracker.core.database.models import SubProject
    from fptracker.core.ingestion.errors import NotFoundError
    from fptracker.core.ops.statistics_service import statistics_service

    async def _run():
        await _release_marker(KIND_SUBPROJECT, target_id, self.request.id)
        stats = await statistics_service.recompute_subproject(UUID(target_id))

        async with statistics_service.session_factory() as db:
            sub_project = await db.get(SubProject, UUID(target_id))
            if sub_project is None:
                raise NotFoundError(f"Sub-project {target_id} not found")
            project_id = sub_project.project_id

        await statistics_service.recompute_project(project_id)
        return {
            "sub_project_id": target_id,
            "project_id": str(project_id),
            "total_elements": stats["total_elements"],
        }

    logger.info(f"Aggregating sub-project {target_id} (attempt {self.request.retries + 1})")
    return asyncio.run(_run())


@celery_app.task(bind=True, base=ProjectAggregationTask, name="fptracker.tasks.aggregate_project_task", **RETRY_OPTIONS)
def aggregate_project_task(self, target_id: str) -> Dict[str, Any]:
    """
    Recompute a project's statistics from its sub-projects.

    Args:
        target_id: Project UUID string
    """
    from fptracker.core.ops.statistics_service import statistics_service

    async def _run():
        await _release_marker(KIND_PROJECT, target_id, self.request.id)
        stats = await statistics_service.recompute_project(UUID(target_id))
        return {"project_id": target_id, "total_elements": stats["total_elements"]}

    logger.info(f"Aggregating project {target_id} (attempt {self.request.retries + 1})")
    return asyncio.run(_run())
