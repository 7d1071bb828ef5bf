"""
Derived statistics for sub-projects and projects.

Sub-project statistics count elements and sum surface area per element
status. Project statistics are the sum over the project's sub-projects.
Both are stored on the parent row and served to the dashboards from there.
"""

import logging
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from fptracker.core.database.base import utcnow
from fptracker.core.database.models import Project, StructuralElement, SubProject
from fptracker.core.ingestion.errors import NotFoundError
from fptracker.core.shared.database_service import database_service

logger = logging.getLogger("fptracker.ops.statistics")

ELEMENT_STATUSES = ("active", "non clearance", "no_job", "complete")


def _empty_statistics() -> Dict[str, Any]:
    stats: Dict[str, Any] = {"total_elements": 0, "total_sqm": 0.0}
    for status in ELEMENT_STATUSES:
        stats[status] = {"count": 0, "sqm": 0.0}
    return stats


class StatisticsService:
    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self._session_factory = session_factory

    @property
    def session_factory(self) -> async_sessionmaker:
        return self._session_factory or database_service.session_factory

    async def recompute_subproject(self, sub_project_id: UUID) -> Dict[str, Any]:
        """
        Recompute and store a sub-project's statistics.

        Raises:
            NotFoundError: If the sub-project does not exist
        """
        async with self.session_factory() as db:
            sub_project = await db.get(SubProject, sub_project_id)
            if sub_project is None:
                raise NotFoundError(f"Sub-project {sub_project_id} not found")

            result = await db.execute(
                select(
                    StructuralElement.status,
                    func.count(StructuralElement.id),
                    func.coalesce(func.sum(StructuralElement.surface_area_sqm), 0),
                )
                .where(StructuralElement.sub_project_id == sub_project_id)
                .group_by(StructuralElement.status)
            )

            stats = _empty_statistics()
            for status, count, sqm in result.all():
                bucket = stats.setdefault(status, {"count": 0, "sqm": 0.0})
                bucket["count"] += count
                bucket["sqm"] = round(bucket["sqm"] + float(sqm), 2)
                stats["total_elements"] += count
                stats["total_sqm"] = round(stats["total_sqm"] + float(sqm), 2)
            stats["updated_at"] = utcnow().isoformat()

            sub_project.statistics = stats
            await db.commit()

        logger.info(f"Recomputed statistics for sub-project {sub_project_id}: {stats['total_elements']} elements")
        return stats

    async def recompute_project(self, project_id: UUID) -> Dict[str, Any]:
        """
        Sum the stored statistics of every sub-project into the project.

        Raises:
            NotFoundError: If the project does not exist
        """
        async with self.session_factory() as db:
            project = await db.get(Project, project_id)
            if project is None:
                raise NotFoundError(f"Project {project_id} not found")

            result = await db.execute(select(SubProject.statistics).where(SubProject.project_id == project_id))

            stats = _empty_statistics()
            sub_projects = 0
            for (sub_stats,) in result.all():
                sub_projects += 1
                if not sub_stats:
                    continue
                stats["total_elements"] += sub_stats.get("total_elements", 0)
                stats["total_sqm"] = round(stats["total_sqm"] + sub_stats.get("total_sqm", 0.0), 2)
                for status, bucket in sub_stats.items():
                    if not isinstance(bucket, dict):
                        continue
                    target = stats.setdefault(status, {"count": 0, "sqm": 0.0})
                    target["count"] += bucket.get("count", 0)
                    target["sqm"] = round(target["sqm"] + bucket.get("sqm", 0.0), 2)

            stats["sub_projects"] = sub_projects
            stats["updated_at"] = utcnow().isoformat()
            project.statistics = stats
            await db.commit()

        logger.info(f"Recomputed statistics for project {project_id} from {sub_projects} sub-projects")
        return stats


statistics_service = StatisticsService()
