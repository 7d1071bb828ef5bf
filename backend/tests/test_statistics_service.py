"""
Tests for sub-project and project statistics.
"""

import uuid

import pytest

from fptracker.core.database import Project, StructuralElement, SubProject
from fptracker.core.ingestion.errors import NotFoundError
from fptracker.core.ops.statistics_service import StatisticsService


@pytest.fixture
def statistics(session_factory):
    return StatisticsService(session_factory)


async def _add_elements(session_factory, sub_project, *specs):
    async with session_factory() as db:
        for number, (status, sqm) in enumerate(specs, start=1):
            db.add(StructuralElement(
                project_id=sub_project.project_id,
                sub_project_id=sub_project.id,
                structure_number=f"S-{sub_project.name}-{number}",
                status=status,
                surface_area_sqm=sqm,
            ))
        await db.commit()


class TestStatisticsService:
    """Test statistics recomputation."""

    @pytest.mark.asyncio
    async def test_sub_project_buckets_by_status(self, statistics, session_factory, sub_project):
        await _add_elements(session_factory, sub_project, ("active", 2.5), ("active", 1.25), ("complete", 4.0))

        stats = await statistics.recompute_subproject(sub_project.id)

        assert stats["total_elements"] == 3
        assert stats["total_sqm"] == 7.75
        assert stats["active"] == {"count": 2, "sqm": 3.75}
        assert stats["complete"] == {"count": 1, "sqm": 4.0}
        assert stats["no_job"] == {"count": 0, "sqm": 0.0}

        async with session_factory() as db:
            stored = (await db.get(SubProject, sub_project.id)).statistics
        assert stored["total_elements"] == 3

    @pytest.mark.asyncio
    async def test_project_sums_sub_projects(self, statistics, session_factory, project, sub_project):
        async with session_factory() as db:
            other = SubProject(project_id=project.id, name="Tank farm")
            db.add(other)
            await db.commit()

        await _add_elements(session_factory, sub_project, ("active", 2.0))
        await _add_elements(session_factory, other, ("active", 3.0), ("non clearance", 1.0))
        await statistics.recompute_subproject(sub_project.id)
        await statistics.recompute_subproject(other.id)

        stats = await statistics.recompute_project(project.id)

        assert stats["sub_projects"] == 2
        assert stats["total_elements"] == 3
        assert stats["total_sqm"] == 6.0
        assert stats["active"] == {"count": 2, "sqm": 5.0}
        assert stats["non clearance"] == {"count": 1, "sqm": 1.0}

        async with session_factory() as db:
            assert (await db.get(Project, project.id)).statistics["total_elements"] == 3

    @pytest.mark.asyncio
    async def test_empty_sub_project(self, statistics, sub_project):
        stats = await statistics.recompute_subproject(sub_project.id)

        assert stats["total_elements"] == 0
        assert stats["total_sqm"] == 0.0

    @pytest.mark.asyncio
    async def test_unknown_targets(self, statistics):
        with pytest.raises(NotFoundError):
            await statistics.recompute_subproject(uuid.uuid4())
        with pytest.raises(NotFoundError):
            await statistics.recompute_project(uuid.uuid4())
