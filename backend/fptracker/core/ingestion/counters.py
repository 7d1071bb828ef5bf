"""Relative updates of the denormalised structural element counters."""

from typing import Optional
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from fptracker.core.database.models import Project, SubProject


async def adjust_element_counters(
    session: AsyncSession,
    project_id: UUID,
    sub_project_id: Optional[UUID],
    delta: int,
) -> None:
    """
    Apply ``count = count + delta`` to the project and, when given, the
    sub-project. Never reads and writes back an absolute value.
    """
    if not delta:
        return

    await session.execute(
        update(Project)
        .where(Project.id == project_id)
        .values(structural_elements_count=Project.structural_elements_count + delta)
    )
    if sub_project_id:
        await session.execute(
            update(SubProject)
            .where(SubProject.id == sub_project_id)
            .values(structural_elements_count=SubProject.structural_elements_count + delta)
        )
