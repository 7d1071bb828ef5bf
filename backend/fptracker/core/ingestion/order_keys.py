"""
Sparse order keys for the jobs of one structural element.

Generated jobs sit at 100, 200, 300, ... A job inserted between two
neighbours takes the integer midpoint of their keys, so no existing row is
touched. Repeated insertion into the same gap eventually leaves no integer
midpoint (e.g. between 100 and 101); at that point the element's jobs are
renumbered back to multiples of the spacing, preserving order, and the
midpoint is taken from the fresh gap. Keys are therefore never duplicated.

Usage:
    async with database_service.get_session() as session:
        job = await job_ordering_service.insert_job(
            session, element_id, "Touch-up", after_job_id=primer_job.id
        )
"""

import logging
from typing import List, Optional, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fptracker.core.database.models import Job, StructuralElement

from .errors import InvalidStateError, NotFoundError
from .workflows import ORDER_KEY_SPACING, get_fire_proofing_type

logger = logging.getLogger("fptracker.ingestion.order_keys")


def midpoint_key(lower: Optional[int], upper: Optional[int], spacing: int = ORDER_KEY_SPACING) -> Optional[int]:
    """
    Key strictly between ``lower`` and ``upper``.

    ``lower=None`` means "before the first job" (treated as 0) and
    ``upper=None`` means "after the last job" (``lower + spacing``).

    Returns:
        The new key, or None when the gap holds no free integer
    """
    low = 0 if lower is None else lower
    if upper is None:
        return low + spacing
    if upper - low < 2:
        return None
    return (low + upper) // 2


def renumbered_keys(count: int, spacing: int = ORDER_KEY_SPACING) -> List[int]:
    return [position * spacing for position in range(1, count + 1)]


class JobOrderingService:
    """Insert and reorder jobs while keeping order keys unique and sparse."""

    def __init__(self, spacing: int = ORDER_KEY_SPACING):
        self.spacing = spacing

    async def list_jobs(self, session: AsyncSession, element_id: UUID) -> List[Job]:
        result = await session.execute(
            select(Job)
            .where(Job.structural_element_id == element_id)
            .order_by(Job.order_index.asc())
        )
        return list(result.scalars().all())

    async def _apply_keys(self, session: AsyncSession, jobs: Sequence[Job], keys: Sequence[int]) -> None:
        # Park on negative keys first so the unique (element, order) index
        # never sees two rows with the same key mid-update
        for i, job in enumerate(jobs, start=1):
            job.order_index = -i
        await session.flush()
        for job, key in zip(jobs, keys):
            job.order_index = key
        await session.flush()

    async def renumber(self, session: AsyncSession, element_id: UUID) -> List[Job]:
        """Reset an element's keys to spacing multiples, keeping their order."""
        jobs = await self.list_jobs(session, element_id)
        await self._apply_keys(session, jobs, renumbered_keys(len(jobs), self.spacing))
        logger.info(f"Renumbered {len(jobs)} jobs for element {element_id}")
        return jobs

    async def insert_job(
        self,
        session: AsyncSession,
        element_id: UUID,
        title: str,
        after_job_id: Optional[UUID] = None,
        description: Optional[str] = None,
        created_by: Optional[UUID] = None,
    ) -> Job:
        """
        Insert a job directly after ``after_job_id`` (or first when None).

        Raises:
            NotFoundError: If the element or the anchor job does not exist
        """
        element = await session.get(StructuralElement, element_id)
        if element is None:
            raise NotFoundError(f"Structural element {element_id} not found")

        jobs = await self.list_jobs(session, element_id)
        key = self._key_after(jobs, after_job_id)
        if key is None:
            jobs = await self.renumber(session, element_id)
            key = self._key_after(jobs, after_job_id)

        job = Job(
            structural_element_id=element.id,
            project_id=element.project_id,
            sub_project_id=element.sub_project_id,
            job_title=title,
            job_description=description or f"{title} for {element.structure_number}",
            job_type=element.fire_proofing_workflow,
            fire_proofing_type=get_fire_proofing_type(element.fire_proofing_workflow),
            order_index=key,
            status="pending",
            created_by=created_by,
        )
        session.add(job)
        await session.flush()
        return job

    def _key_after(self, jobs: Sequence[Job], after_job_id: Optional[UUID]) -> Optional[int]:
        if after_job_id is None:
            upper = jobs[0].order_index if jobs else None
            return midpoint_key(None, upper, self.spacing)

        for index, job in enumerate(jobs):
            if job.id == after_job_id:
                upper = jobs[index + 1].order_index if index + 1 < len(jobs) else None
                return midpoint_key(job.order_index, upper, self.spacing)

        raise NotFoundError(f"Job {after_job_id} is not attached to this element")

    async def reorder_jobs(self, session: AsyncSession, element_id: UUID, job_ids: Sequence[UUID]) -> List[Job]:
        """
        Apply a complete new ordering to an element's jobs.

        Raises:
            NotFoundError: If the element has no jobs
            InvalidStateError: If ``job_ids`` is not a permutation of its jobs
        """
        jobs = await self.list_jobs(session, element_id)
        if not jobs:
            raise NotFoundError(f"No jobs found for structural element {element_id}")

        by_id = {job.id: job for job in jobs}
        if len(job_ids) != len(jobs) or set(job_ids) != set(by_id):
            raise InvalidStateError("Job order must list every job of the element exactly once")

        ordered = [by_id[job_id] for job_id in job_ids]
        await self._apply_keys(session, ordered, renumbered_keys(len(ordered), self.spacing))
        return ordered


job_ordering_service = JobOrderingService()
