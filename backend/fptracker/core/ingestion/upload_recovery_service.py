"""
Recovery operations for upload sessions.

The id lists on each batch are the only record of what a batch wrote, so
every recovery operation deletes exactly those ids. Each batch is handled in
its own transaction together with the session write, which means a failure
halfway through a multi-batch operation leaves the session describing
exactly what has been deleted so far.

Operations:
    cleanup_failed_batches   delete residue of failed batches, reset to pending
    delete_batch             delete one batch's documents, reset to pending
    retry_batch              delete + flag a failed batch for reprocessing
    retry_failed_batches     retry_batch for every failed batch

Both retry operations queue ``process_upload_session_task`` for sessions
that have a stored file, so the reset batches are picked up again.
    delete_upload_session    delete all documents, then the session
"""

import asyncio
import logging
from typing import Dict, Iterable, List, Optional, Tuple, Union
from uuid import UUID

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fptracker.core.database.models import Job, StructuralElement
from fptracker.core.shared.cache_service import CacheService, cache_service

from .counters import adjust_element_counters
from .errors import InvalidStateError
from .upload_session import BATCH_FAILED, UploadSessionState
from .upload_session_repository import UploadSessionRepository

logger = logging.getLogger("fptracker.ingestion.recovery")

DELETE_CHUNK_SIZE = 500


def _chunks(ids: List[UUID], size: int = DELETE_CHUNK_SIZE) -> Iterable[List[UUID]]:
    for start in range(0, len(ids), size):
        yield ids[start:start + size]


async def delete_documents(
    db: AsyncSession,
    element_ids: Iterable[str],
    job_ids: Iterable[str],
) -> Tuple[int, int]:
    """
    Bulk delete jobs, then elements, by id.

    Returns:
        (elements deleted, jobs deleted), counting only rows that existed
    """
    element_uuids = [UUID(str(i)) for i in element_ids]
    job_uuids = [UUID(str(i)) for i in job_ids]

    jobs_deleted = 0
    for chunk in _chunks(job_uuids):
        result = await db.execute(delete(Job).where(Job.id.in_(chunk)))
        jobs_deleted += result.rowcount or 0

    elements_deleted = 0
    for chunk in _chunks(element_uuids):
        result = await db.execute(delete(StructuralElement).where(StructuralElement.id.in_(chunk)))
        elements_deleted += result.rowcount or 0

    return elements_deleted, jobs_deleted


class UploadRecoveryService:
    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        repository: Optional[UploadSessionRepository] = None,
        cache: Optional[CacheService] = None,
        scheduler=None,
        processing_task=None,
    ):
        self.repository = repository or UploadSessionRepository(session_factory)
        self.cache = cache or cache_service
        self._scheduler = scheduler
        self._processing_task = processing_task

    @property
    def scheduler(self):
        if self._scheduler is None:
            from fptracker.core.ops.aggregation_scheduler import aggregation_scheduler
            self._scheduler = aggregation_scheduler
        return self._scheduler

    @property
    def processing_task(self):
        if self._processing_task is None:
            from fptracker.core.tasks.ingestion import process_upload_session_task
            self._processing_task = process_upload_session_task
        return self._processing_task

    async def _enqueue_processing(self, upload) -> Optional[str]:
        """Queue reprocessing of the session's pending batches; failures are logged."""
        if not upload.file_path:
            logger.info(f"Upload {upload.upload_id} has no stored file, reprocess it from its rows")
            return None
        try:
            # apply_async does blocking broker I/O
            result = await asyncio.to_thread(
                self.processing_task.apply_async, kwargs={"session_id": str(upload.id)}
            )
        except Exception as e:
            logger.error(f"Could not queue processing of upload {upload.upload_id}: {e}")
            return None
        logger.info(f"Queued processing of upload {upload.upload_id} as task {result.id}")
        return result.id

    async def _clear_batch(
        self,
        session_id: Union[str, UUID],
        batch_number: int,
        retry: bool = False,
        only_if_failed: bool = False,
    ) -> Tuple[int, int, bool]:
        """
        Delete one batch's documents and reset it, in one transaction.

        Returns:
            (elements deleted, jobs deleted, whether the batch was reset)
        """
        async def clear(state: UploadSessionState, db: AsyncSession):
            batch = state.get_batch(batch_number)
            if retry and batch.status != BATCH_FAILED:
                raise InvalidStateError(
                    f"Batch {batch_number} is {batch.status}; only failed batches can be retried"
                )
            if only_if_failed and batch.status != BATCH_FAILED:
                return 0, 0, False

            elements, jobs = await delete_documents(db, batch.elements_created, batch.jobs_created)
            await adjust_element_counters(db, upload.project_id, upload.sub_project_id, -elements)
            if retry:
                state.retry_batch(batch_number)
            else:
                state.reset_batch(batch_number)
            return elements, jobs, True

        upload = await self.repository.get(session_id)
        _, result = await self.repository.mutate(session_id, clear)
        return result

    async def _after_change(self, upload, elements_deleted: int) -> None:
        if not elements_deleted:
            return
        await self.cache.invalidate_for_elements(upload.project_id, upload.sub_project_id)
        await self.scheduler.schedule_batch_aggregation(upload.project_id, upload.sub_project_id)

    async def cleanup_failed_batches(self, session_id: Union[str, UUID]) -> Dict[str, int]:
        """
        Delete whatever failed batches still reference and reset them.

        Running it again immediately is a no-op.

        Returns:
            {"batches_cleaned", "elements_deleted", "jobs_deleted"}
        """
        upload = await self.repository.get(session_id)
        numbers = [b.batch_number for b in UploadSessionState.from_row(upload).failed_batches]

        totals = {"batches_cleaned": 0, "elements_deleted": 0, "jobs_deleted": 0}
        try:
            for number in numbers:
                elements, jobs, cleaned = await self._clear_batch(session_id, number, only_if_failed=True)
                totals["batches_cleaned"] += int(cleaned)
                totals["elements_deleted"] += elements
                totals["jobs_deleted"] += jobs
        finally:
            await self._after_change(upload, totals["elements_deleted"])

        logger.info(
            f"Cleaned {totals['batches_cleaned']} failed batches of upload {upload.upload_id}: "
            f"{totals['elements_deleted']} elements, {totals['jobs_deleted']} jobs deleted"
        )
        return totals

    async def delete_batch(self, session_id: Union[str, UUID], batch_number: int) -> Dict[str, int]:
        """
        Delete a batch's documents regardless of its status and reset it.

        Raises:
            NotFoundError: Unknown session or batch number
        """
        upload = await self.repository.get(session_id)
        elements, jobs, _ = await self._clear_batch(session_id, batch_number)
        await self._after_change(upload, elements)

        logger.info(f"Deleted batch {batch_number} of upload {upload.upload_id}: {elements} elements, {jobs} jobs")
        return {"batch_number": batch_number, "elements_deleted": elements, "jobs_deleted": jobs}

    async def retry_batch(self, session_id: Union[str, UUID], batch_number: int) -> Dict[str, object]:
        """
        Delete a failed batch's residue, flag it pending and queue reprocessing.

        Returns:
            {"batch_number", "elements_deleted", "jobs_deleted", "task_id"}; the
            task id is None when nothing was queued

        Raises:
            NotFoundError: Unknown session or batch number
            InvalidStateError: If the batch is not failed (nothing is changed)
        """
        upload = await self.repository.get(session_id)
        elements, jobs, _ = await self._clear_batch(session_id, batch_number, retry=True)
        await self._after_change(upload, elements)
        task_id = await self._enqueue_processing(upload)

        logger.info(f"Batch {batch_number} of upload {upload.upload_id} reset for retry")
        return {"batch_number": batch_number, "elements_deleted": elements, "jobs_deleted": jobs, "task_id": task_id}

    async def retry_failed_batches(self, session_id: Union[str, UUID]) -> Dict[str, object]:
        """
        Flag every failed batch for retry and queue one reprocessing run.

        Returns:
            {"batches_reset", "elements_deleted", "jobs_deleted", "task_id"}
        """
        upload = await self.repository.get(session_id)
        numbers = [b.batch_number for b in UploadSessionState.from_row(upload).failed_batches]

        totals = {"batches_reset": 0, "elements_deleted": 0, "jobs_deleted": 0}
        try:
            for number in numbers:
                elements, jobs, _ = await self._clear_batch(session_id, number, retry=True)
                totals["batches_reset"] += 1
                totals["elements_deleted"] += elements
                totals["jobs_deleted"] += jobs
        finally:
            await self._after_change(upload, totals["elements_deleted"])

        totals["task_id"] = await self._enqueue_processing(upload) if totals["batches_reset"] else None
        logger.info(f"Reset {totals['batches_reset']} failed batches of upload {upload.upload_id} for retry")
        return totals

    async def delete_upload_session(self, session_id: Union[str, UUID]) -> Dict[str, object]:
        """
        Delete every document the session created, then the session itself.

        Returns:
            {"upload_id", "elements_deleted", "jobs_deleted", "batches_deleted"}
        """
        upload = await self.repository.get(session_id)
        state = UploadSessionState.from_row(upload)

        elements_deleted = 0
        jobs_deleted = 0
        try:
            for batch in state.batches:
                if not batch.elements_created and not batch.jobs_created:
                    continue
                elements, jobs, _ = await self._clear_batch(session_id, batch.batch_number)
                elements_deleted += elements
                jobs_deleted += jobs

            async with self.repository.session_factory() as db:
                await self.repository.delete(session_id, db)
                await db.commit()
        finally:
            await self._after_change(upload, elements_deleted)

        logger.info(
            f"Deleted upload session {upload.upload_id}: {elements_deleted} elements, "
            f"{jobs_deleted} jobs, {len(state.batches)} batches"
        )
        return {
            "upload_id": upload.upload_id,
            "elements_deleted": elements_deleted,
            "jobs_deleted": jobs_deleted,
            "batches_deleted": len(state.batches),
        }


upload_recovery_service = UploadRecoveryService()
