"""
Batch ingestion of spreadsheet rows.

Each batch of an upload session is written by one ``DatabaseTransaction``:
every element of the batch, the jobs of every element, the counter
increments and the batch's entry on the session row (its created ids)
commit together or not at all. A failed batch is recorded on the session
through the repository after the rollback.

Rows without a structure number are skipped silently. Rows matching an
existing element of the same project / sub-project on the natural key
(structure number, drawing, level, member type, grid, part mark) are skipped
and counted as duplicates.

Usage:
    session = await batch_processor.ingest_upload(
        upload_id="a1b2", project_id=project.id, file_name="schedule.xlsx",
        rows=rows, sub_project_id=sub_project.id,
    )
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from fptracker.config import settings
from fptracker.core.database.models import StructuralElement, UploadSession
from fptracker.core.shared.cache_service import CacheService, cache_service

from .counters import adjust_element_counters
from .errors import InvalidStateError, NotFoundError, TransactionError, UnknownWorkflowError
from .row_transform import (
    DUPLICATE_KEY_FIELDS,
    ProjectContext,
    StructuralElementPayload,
    read_workbook_rows,
    transform_row,
)
from .transaction import DatabaseTransaction
from .upload_session import BATCH_FAILED, BATCH_PENDING, BATCH_SUCCESS, UploadSessionState
from .upload_session_repository import UploadSessionRepository
from .workflows import create_fire_proofing_jobs, is_valid_workflow

logger = logging.getLogger("fptracker.ingestion.batches")

# PostgreSQL serialization_failure, raised under REPEATABLE READ
SERIALIZATION_FAILURE = "40001"


def is_write_conflict(error: Optional[BaseException]) -> bool:
    """True when a commit lost a race on the upload session row."""
    if isinstance(error, StaleDataError):
        return True
    if isinstance(error, DBAPIError):
        orig = error.orig
        return (getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)) == SERIALIZATION_FAILURE
    return False


def _match(column, value):
    return column.is_(None) if value is None else column == value


async def find_duplicate(session: AsyncSession, payload: StructuralElementPayload) -> Optional[UUID]:
    """Id of an existing element with the same natural key, if any."""
    conditions = [
        StructuralElement.project_id == payload.project_id,
        _match(StructuralElement.sub_project_id, payload.sub_project_id),
    ]
    for field in DUPLICATE_KEY_FIELDS:
        conditions.append(_match(getattr(StructuralElement, field), getattr(payload, field)))

    result = await session.execute(select(StructuralElement.id).where(*conditions).limit(1))
    return result.scalar_one_or_none()


def context_for(row: UploadSession) -> ProjectContext:
    return ProjectContext(
        project_id=row.project_id,
        sub_project_id=row.sub_project_id,
        created_by=row.created_by,
    )


class BatchProcessor:
    """
    Drives upload sessions through their batches.

    Collaborators are injectable; the defaults are the process-wide
    singletons.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        repository: Optional[UploadSessionRepository] = None,
        cache: Optional[CacheService] = None,
        scheduler=None,
    ):
        self._session_factory = session_factory
        self.repository = repository or UploadSessionRepository(session_factory)
        self.cache = cache or cache_service
        self._scheduler = scheduler

    @property
    def scheduler(self):
        if self._scheduler is None:
            from fptracker.core.ops.aggregation_scheduler import aggregation_scheduler
            self._scheduler = aggregation_scheduler
        return self._scheduler

    async def process_batch(
        self,
        session_id: UUID,
        batch_number: int,
        rows: Sequence[Mapping[str, Any]],
        context: Optional[ProjectContext] = None,
    ) -> Dict[str, Any]:
        """
        Write one pending batch and record its outcome on the session.

        The session row is loaded in the writer's transaction and the batch is
        marked ``success`` there, so the id lists commit together with the
        documents they name. If another writer changed the session in the
        meantime the whole batch is rolled back and written again while the
        batch is still pending.

        Args:
            session_id: Upload session id
            batch_number: 1-based batch number
            rows: All data rows of the sheet; the batch's range is sliced out
            context: Target project; defaults to the session's own

        Returns:
            Outcome dict: batch_number, status, elements_created, jobs_created,
            duplicates_skipped, error

        Raises:
            NotFoundError: Unknown session or batch
            InvalidStateError: If the batch is not pending
        """
        attempts = settings.session_save_max_attempts
        for attempt in range(1, attempts + 1):
            transaction = DatabaseTransaction(self._session_factory)
            try:
                outcome = await self._write_batch(transaction, session_id, batch_number, rows, context)
            except (NotFoundError, InvalidStateError):
                await transaction.rollback()
                raise
            except Exception as e:
                logger.error(f"Batch {batch_number} of upload session {session_id} failed: {e}")
                await transaction.rollback()
                return await self._record_failure(session_id, batch_number, e)

            try:
                await transaction.commit()
            except TransactionError as e:
                if not is_write_conflict(e.__cause__):
                    return await self._record_failure(session_id, batch_number, e)

                current = UploadSessionState.from_row(await self.repository.get(session_id)).get_batch(batch_number)
                if current.status != BATCH_PENDING:
                    logger.warning(
                        f"Batch {batch_number} of upload session {session_id} became {current.status} "
                        f"while it was written, discarding the write"
                    )
                    return self._outcome(batch_number, current.status, error=current.error_message)
                if attempt >= attempts:
                    return await self._record_failure(session_id, batch_number, e)
                logger.warning(
                    f"Upload session {session_id} changed while batch {batch_number} was written, "
                    f"rewriting (attempt {attempt + 1}/{attempts})"
                )
                continue

            logger.info(
                f"Batch {batch_number} committed: {outcome['elements_created']} elements, "
                f"{outcome['jobs_created']} jobs, {outcome['duplicates_skipped']} duplicates skipped"
            )
            return outcome

        raise RuntimeError("unreachable")

    async def _write_batch(
        self,
        transaction: DatabaseTransaction,
        session_id: UUID,
        batch_number: int,
        rows: Sequence[Mapping[str, Any]],
        context: Optional[ProjectContext],
    ) -> Dict[str, Any]:
        await transaction.start()
        db = transaction.session

        upload = await db.get(UploadSession, session_id)
        if upload is None:
            raise NotFoundError(f"Upload session {session_id} not found")
        state = UploadSessionState.from_row(upload)
        batch = state.get_batch(batch_number)
        if batch.status != BATCH_PENDING:
            raise InvalidStateError(f"Batch {batch_number} is {batch.status}, not pending")

        context = context or context_for(upload)
        batch_rows = rows[batch.start_row - 1:batch.end_row]

        logger.info(
            f"Processing batch {batch_number}/{upload.total_batches} of upload {upload.upload_id} "
            f"(rows {batch.start_row}-{batch.end_row})"
        )

        element_ids: List[UUID] = []
        job_ids: List[UUID] = []
        duplicates = 0

        for offset, raw in enumerate(batch_rows):
            row_number = batch.start_row + offset
            payload = transform_row(raw, context, row_number)
            if payload is None:
                continue

            if await find_duplicate(db, payload):
                duplicates += 1
                continue

            workflow = payload.fire_proofing_workflow
            if workflow and not is_valid_workflow(workflow):
                raise UnknownWorkflowError(workflow, row_number)

            element = StructuralElement(**payload.model_dump())
            db.add(element)
            await db.flush()
            transaction.track_structural_element(element.id)
            element_ids.append(element.id)

            for job in await create_fire_proofing_jobs(db, element, context.created_by):
                transaction.track_job(job.id)
                job_ids.append(job.id)

        await adjust_element_counters(db, context.project_id, context.sub_project_id, len(element_ids))

        # Committed with the documents; the version column guards the write
        state.mark_batch_success(batch_number, element_ids, job_ids, duplicates)
        state.apply_to(upload)
        return self._outcome(batch_number, BATCH_SUCCESS, len(element_ids), len(job_ids), duplicates)

    @staticmethod
    def _outcome(
        batch_number: int,
        status: str,
        elements: int = 0,
        jobs: int = 0,
        duplicates: int = 0,
        error: Optional[str] = None,
    ) -> Dict[str, Any]:
        return {
            "batch_number": batch_number,
            "status": status,
            "elements_created": elements,
            "jobs_created": jobs,
            "duplicates_skipped": duplicates,
            "error": error,
        }

    async def _record_failure(self, session_id: UUID, batch_number: int, error: Exception) -> Dict[str, Any]:
        details = {
            "type": type(error).__name__,
            "row_number": getattr(error, "row_number", None),
        }

        async def record(state: UploadSessionState, db: AsyncSession):
            return state.mark_batch_failed(batch_number, str(error), details)

        await self.repository.mutate(session_id, record)
        return self._outcome(batch_number, BATCH_FAILED, error=str(error))

    async def process_pending_batches(
        self,
        session_id: UUID,
        rows: Sequence[Mapping[str, Any]],
    ) -> UploadSession:
        """
        Process every pending batch in order, then refresh caches and
        schedule aggregation for the affected parents.

        Batches that stop being pending while the loop runs (for example
        failed by the stall sweeper) are left alone.
        """
        async def begin(state: UploadSessionState, db: AsyncSession):
            state.begin_processing()

        upload, _ = await self.repository.mutate(session_id, begin)
        context = context_for(upload)
        numbers = [b.batch_number for b in UploadSessionState.from_row(upload).pending_batches]

        for number in numbers:
            try:
                outcome = await self.process_batch(session_id, number, rows, context)
            except InvalidStateError:
                logger.warning(f"Batch {number} of upload {upload.upload_id} is no longer pending, skipping")
                continue

            if outcome["status"] == BATCH_SUCCESS and outcome["elements_created"]:
                await self.scheduler.schedule_batch_aggregation(upload.project_id, upload.sub_project_id)

        await self.cache.invalidate_for_elements(upload.project_id, upload.sub_project_id)

        upload = await self.repository.get(session_id)
        logger.info(f"Upload {upload.upload_id} finished processing: {upload.status} {upload.summary}")
        return upload

    async def ingest_upload(
        self,
        upload_id: str,
        project_id: UUID,
        file_name: str,
        rows: Optional[Sequence[Mapping[str, Any]]] = None,
        file_path: Optional[str] = None,
        sub_project_id: Optional[UUID] = None,
        created_by: Optional[UUID] = None,
        batch_size: Optional[int] = None,
    ) -> UploadSession:
        """
        Create (or reuse) the session for ``upload_id`` and process it.

        Rows are read from ``file_path`` when not given.
        """
        if rows is None:
            if not file_path:
                raise ValueError("Either rows or file_path is required")
            rows = read_workbook_rows(Path(file_path))

        upload = await self.repository.create(
            upload_id=upload_id,
            project_id=project_id,
            file_name=file_name,
            total_rows=len(rows),
            sub_project_id=sub_project_id,
            created_by=created_by,
            file_path=file_path,
            batch_size=batch_size,
        )
        return await self.process_pending_batches(upload.id, rows)

    async def process_upload_file(self, session_id: UUID) -> UploadSession:
        """Process the pending batches of an existing session from its stored file."""
        upload = await self.repository.get(session_id)
        if not upload.file_path:
            raise InvalidStateError(f"Upload session {session_id} has no stored file")
        rows = read_workbook_rows(Path(upload.file_path))
        return await self.process_pending_batches(upload.id, rows)


batch_processor = BatchProcessor()
