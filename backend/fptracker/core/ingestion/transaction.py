"""
Transaction wrapper for multi-row ingestion writes.

A ``DatabaseTransaction`` owns one AsyncSession for the lifetime of a unit of
work (one batch of spreadsheet rows: the structural elements, their jobs and
the counter increments). Either everything in the unit is committed or
nothing is: any exception rolls the session back before it propagates.

Ids of created elements and jobs are tracked for logging and accounting
only; rollback is the store's job, not a replay of the tracked ids.

Usage:
    async with DatabaseTransaction() as tx:
        tx.session.add(element)
        await tx.session.flush()
        tx.track_structural_element(element.id)

    result = await execute_in_transaction(create_rows)

Crash recovery for paths that do NOT share one transaction lives in
``cleanup_orphaned_documents``.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar
from uuid import UUID

from sqlalchemy import delete, exists, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fptracker.config import settings
from fptracker.core.database.models import Job, StructuralElement
from fptracker.core.shared.database_service import database_service

from .counters import adjust_element_counters
from .errors import TransactionError

logger = logging.getLogger("fptracker.ingestion.transaction")

T = TypeVar("T")


class DatabaseTransaction:
    """
    One atomic unit of ingestion work.

    Lifecycle:
        start() → [work on .session] → commit() | rollback()

    ``commit()`` and ``rollback()`` both end in ``cleanup()``, which closes
    the session exactly once per ``start()``.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        isolation_level: Optional[str] = None,
    ):
        self._session_factory = session_factory
        self._isolation_level = isolation_level or settings.transaction_isolation_level
        self._session: Optional[AsyncSession] = None
        self.is_active = False
        self.created_element_ids: List[UUID] = []
        self.created_job_ids: List[UUID] = []

    @property
    def session(self) -> AsyncSession:
        if not self.is_active or self._session is None:
            raise TransactionError("Transaction is not active")
        return self._session

    async def start(self) -> AsyncSession:
        """Open a session and begin a snapshot-isolated transaction."""
        factory = self._session_factory or database_service.session_factory
        session = factory()
        try:
            dialect = getattr(session.bind, "dialect", None)
            if dialect is not None and dialect.name == "sqlite":
                # SQLite transactions are serializable; no level to request
                await session.connection()
            else:
                await session.connection(execution_options={"isolation_level": self._isolation_level})
        except Exception as e:
            await session.close()
            logger.error(f"Failed to start transaction: {e}")
            raise TransactionError(f"Failed to start transaction: {e}") from e

        self._session = session
        self.is_active = True
        logger.debug("Started new transaction")
        return session

    def track_structural_element(self, element_id: UUID) -> None:
        self.created_element_ids.append(element_id)

    def track_job(self, job_id: UUID) -> None:
        self.created_job_ids.append(job_id)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "is_active": self.is_active,
            "structural_elements": len(self.created_element_ids),
            "jobs": len(self.created_job_ids),
            "total_operations": len(self.created_element_ids) + len(self.created_job_ids),
        }

    async def commit(self) -> Dict[str, int]:
        """
        Commit the transaction.

        Returns:
            Counts of created elements and jobs

        Raises:
            TransactionError: If there is no active transaction, or the commit
                failed (the transaction has been rolled back by then)
        """
        if not self.is_active or self._session is None:
            raise TransactionError("No active transaction to commit")

        counts = {
            "structural_elements": len(self.created_element_ids),
            "jobs": len(self.created_job_ids),
        }
        try:
            await self._session.commit()
            self.is_active = False
            logger.info(
                f"Committed transaction - created {counts['structural_elements']} structural elements "
                f"and {counts['jobs']} jobs"
            )
            return counts
        except Exception as e:
            logger.error(f"Commit failed: {e}")
            await self.rollback()
            raise TransactionError(f"Commit failed: {e}") from e
        finally:
            await self.cleanup()

    async def rollback(self) -> None:
        """Abort the transaction, discarding every write made under it."""
        if self._session is None:
            logger.debug("No session to roll back")
            return

        try:
            if self.is_active:
                await self._session.rollback()
                logger.info(
                    f"Rolled back transaction - discarded {len(self.created_element_ids)} structural "
                    f"elements and {len(self.created_job_ids)} jobs"
                )
            self.is_active = False
        except Exception as e:
            logger.error(f"Rollback error: {e}")
            raise TransactionError(f"Rollback failed: {e}") from e
        finally:
            await self.cleanup()

    async def cleanup(self) -> None:
        """Release the session. Subsequent calls are no-ops."""
        if self._session is None:
            return

        session, self._session = self._session, None
        self.is_active = False
        try:
            await session.close()
            logger.debug("Transaction session cleaned up")
        except Exception as e:
            logger.warning(f"Error during transaction cleanup: {e}")
        self.created_element_ids = []
        self.created_job_ids = []

    async def __aenter__(self) -> "DatabaseTransaction":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if exc_type is not None:
            await self.rollback()
            return False
        await self.commit()
        return False


async def execute_in_transaction(
    operation: Callable[[DatabaseTransaction], Awaitable[T]],
    session_factory: Optional[async_sessionmaker] = None,
) -> T:
    """
    Run ``operation`` inside a transaction, rolling back on any error.

    Raises:
        Whatever ``operation`` raised (after rollback), or TransactionError
        if the commit itself failed
    """
    transaction = DatabaseTransaction(session_factory)
    await transaction.start()
    try:
        result = await operation(transaction)
    except Exception as e:
        logger.error(f"Operation failed, rolling back: {e}")
        await transaction.rollback()
        raise
    await transaction.commit()
    return result


async def cleanup_orphaned_documents(
    since: datetime,
    project_id: Optional[UUID] = None,
    session_factory: Optional[async_sessionmaker] = None,
) -> Dict[str, int]:
    """
    Delete documents left behind by a crash between element and job writes.

    Removes:
    - structural elements created at/after ``since`` that declare a workflow
      but own zero jobs (project / sub-project counters are decremented)
    - jobs created at/after ``since`` whose element no longer exists

    Args:
        since: Only inspect documents created at or after this time
        project_id: Restrict to one project (all projects when None)

    Returns:
        {"cleaned_elements": int, "cleaned_jobs": int, "total_cleaned": int}
    """
    factory = session_factory or database_service.session_factory
    scope = f"project {project_id}" if project_id else "all projects"
    logger.info(f"Starting orphan cleanup for {scope} since {since.isoformat()}")

    async with factory() as session:
        try:
            has_jobs = exists().where(Job.structural_element_id == StructuralElement.id)
            element_query = select(
                StructuralElement.id, StructuralElement.project_id, StructuralElement.sub_project_id
            ).where(
                StructuralElement.created_at >= since,
                StructuralElement.fire_proofing_workflow.isnot(None),
                ~has_jobs,
            )
            if project_id:
                element_query = element_query.where(StructuralElement.project_id == project_id)
            orphaned_elements = (await session.execute(element_query)).all()

            cleaned_elements = 0
            if orphaned_elements:
                result = await session.execute(
                    delete(StructuralElement).where(
                        StructuralElement.id.in_([row.id for row in orphaned_elements])
                    )
                )
                cleaned_elements = result.rowcount or 0
                await _decrement_counters(session, orphaned_elements)

            has_element = exists().where(StructuralElement.id == Job.structural_element_id)
            job_query = select(Job.id).where(Job.created_at >= since, ~has_element)
            if project_id:
                job_query = job_query.where(Job.project_id == project_id)
            orphaned_job_ids = list((await session.execute(job_query)).scalars().all())

            cleaned_jobs = 0
            if orphaned_job_ids:
                result = await session.execute(delete(Job).where(Job.id.in_(orphaned_job_ids)))
                cleaned_jobs = result.rowcount or 0

            await session.commit()
        except Exception as e:
            await session.rollback()
            logger.error(f"Orphan cleanup failed: {e}")
            raise

    logger.info(f"Cleaned {cleaned_elements} orphaned elements and {cleaned_jobs} orphaned jobs")
    return {
        "cleaned_elements": cleaned_elements,
        "cleaned_jobs": cleaned_jobs,
        "total_cleaned": cleaned_elements + cleaned_jobs,
    }


async def _decrement_counters(session: AsyncSession, rows) -> None:
    per_parent: Dict[tuple, int] = {}
    for row in rows:
        key = (row.project_id, row.sub_project_id)
        per_parent[key] = per_parent.get(key, 0) + 1

    for (project_id, sub_project_id), count in per_parent.items():
        await adjust_element_counters(session, project_id, sub_project_id, -count)
