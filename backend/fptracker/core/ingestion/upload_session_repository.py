"""
Persistence for upload sessions.

All writes go through ``mutate()``: load the row, rebuild the
``UploadSessionState`` aggregate, apply one mutation, write the whole batch
list back and commit. The ``version`` column makes each commit a
compare-and-set; when another writer got there first SQLAlchemy raises
``StaleDataError`` and the mutation is re-applied on a fresh load, up to
``settings.session_save_max_attempts`` times.

A mutation receives the open database session as well, so document deletes
and counter updates commit in the same transaction as the session write.
"""

import logging
from typing import Any, Awaitable, Callable, List, Optional, Tuple, TypeVar, Union
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from fptracker.config import settings
from fptracker.core.database.models import UploadSession
from fptracker.core.shared.database_service import database_service

from .errors import NotFoundError
from .upload_session import UploadSessionState, build_batches

logger = logging.getLogger("fptracker.ingestion.sessions")

T = TypeVar("T")

Mutation = Callable[[UploadSessionState, AsyncSession], Awaitable[T]]


def _as_uuid(value: Union[str, UUID]) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


class UploadSessionRepository:
    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self._session_factory = session_factory

    @property
    def session_factory(self) -> async_sessionmaker:
        return self._session_factory or database_service.session_factory

    async def create(
        self,
        upload_id: str,
        project_id: UUID,
        file_name: str,
        total_rows: int,
        sub_project_id: Optional[UUID] = None,
        created_by: Optional[UUID] = None,
        file_path: Optional[str] = None,
        batch_size: Optional[int] = None,
    ) -> UploadSession:
        """
        Create a session partitioned into batches.

        A second call with the same ``upload_id`` returns the session created
        by the first one instead of starting a parallel ingestion.
        """
        batch_size = batch_size or settings.upload_batch_size
        async with self.session_factory() as db:
            existing = await self._find_by_upload_id(db, upload_id)
            if existing is not None:
                logger.info(f"Upload {upload_id} already has session {existing.id}, reusing it")
                return existing

            batches = build_batches(total_rows, batch_size)
            row = UploadSession(
                upload_id=upload_id,
                project_id=project_id,
                sub_project_id=sub_project_id,
                created_by=created_by,
                file_name=file_name,
                file_path=file_path,
                total_rows=total_rows,
                batch_size=batch_size,
                total_batches=len(batches),
            )
            UploadSessionState(batches).apply_to(row)
            db.add(row)
            try:
                await db.commit()
            except IntegrityError:
                # Lost a race with a concurrent submission of the same upload
                await db.rollback()
                existing = await self._find_by_upload_id(db, upload_id)
                if existing is None:
                    raise
                return existing

        logger.info(
            f"Created upload session {row.id} for {file_name}: "
            f"{total_rows} rows in {len(batches)} batches of {batch_size}"
        )
        return row

    async def _find_by_upload_id(self, db: AsyncSession, upload_id: str) -> Optional[UploadSession]:
        result = await db.execute(select(UploadSession).where(UploadSession.upload_id == upload_id))
        return result.scalar_one_or_none()

    async def get(self, session_id: Union[str, UUID]) -> UploadSession:
        """
        Raises:
            NotFoundError: If the session does not exist
        """
        async with self.session_factory() as db:
            row = await db.get(UploadSession, _as_uuid(session_id))
            if row is None:
                raise NotFoundError(f"Upload session {session_id} not found")
            return row

    async def get_by_upload_id(self, upload_id: str) -> Optional[UploadSession]:
        async with self.session_factory() as db:
            return await self._find_by_upload_id(db, upload_id)

    async def list_recent(self, project_id: UUID, limit: int = 20) -> List[UploadSession]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(UploadSession)
                .where(UploadSession.project_id == project_id)
                .order_by(UploadSession.created_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def list_stale_in_progress(self, updated_before, upload_id: Optional[str] = None) -> List[UploadSession]:
        query = select(UploadSession).where(
            UploadSession.status == "in_progress",
            UploadSession.updated_at < updated_before,
        )
        if upload_id is not None:
            query = query.where(UploadSession.upload_id == upload_id)
        async with self.session_factory() as db:
            result = await db.execute(query)
            return list(result.scalars().all())

    async def mutate(
        self,
        session_id: Union[str, UUID],
        mutation: Mutation,
        max_attempts: Optional[int] = None,
    ) -> Tuple[UploadSession, Any]:
        """
        Apply ``mutation`` to the session and persist it.

        Args:
            session_id: Upload session id
            mutation: ``async (state, db) -> result``. Runs once per attempt
                against a freshly loaded state; any database work it does
                commits together with the session write.
            max_attempts: Attempts before a version conflict propagates

        Returns:
            (persisted row, mutation result)

        Raises:
            NotFoundError: If the session does not exist
            StaleDataError: If every attempt lost a version race
        """
        session_id = _as_uuid(session_id)
        attempts = max_attempts or settings.session_save_max_attempts

        for attempt in range(1, attempts + 1):
            async with self.session_factory() as db:
                row = await db.get(UploadSession, session_id)
                if row is None:
                    raise NotFoundError(f"Upload session {session_id} not found")

                state = UploadSessionState.from_row(row)
                result = await mutation(state, db)
                state.apply_to(row)
                try:
                    await db.commit()
                    return row, result
                except StaleDataError:
                    await db.rollback()
                    if attempt >= attempts:
                        raise
                    logger.warning(
                        f"Upload session {session_id} changed concurrently, "
                        f"re-applying (attempt {attempt + 1}/{attempts})"
                    )

        raise RuntimeError("unreachable")

    async def delete(self, session_id: Union[str, UUID], db: AsyncSession) -> bool:
        """Delete the session row inside the caller's transaction."""
        row = await db.get(UploadSession, _as_uuid(session_id))
        if row is None:
            return False
        await db.delete(row)
        return True


upload_session_repository = UploadSessionRepository()
