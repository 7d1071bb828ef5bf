"""
Stall sweeper for abandoned upload sessions.

A worker that crashes mid-upload leaves its session ``in_progress`` forever.
The sweeper looks for ``in_progress`` sessions whose last write is older
than ``settings.stall_threshold_seconds`` and settles them:

    no batch processed yet   → every batch failed, session failed
    some batches pending     → pending batches failed, status recomputed
    no batches pending       → status recomputed and persisted

It never deletes documents; failed batches stay recoverable through the
recovery operations.

The write is a compare-and-set on the session version seen when the session
was selected. If a worker wrote in between, the session is skipped: the
worker is alive and made progress.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from fptracker.config import settings
from fptracker.core.database.base import utcnow
from fptracker.core.ingestion.errors import NotFoundError, StallDetected
from fptracker.core.ingestion.upload_session import SESSION_IN_PROGRESS, UploadSessionState
from fptracker.core.ingestion.upload_session_repository import UploadSessionRepository

logger = logging.getLogger("fptracker.ops.stall_sweeper")


class StallSweeper:
    def __init__(
        self,
        repository: Optional[UploadSessionRepository] = None,
        threshold_seconds: Optional[int] = None,
    ):
        self.repository = repository or UploadSessionRepository()
        self.threshold_seconds = threshold_seconds or settings.stall_threshold_seconds

    async def sweep(
        self,
        now: Optional[datetime] = None,
        dry_run: bool = False,
        upload_id: Optional[str] = None,
    ) -> Dict[str, int]:
        """
        Resolve every stalled session.

        Args:
            now: Reference time (defaults to the current UTC time)
            dry_run: Log how each session would be resolved without writing
            upload_id: Only consider the session of this upload

        Returns:
            {"examined": int, "resolved": int, "skipped": int}; in a dry run
            ``resolved`` counts the sessions that would be resolved
        """
        now = now or utcnow()
        cutoff = now - timedelta(seconds=self.threshold_seconds)
        stalled = await self.repository.list_stale_in_progress(cutoff, upload_id=upload_id)

        resolved = 0
        skipped = 0
        for upload in stalled:
            if dry_run:
                self._preview(upload, now)
                resolved += 1
            elif await self._resolve(upload, cutoff, now):
                resolved += 1
            else:
                skipped += 1

        if stalled:
            prefix = "[DRY RUN] " if dry_run else ""
            logger.info(f"{prefix}Stall sweep: {len(stalled)} examined, {resolved} resolved, {skipped} skipped")
        else:
            logger.debug("Stall sweep: no stalled upload sessions")
        return {"examined": len(stalled), "resolved": resolved, "skipped": skipped}

    def _preview(self, upload, now: datetime) -> None:
        state = UploadSessionState.from_row(upload)
        failed = settle_stalled(state, now)
        logger.info(
            f"[DRY RUN] Upload session {upload.upload_id} would be resolved as {state.status} "
            f"({failed} pending batches marked failed)"
        )

    async def _resolve(self, upload, cutoff: datetime, now: datetime) -> bool:
        seen_version = upload.version

        async def settle(state: UploadSessionState, db: AsyncSession) -> bool:
            if (
                state.version != seen_version
                or state.status != SESSION_IN_PROGRESS
                or (state.updated_at is not None and state.updated_at >= cutoff)
            ):
                return False
            settle_stalled(state, now)
            return True

        try:
            row, settled = await self.repository.mutate(upload.id, settle, max_attempts=1)
        except (StaleDataError, NotFoundError):
            settled = False

        if settled:
            logger.warning(f"Upload session {upload.upload_id} stalled, resolved as {row.status}")
        else:
            logger.info(f"Upload session {upload.upload_id} changed since selection, skipping")
        return settled


def settle_stalled(state: UploadSessionState, now: datetime) -> int:
    """Fail the pending batches of a stalled session and recompute it. Returns how many were failed."""
    reason = "batch not processed" if state.has_processed_batches else "no batches processed"
    stalled_since = state.updated_at.isoformat() if state.updated_at else None

    pending = state.pending_batches
    for batch in pending:
        stall = StallDetected(batch.batch_number, reason)
        state.mark_batch_failed(
            batch.batch_number,
            str(stall),
            {"type": "StallDetected", "stalled_since": stalled_since},
            now=now,
        )
    if not pending:
        state.recompute(now)
    return len(pending)


stall_sweeper = StallSweeper()
