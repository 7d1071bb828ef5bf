"""
Maintenance and recovery Celery tasks.

Both sweeps are safe to run at any time and from several workers at once:
the stall sweep writes with a version check, and the orphan sweep only
deletes elements that declare a workflow but own no jobs, and jobs whose
element is gone. It does not consult upload sessions.

The upload recovery tasks wrap ``UploadRecoveryService`` for one session
each and report failures in their result instead of retrying.
"""
import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict, Optional
from uuid import UUID

from fptracker.celery_app import app as celery_app
from fptracker.config import settings
from fptracker.core.database.base import utcnow

logger = logging.getLogger("fptracker.tasks.recovery")


@celery_app.task(bind=True, name="fptracker.tasks.sweep_stalled_uploads_task")
def sweep_stalled_uploads_task(self) -> Dict[str, Any]:
    """
    Resolve upload sessions abandoned by a crashed worker.

    Should be called:
    1. Periodically via Celery beat
    2. On worker startup (via celery signal)

    Returns:
        Dict with sweep counts, or a failed status
    """
    from fptracker.core.ops.stall_sweeper import stall_sweeper

    try:
        result = asyncio.run(stall_sweeper.sweep())
        if result["resolved"]:
            logger.info(f"Stall sweep complete: {result}")
        return {"status": "completed", **result}
    except Exception as e:
        logger.error(f"Stall sweep failed: {e}", exc_info=True)
        return {"status": "failed", "error": str(e)}


@celery_app.task(bind=True, name="fptracker.tasks.cleanup_orphaned_documents_task")
def cleanup_orphaned_documents_task(
    self,
    lookback_hours: Optional[int] = None,
    project_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Delete elements without their workflow jobs and jobs without elements.

    Args:
        lookback_hours: Only inspect documents created within this window
        project_id: Restrict the sweep to one project

    Returns:
        Dict with cleanup counts, or a failed status
    """
    from fptracker.core.ingestion.transaction import cleanup_orphaned_documents

    hours = lookback_hours or settings.orphan_sweep_lookback_hours
    since = utcnow() - timedelta(hours=hours)
    logger.info(f"Starting orphaned document cleanup (lookback={hours}h, project={project_id or 'all'})")

    try:
        result = asyncio.run(
            cleanup_orphaned_documents(since, UUID(project_id) if project_id else None)
        )
        logger.info(f"Orphan cleanup complete: {result}")
        return {"status": "completed", **result}
    except Exception as e:
        logger.error(f"Orphan cleanup failed: {e}", exc_info=True)
        return {"status": "failed", "error": str(e)}


def _run_recovery(operation: str, session_id: str) -> Dict[str, Any]:
    from fptracker.core.ingestion.upload_recovery_service import upload_recovery_service

    method = getattr(upload_recovery_service, operation)
    try:
        result = asyncio.run(method(UUID(session_id)))
        logger.info(f"{operation} for upload session {session_id} complete: {result}")
        return {"status": "completed", "session_id": session_id, **result}
    except Exception as e:
        logger.error(f"{operation} for upload session {session_id} failed: {e}", exc_info=True)
        return {"status": "failed", "session_id": session_id, "error": str(e)}


@celery_app.task(bind=True, name="fptracker.tasks.cleanup_failed_batches_task")
def cleanup_failed_batches_task(self, session_id: str) -> Dict[str, Any]:
    """
    Delete what the failed batches of a session still reference and reset them.

    Args:
        session_id: UploadSession UUID string
    """
    return _run_recovery("cleanup_failed_batches", session_id)


@celery_app.task(bind=True, name="fptracker.tasks.retry_failed_batches_task")
def retry_failed_batches_task(self, session_id: str) -> Dict[str, Any]:
    """
    Reset every failed batch of a session and queue its reprocessing.

    Args:
        session_id: UploadSession UUID string
    """
    return _run_recovery("retry_failed_batches", session_id)


@celery_app.task(bind=True, name="fptracker.tasks.delete_upload_session_task")
def delete_upload_session_task(self, session_id: str) -> Dict[str, Any]:
    """
    Delete every document an upload created, then the session.

    Args:
        session_id: UploadSession UUID string
    """
    return _run_recovery("delete_upload_session", session_id)
