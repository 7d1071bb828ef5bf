"""
Upload ingestion Celery tasks.
"""
import asyncio
import logging
from typing import Any, Dict
from uuid import UUID

from fptracker.celery_app import app as celery_app

logger = logging.getLogger("fptracker.tasks")


@celery_app.task(bind=True, name="fptracker.tasks.process_upload_session_task")
def process_upload_session_task(self, session_id: str) -> Dict[str, Any]:
    """
    Process every pending batch of an upload session from its stored file.

    Not auto-retried: a failed batch is recorded on the session, reset with
    the retry operations and picked up by the next run of this task.

    Args:
        session_id: UploadSession UUID string

    Returns:
        Dict with the final session status and summary
    """
    from fptracker.core.ingestion.batch_processor import batch_processor

    logger.info(f"Processing upload session {session_id}")

    async def _run():
        upload = await batch_processor.process_upload_file(UUID(session_id))
        return {
            "session_id": session_id,
            "upload_id": upload.upload_id,
            "status": upload.status,
            "summary": upload.summary,
        }

    result = asyncio.run(_run())
    logger.info(f"Upload session {session_id} processed: {result['status']}")
    return result
