"""
Celery tasks package for the fire-proofing tracker.

Celery discovers tasks via the include= list in celery_app.py, which
references each submodule directly. Every task keeps an explicit
``name="fptracker.tasks.<function_name>"`` used by routing and beat.
"""

from fptracker.core.tasks.aggregation import (
    aggregate_project_task,
    aggregate_subproject_task,
)
from fptracker.core.tasks.ingestion import (
    process_upload_session_task,
)
from fptracker.core.tasks.maintenance import (
    cleanup_failed_batches_task,
    cleanup_orphaned_documents_task,
    delete_upload_session_task,
    retry_failed_batches_task,
    sweep_stalled_uploads_task,
)

__all__ = [
    "aggregate_project_task",
    "aggregate_subproject_task",
    "cleanup_failed_batches_task",
    "cleanup_orphaned_documents_task",
    "delete_upload_session_task",
    "process_upload_session_task",
    "retry_failed_batches_task",
    "sweep_stalled_uploads_task",
]
