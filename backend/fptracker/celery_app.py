"""
Celery application setup for the fire-proofing tracker.

Configures Celery using environment-driven settings so workers and the API
share the same broker/result backend. Tasks live in fptracker.core.tasks.

Queue Architecture:
- processing: Upload ingestion and aggregation tasks (FIFO)
- maintenance: Stall sweeps, orphan cleanup and upload recovery (non-blocking)
"""
import asyncio
import logging
import os

from celery import Celery
from celery.signals import worker_process_init, worker_process_shutdown, worker_ready
from kombu import Queue

from fptracker.config import settings


def _bool(val: str, default: bool = False) -> bool:
    if val is None:
        return default
    return str(val).lower() in {"1", "true", "yes", "on"}


BROKER_URL = os.getenv("CELERY_BROKER_URL", settings.celery_broker_url)
RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", settings.celery_result_backend)

app = Celery(
    "fptracker",
    broker=BROKER_URL,
    backend=RESULT_BACKEND,
    include=[
        "fptracker.core.tasks.ingestion",
        "fptracker.core.tasks.maintenance",
        "fptracker.core.tasks.aggregation",
    ],
)

app.conf.task_queues = (
    Queue("processing", routing_key="processing"),
    Queue("maintenance", routing_key="maintenance"),
)

app.conf.update(
    task_acks_late=_bool(os.getenv("CELERY_ACKS_LATE", "true"), True),
    worker_prefetch_multiplier=int(os.getenv("CELERY_PREFETCH_MULTIPLIER", "1")),
    worker_max_tasks_per_child=int(os.getenv("CELERY_MAX_TASKS_PER_CHILD", "50")),
    task_soft_time_limit=int(os.getenv("CELERY_TASK_SOFT_TIME_LIMIT", "1800")),
    task_time_limit=int(os.getenv("CELERY_TASK_TIME_LIMIT", "2400")),
    # Completed aggregation outcomes are kept for the same window
    result_expires=settings.aggregation_completed_retention_seconds,
    task_default_queue=os.getenv("CELERY_DEFAULT_QUEUE", "processing"),
    task_routes={
        "fptracker.tasks.process_upload_session_task": {"queue": "processing"},
        "fptracker.tasks.aggregate_subproject_task": {"queue": "processing"},
        "fptracker.tasks.aggregate_project_task": {"queue": "processing"},
        "fptracker.tasks.sweep_stalled_uploads_task": {"queue": "maintenance"},
        "fptracker.tasks.cleanup_orphaned_documents_task": {"queue": "maintenance"},
        "fptracker.tasks.cleanup_failed_batches_task": {"queue": "maintenance"},
        "fptracker.tasks.retry_failed_batches_task": {"queue": "maintenance"},
        "fptracker.tasks.delete_upload_session_task": {"queue": "maintenance"},
    },
)

# ============================================================================
# Celery Beat Schedule (for periodic tasks)
# ============================================================================

beat_schedule = {}

# Stalled upload sweep. Runs every minute; the worker_ready hook below runs
# one extra sweep shortly after a worker (re)starts.
if settings.stall_sweep_enabled:
    beat_schedule["sweep-stalled-uploads"] = {
        "task": "fptracker.tasks.sweep_stalled_uploads_task",
        "schedule": settings.stall_sweep_interval_seconds,
        "options": {"queue": "maintenance"},
    }

app.conf.beat_schedule = beat_schedule

app.conf.timezone = "UTC"


# ============================================================================
# WORKER LIFECYCLE
# ============================================================================

_recovery_logger = logging.getLogger("fptracker.celery.recovery")


@worker_process_init.connect
def on_worker_process_init(**kwargs):
    """Open the aggregation scheduler in every worker child process."""
    from fptracker.core.ops.aggregation_scheduler import aggregation_scheduler

    aggregation_scheduler.open()


@worker_process_shutdown.connect
def on_worker_process_shutdown(**kwargs):
    from fptracker.core.ops.aggregation_scheduler import aggregation_scheduler

    asyncio.run(aggregation_scheduler.close())


@worker_ready.connect
def on_worker_ready(sender, **kwargs):
    """
    Handle worker startup - create missing tables, then resolve uploads
    abandoned by a crashed worker.

    Schedules a stall sweep (after a short delay so the worker is fully
    initialized) and, when enabled, an orphaned document sweep.
    """
    from fptracker.core.ops.aggregation_scheduler import aggregation_scheduler
    from fptracker.core.shared.database_service import database_service

    # Solo / threaded pools run tasks in this process, without worker_process_init
    aggregation_scheduler.open()

    try:
        asyncio.run(database_service.init_db())
    except Exception as e:
        _recovery_logger.error(f"Could not create database tables on startup: {e}", exc_info=True)

    recovery_enabled = _bool(os.getenv("CELERY_STARTUP_RECOVERY_ENABLED", "true"), True)

    if not recovery_enabled:
        _recovery_logger.info("Startup recovery disabled via CELERY_STARTUP_RECOVERY_ENABLED")
        return

    # Import here to avoid circular imports
    from fptracker.core.tasks.maintenance import (
        cleanup_orphaned_documents_task,
        sweep_stalled_uploads_task,
    )

    _recovery_logger.info("Worker ready - scheduling stalled upload sweep")
    sweep_stalled_uploads_task.apply_async(countdown=settings.stall_sweep_startup_delay_seconds)

    if settings.orphan_sweep_on_startup:
        cleanup_orphaned_documents_task.apply_async(
            kwargs={"lookback_hours": settings.orphan_sweep_lookback_hours},
            countdown=settings.stall_sweep_startup_delay_seconds,
        )

    _recovery_logger.info("Startup recovery tasks scheduled")
