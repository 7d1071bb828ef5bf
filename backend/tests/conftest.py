import os
import shutil
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock


# Configure the environment before importing fptracker modules: the settings
# object and the database service singleton are built at import time.
_SESSION_DIR = Path(tempfile.mkdtemp(prefix="fptracker_pytest_"))

os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_SESSION_DIR}/fptracker.db")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")

# Keep Celery in-process and quiet during tests
os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("CELERY_STARTUP_RECOVERY_ENABLED", "false")

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from fptracker.core.database import Base, Project, SubProject  # noqa: E402
from fptracker.core.ingestion import workflows  # noqa: E402
from fptracker.core.ingestion.batch_processor import BatchProcessor  # noqa: E402
from fptracker.core.ingestion.upload_recovery_service import UploadRecoveryService  # noqa: E402
from fptracker.core.ingestion.upload_session_repository import UploadSessionRepository  # noqa: E402

FIVE_STEP_WORKFLOW = "five_step_fire_proofing"


def pytest_sessionfinish(session, exitstatus):
    """Cleanup temporary test files after the test session."""
    shutil.rmtree(_SESSION_DIR, ignore_errors=True)


# ============================================================================
# Database
# ============================================================================

@pytest_asyncio.fixture
async def engine(tmp_path):
    """File-backed SQLite database per test, so separate sessions really are separate connections."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/test.db", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def project(session_factory):
    async with session_factory() as db:
        project = Project(title="Refinery Unit 4", location="Jubail")
        db.add(project)
        await db.commit()
        return project


@pytest_asyncio.fixture
async def sub_project(session_factory, project):
    async with session_factory() as db:
        sub_project = SubProject(project_id=project.id, name="Pipe rack PR-2")
        db.add(sub_project)
        await db.commit()
        return sub_project


# ============================================================================
# Collaborators
# ============================================================================

@pytest.fixture
def cache():
    cache = MagicMock()
    cache.invalidate_for_elements = AsyncMock(return_value=0)
    return cache


@pytest.fixture
def scheduler():
    scheduler = MagicMock()
    scheduler.schedule_batch_aggregation = AsyncMock(return_value=None)
    return scheduler


@pytest.fixture
def processing_task():
    task = MagicMock()
    task.apply_async.return_value = MagicMock(id="process-task-1")
    return task


@pytest.fixture
def repository(session_factory):
    return UploadSessionRepository(session_factory)


@pytest.fixture
def processor(session_factory, repository, cache, scheduler):
    return BatchProcessor(session_factory, repository=repository, cache=cache, scheduler=scheduler)


@pytest.fixture
def recovery(session_factory, repository, cache, scheduler, processing_task):
    return UploadRecoveryService(
        session_factory,
        repository=repository,
        cache=cache,
        scheduler=scheduler,
        processing_task=processing_task,
    )


@pytest.fixture
def five_step_workflow(monkeypatch):
    """Registers a 5-step workflow template for the duration of a test."""
    monkeypatch.setitem(
        workflows.JOB_TEMPLATES,
        FIVE_STEP_WORKFLOW,
        ["Surface Preparation", "Primer", "Base coat", "Thickness inspection", "Top coat"],
    )
    return FIVE_STEP_WORKFLOW


@pytest.fixture
def make_rows():
    """Factory for spreadsheet rows as read from a member schedule."""

    def _make(count, workflow="cement_fire_proofing", prefix="B", start=1):
        return [
            {
                "Sl No": i,
                "Structure Number": f"{prefix}-{i:03d}",
                "Drawing No": "DWG-100",
                "Level": "L1",
                "Member Type": "Beam",
                "GridNo": "A-1",
                "Part Mark No": f"PM-{i}",
                "Section Sizes": "ISMB 300",
                "Length in (mm)": 6000,
                "Qty": 1,
                "Surface Area in Sqm": 2.5,
                "Fire Proofing Workflow": workflow,
            }
            for i in range(start, start + count)
        ]

    return _make
