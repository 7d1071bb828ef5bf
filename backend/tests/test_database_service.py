"""
Unit tests for DatabaseService.

Tests session management, table creation and health checks against a
temporary SQLite database.
"""

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fptracker.core.database import Project
from fptracker.core.shared.database_service import DatabaseService, database_service


@pytest_asyncio.fixture
async def service(tmp_path):
    service = DatabaseService(f"sqlite+aiosqlite:///{tmp_path}/service/fptracker.db")
    yield service
    await service.close()


class TestDatabaseServiceInitialization:
    """Test DatabaseService initialization."""

    def test_singleton_instance(self):
        """Test that database_service is a ready singleton."""
        assert isinstance(database_service, DatabaseService)
        assert database_service.session_factory is not None

    def test_creates_sqlite_directory(self, service, tmp_path):
        """Test that the SQLite data directory is created."""
        assert (tmp_path / "service").is_dir()
        assert "SQLite" in repr(service)


class TestSessionManagement:
    """Test database session management."""

    @pytest.mark.asyncio
    async def test_get_session_commits_on_success(self, service):
        """Test that session commits on successful exit."""
        await service.init_db()

        async with service.get_session() as session:
            session.add(Project(title="Refinery Unit 4"))

        async with service.get_session() as session:
            titles = (await session.execute(select(Project.title))).scalars().all()
        assert titles == ["Refinery Unit 4"]

    @pytest.mark.asyncio
    async def test_get_session_rollback_on_error(self, service):
        """Test that session rolls back on error."""
        mock_session = AsyncMock(spec=AsyncSession)

        @asynccontextmanager
        async def mock_factory():
            yield mock_session

        with patch.object(service, "_session_factory", mock_factory):
            with pytest.raises(ValueError):
                async with service.get_session():
                    raise ValueError("boom")

        mock_session.rollback.assert_called_once()
        mock_session.commit.assert_not_called()

    @pytest.mark.asyncio
    async def test_init_db_is_repeatable(self, service):
        """Test that init_db can run twice."""
        await service.init_db()
        await service.init_db()


class TestHealthCheck:
    """Test database health checks."""

    @pytest.mark.asyncio
    async def test_healthy(self, service):
        await service.init_db()

        health = await service.health_check()

        assert health["status"] == "healthy"
        assert health["database_type"] == "sqlite"
        assert health["uploads_in_progress"] == 0

    @pytest.mark.asyncio
    async def test_unhealthy_without_tables(self, service):
        """Test that a missing schema reports unhealthy instead of raising."""
        health = await service.health_check()

        assert health["status"] == "unhealthy"
        assert health["connected"] is False
        assert "upload_sessions" in health["error"]
