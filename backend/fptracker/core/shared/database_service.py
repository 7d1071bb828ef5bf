# backend/fptracker/core/shared/database_service.py
"""
Database service for async SQLAlchemy session management.

Provides a singleton service for managing database connections, sessions,
and health checks. Supports both SQLite (development, tests) and PostgreSQL
(production).

Usage:
    from fptracker.core.shared.database_service import database_service

    # Get async session (context manager)
    async with database_service.get_session() as session:
        result = await session.execute(select(Project).where(Project.id == project_id))
        project = result.scalar_one_or_none()

    # Services that manage their own transactions take the factory
    factory = database_service.session_factory

    # Initialize database (create tables)
    await database_service.init_db()
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from fptracker.config import settings
from fptracker.core.database.base import Base


def _is_celery_worker() -> bool:
    """Check if we're running inside a Celery worker process."""
    # Celery sets these environment variables in worker processes
    return (
        os.getenv("CELERY_WORKER") == "1" or
        "celery" in os.getenv("_", "").lower() or
        os.getenv("FORKED_BY_MULTIPROCESSING") == "1"
    )


class DatabaseService:
    """
    Database service for managing async SQLAlchemy sessions.

    Supports both SQLite (development) and PostgreSQL (production) with
    appropriate connection pooling and configuration.

    Attributes:
        _engine: Async SQLAlchemy engine
        _session_factory: Async session factory
        _logger: Logger instance

    Methods:
        get_session(): Get async database session (context manager)
        init_db(): Initialize database (create all tables)
        health_check(): Check database connectivity
        close(): Close database engine and connections
    """

    def __init__(self, database_url: Optional[str] = None):
        """
        Initialize database service.

        Args:
            database_url: Override for ``settings.database_url``
        """
        self._logger = logging.getLogger("fptracker.database")
        self._database_url = database_url or settings.database_url
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker] = None
        self._initialize_engine()

    def _initialize_engine(self) -> None:
        """
        Initialize database engine based on the configured URL.

        SQLite Configuration:
            - Uses aiosqlite async driver
            - Creates data directory if needed

        PostgreSQL Configuration:
            - Uses asyncpg async driver
            - NullPool inside Celery workers (each task runs its own event loop)
            - Connection pooling elsewhere, with pre-ping and recycle
        """
        database_url = self._database_url
        self._logger.info(f"Initializing database: {database_url.split('@')[-1].split('?')[0]}")

        if database_url.startswith("sqlite"):
            if ":///" in database_url:
                db_path = database_url.split("///")[1].split("?")[0]
                db_dir = os.path.dirname(db_path)
                if db_dir and not os.path.exists(db_dir):
                    os.makedirs(db_dir, exist_ok=True)
                    self._logger.info(f"Created database directory: {db_dir}")

            self._engine = create_async_engine(
                database_url,
                connect_args={"check_same_thread": False},
                poolclass=NullPool,
                echo=settings.debug,
            )
            self._logger.info("Using SQLite database (development mode)")

        elif _is_celery_worker():
            # Celery workers: fresh connections per task to avoid
            # "attached to a different loop" errors across asyncio.run() calls
            self._engine = create_async_engine(
                database_url,
                poolclass=NullPool,
                echo=settings.debug,
            )
            self._logger.info("PostgreSQL configured with NullPool for Celery worker")

        else:
            self._engine = create_async_engine(
                database_url,
                pool_size=settings.db_pool_size,
                max_overflow=settings.db_max_overflow,
                pool_pre_ping=True,
                pool_recycle=settings.db_pool_recycle,
                echo=settings.debug,
            )
            self._logger.info(
                f"PostgreSQL connection pool: size={settings.db_pool_size}, "
                f"max_overflow={settings.db_max_overflow}, recycle={settings.db_pool_recycle}s"
            )

        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @property
    def engine(self) -> AsyncEngine:
        if not self._engine:
            raise RuntimeError("Database engine not initialized")
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker:
        if not self._session_factory:
            raise RuntimeError("Database not initialized")
        return self._session_factory

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Get async database session as context manager.

        Automatically handles commit on success and rollback on error.

        Yields:
            AsyncSession: Async database session

        Raises:
            RuntimeError: If database is not initialized
            Exception: Any database errors (triggers rollback)
        """
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def init_db(self) -> None:
        """
        Create all tables defined on ``Base`` if they don't exist.

        Safe to call multiple times.
        """
        self._logger.info("Creating database tables...")

        async with self.engine.begin() as conn:
            # Import all models to ensure they're registered with Base
            from fptracker.core.database import models  # noqa: F401

            await conn.run_sync(Base.metadata.create_all)

        self._logger.info("Database tables created successfully")

    async def health_check(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Returns:
            Dict with ``status`` ("healthy" | "unhealthy"), ``connected`` and,
            when healthy, the open upload session count.
        """
        try:
            async with self.get_session() as session:
                await session.execute(text("SELECT 1"))
                result = await session.execute(
                    text("SELECT COUNT(*) FROM upload_sessions WHERE status = 'in_progress'")
                )
                in_progress = result.scalar() or 0

            return {
                "status": "healthy",
                "connected": True,
                "database_type": "sqlite" if self._database_url.startswith("sqlite") else "postgresql",
                "uploads_in_progress": in_progress,
            }

        except Exception as e:
            self._logger.error(f"Database health check failed: {str(e)}")
            return {
                "status": "unhealthy",
                "connected": False,
                "error": str(e),
            }

    async def close(self) -> None:
        """Close database engine and all connections."""
        if self._engine:
            await self._engine.dispose()
            self._logger.info("Database connections closed")

    def __repr__(self) -> str:
        db_type = "SQLite" if self._database_url.startswith("sqlite") else "PostgreSQL"
        return f"<DatabaseService(type={db_type})>"


# Global singleton instance
database_service = DatabaseService()
