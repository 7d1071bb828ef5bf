# ============================================================================
# Fire-Proofing Tracker - Application Configuration
# ============================================================================
"""
Application configuration module using Pydantic Settings.

This module defines all configuration parameters for the ingestion core,
including:
- Database and Redis connections
- Celery broker / result backend
- Upload batching
- Stall sweeper timing
- Aggregation queue debounce, retry and retention policy
- Job order key spacing

Environment Variables:
    Every field can be overridden by the upper-case environment variable of
    the same name (e.g. ``UPLOAD_BATCH_SIZE=100``).

Usage:
    from fptracker.config import settings
    batch_size = settings.upload_batch_size
"""

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # =========================================================================
    # GENERAL
    # =========================================================================
    app_name: str = "Fire-Proofing Tracker"
    debug: bool = Field(default=False, description="Enable SQL echo & verbose logging")

    # =========================================================================
    # PERSISTENCE
    # =========================================================================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/fptracker.db",
        description="SQLAlchemy async URL (postgresql+asyncpg://... in production)",
    )
    db_pool_size: int = Field(default=20, description="PostgreSQL pool size")
    db_max_overflow: int = Field(default=40, description="PostgreSQL pool overflow")
    db_pool_recycle: int = Field(default=3600, description="Recycle pooled connections after N seconds")
    transaction_isolation_level: str = Field(
        default="REPEATABLE READ",
        description="Isolation level for ingestion transactions (snapshot on PostgreSQL)",
    )

    # =========================================================================
    # REDIS / CELERY
    # =========================================================================
    redis_url: str = Field(default="redis://redis:6379/0", description="Redis for cache & debounce keys")
    celery_broker_url: str = Field(default="redis://redis:6379/0", description="Celery broker")
    celery_result_backend: str = Field(default="redis://redis:6379/1", description="Celery result backend")
    cache_key_prefix: str = Field(default="fptracker:cache:", description="Prefix for cached read responses")

    # =========================================================================
    # UPLOAD SESSIONS
    # =========================================================================
    upload_batch_size: int = Field(default=50, description="Rows per batch")
    session_save_max_attempts: int = Field(
        default=3, description="Attempts when a session write loses an optimistic-version race"
    )

    # =========================================================================
    # STALL SWEEPER
    # =========================================================================
    stall_sweep_enabled: bool = Field(default=True, description="Register the periodic stall sweep")
    stall_threshold_seconds: int = Field(default=120, description="Idle time before a session is stalled")
    stall_sweep_interval_seconds: int = Field(default=60, description="Beat interval for the sweep")
    stall_sweep_startup_delay_seconds: int = Field(default=5, description="Delay for the startup sweep")

    # =========================================================================
    # ORPHAN SWEEP
    # =========================================================================
    orphan_sweep_on_startup: bool = Field(default=True, description="Sweep orphans when a worker starts")
    orphan_sweep_lookback_hours: int = Field(default=24, description="Only inspect documents this recent")

    # =========================================================================
    # AGGREGATION QUEUE
    # =========================================================================
    aggregation_debounce_seconds: int = Field(default=5, description="Delay used to coalesce bursts")
    aggregation_max_attempts: int = Field(default=3, description="Total attempts per aggregation task")
    aggregation_backoff_base_seconds: int = Field(default=2, description="Exponential backoff base")
    aggregation_completed_retention_seconds: int = Field(default=3600, description="Keep completed outcomes")
    aggregation_completed_retention_count: int = Field(default=100, description="Max completed outcomes kept")
    aggregation_failed_retention_seconds: int = Field(default=86400, description="Keep failed outcomes")

    # =========================================================================
    # JOB ORDERING
    # =========================================================================
    order_key_spacing: int = Field(default=100, description="Gap between generated job order keys")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"


# Global settings instance (imported elsewhere)
settings = Settings()
