# backend/fptracker/core/database/base.py
"""
SQLAlchemy base class and shared column helpers.

Provides the declarative base for all models and the naive-UTC clock used for
every timestamp column.
"""

from datetime import datetime, timezone

from sqlalchemy.orm import declarative_base

# Declarative base for all models
Base = declarative_base()


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (matches the DateTime columns)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
