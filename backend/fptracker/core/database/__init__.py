# backend/fptracker/core/database/__init__.py
"""
Database package for the fire-proofing tracker.

Provides SQLAlchemy models and the declarative base.
"""

from .base import Base, utcnow
from .models import (
    Job,
    Project,
    StructuralElement,
    SubProject,
    UploadSession,
)

__all__ = [
    "Base",
    "utcnow",
    "Project",
    "SubProject",
    "StructuralElement",
    "Job",
    "UploadSession",
]
