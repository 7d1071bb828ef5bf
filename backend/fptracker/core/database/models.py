# backend/fptracker/core/database/models.py
"""
SQLAlchemy ORM models for the fire-proofing tracker.

Models:
    - Project: Top-level site/contract with a denormalised element counter
    - SubProject: Area within a project; owns aggregated statistics
    - StructuralElement: One steel member imported from a spreadsheet row
    - Job: One ordered fire-proofing step attached to a structural element
    - UploadSession: Durable record of one spreadsheet ingestion run

All models use UUID primary keys and include timestamps for auditing.
Users live in the external auth service, so ``created_by`` columns are bare
UUIDs without a foreign key.
"""

from __future__ import annotations

import uuid

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import relationship

from .base import Base, utcnow


# UUID type that works with both SQLite and PostgreSQL
class UUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL's UUID type when available, otherwise uses String(36).
    """
    impl = String
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        else:
            return dialect.type_descriptor(String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if not isinstance(value, uuid.UUID):
            return uuid.UUID(value)
        return value


class Project(Base):
    """
    Project model.

    Attributes:
        id: Unique project identifier
        title: Project title shown in reports
        location: Site location
        structural_elements_count: Denormalised element counter. Only ever
            changed with relative ``count + n`` updates.
        statistics: Project-level statistics rolled up from sub-projects
    """

    __tablename__ = "projects"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    title = Column(String(255), nullable=False)
    location = Column(String(255), nullable=True)
    structural_elements_count = Column(Integer, nullable=False, default=0, server_default="0")
    statistics = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    sub_projects = relationship("SubProject", back_populates="project", cascade="all, delete-orphan")

    def __repr__(self) -> str:
        return f"<Project(id={self.id}, title={self.title})>"


class SubProject(Base):
    """
    SubProject model.

    A sub-project groups the elements of one area (a level, a pipe rack, ...).
    Its ``statistics`` document is recomputed by the aggregation queue.
    """

    __tablename__ = "sub_projects"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    project_id = Column(
        UUID(), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name = Column(String(255), nullable=False)
    structural_elements_count = Column(Integer, nullable=False, default=0, server_default="0")
    statistics = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    project = relationship("Project", back_populates="sub_projects")

    def __repr__(self) -> str:
        return f"<SubProject(id={self.id}, name={self.name})>"


class StructuralElement(Base):
    """
    StructuralElement model.

    One row of the uploaded member schedule. When ``fire_proofing_workflow``
    is set the element owns the ordered jobs of that workflow.

    Status values: active, complete, non clearance, no_job
    """

    __tablename__ = "structural_elements"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    project_id = Column(
        UUID(), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sub_project_id = Column(
        UUID(), ForeignKey("sub_projects.id", ondelete="SET NULL"), nullable=True, index=True
    )

    # Identity columns (duplicate detection key)
    serial_no = Column(String(100), nullable=True)
    structure_number = Column(String(255), nullable=False)
    drawing_no = Column(String(255), nullable=True)
    level = Column(String(100), nullable=True)
    member_type = Column(String(100), nullable=True)
    grid_no = Column(String(100), nullable=True)
    part_mark_no = Column(String(100), nullable=True)

    # Geometry
    section_sizes = Column(String(255), nullable=True)
    length_mm = Column(Float, nullable=False, default=0)
    qty = Column(Integer, nullable=False, default=1)
    section_depth_mm = Column(Float, nullable=False, default=0)
    flange_width_mm = Column(Float, nullable=False, default=0)
    web_thickness_mm = Column(Float, nullable=False, default=0)
    flange_thickness_mm = Column(Float, nullable=False, default=0)
    fireproofing_thickness = Column(Float, nullable=False, default=0)
    surface_area_sqm = Column(Float, nullable=False, default=0)

    fire_proofing_workflow = Column(String(100), nullable=True)
    status = Column(String(50), nullable=False, default="active", index=True)

    created_by = Column(UUID(), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    jobs = relationship("Job", back_populates="structural_element", passive_deletes=True)

    __table_args__ = (
        Index("ix_structural_elements_project_structure", "project_id", "structure_number"),
        Index("ix_structural_elements_sub_project_status", "sub_project_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<StructuralElement(id={self.id}, structure_number={self.structure_number})>"


class Job(Base):
    """
    Job model - one fire-proofing step of a structural element.

    ``order_index`` is a sparse key (multiples of 100 when generated) so
    steps can be inserted between neighbours without renumbering.

    Status values: pending, in_progress, completed, not_applicable
    """

    __tablename__ = "jobs"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    structural_element_id = Column(
        UUID(), ForeignKey("structural_elements.id", ondelete="SET NULL"), nullable=True, index=True
    )
    project_id = Column(
        UUID(), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sub_project_id = Column(
        UUID(), ForeignKey("sub_projects.id", ondelete="SET NULL"), nullable=True
    )

    job_title = Column(String(255), nullable=False)
    job_description = Column(Text, nullable=True)
    job_type = Column(String(100), nullable=True)
    fire_proofing_type = Column(String(50), nullable=True)
    order_index = Column(Integer, nullable=False)
    status = Column(String(50), nullable=False, default="pending")

    created_by = Column(UUID(), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    structural_element = relationship("StructuralElement", back_populates="jobs")

    __table_args__ = (
        UniqueConstraint("structural_element_id", "order_index", name="uq_jobs_element_order"),
    )

    def __repr__(self) -> str:
        return f"<Job(id={self.id}, title={self.job_title}, order={self.order_index})>"


class UploadSession(Base):
    """
    UploadSession model - one spreadsheet ingestion run.

    The batch list is embedded as JSON and is only ever rewritten as a whole
    through ``UploadSessionRepository``; ``status`` and ``summary`` are derived
    from it on every write.

    ``version`` is the optimistic-concurrency counter. Every UPDATE carries
    ``WHERE version = <seen>``, so a worker and the stall sweeper can never
    silently overwrite each other.

    Status Transitions:
        pending → in_progress → completed | failed | partially_completed
    """

    __tablename__ = "upload_sessions"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    upload_id = Column(String(100), nullable=False, unique=True, index=True)
    project_id = Column(
        UUID(), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sub_project_id = Column(
        UUID(), ForeignKey("sub_projects.id", ondelete="SET NULL"), nullable=True
    )
    created_by = Column(UUID(), nullable=True)

    file_name = Column(String(500), nullable=False)
    file_path = Column(String(1000), nullable=True)
    total_rows = Column(Integer, nullable=False)
    batch_size = Column(Integer, nullable=False, default=50)
    total_batches = Column(Integer, nullable=False)

    status = Column(String(50), nullable=False, default="pending", index=True)
    batches = Column(JSON, nullable=False, default=list)
    summary = Column(JSON, nullable=False, default=dict)

    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False, index=True)
    completed_at = Column(DateTime, nullable=True)
    last_processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_upload_sessions_project_status", "project_id", "status"),
        Index("ix_upload_sessions_status_updated", "status", "updated_at"),
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<UploadSession(upload_id={self.upload_id}, status={self.status})>"
