"""
Upload session aggregate.

An upload session embeds its batches as one JSON list. ``UploadSessionState``
is the in-memory aggregate over that list: every batch mutation goes through
its methods, and every method ends by recomputing the summary and the
session status from the batches. Status is never assigned directly except
``pending`` at creation and ``in_progress`` when processing begins.

Status derivation:
    all batches success       → completed
    all batches failed        → failed
    any batch pending         → in_progress
    otherwise (success+failed) → partially_completed
"""

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from fptracker.core.database.base import utcnow

from .errors import InvalidStateError, NotFoundError

BATCH_PENDING = "pending"
BATCH_SUCCESS = "success"
BATCH_FAILED = "failed"

SESSION_PENDING = "pending"
SESSION_IN_PROGRESS = "in_progress"
SESSION_COMPLETED = "completed"
SESSION_FAILED = "failed"
SESSION_PARTIALLY_COMPLETED = "partially_completed"

TERMINAL_STATUSES = {SESSION_COMPLETED, SESSION_FAILED, SESSION_PARTIALLY_COMPLETED}


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class Batch:
    batch_number: int
    start_row: int
    end_row: int
    status: str = BATCH_PENDING
    elements_created: List[str] = field(default_factory=list)
    jobs_created: List[str] = field(default_factory=list)
    duplicates_skipped: int = 0
    error_message: Optional[str] = None
    error_details: Optional[Dict[str, Any]] = None
    processed_at: Optional[datetime] = None
    retry_count: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Batch":
        return cls(
            batch_number=data["batch_number"],
            start_row=data.get("start_row", 0),
            end_row=data.get("end_row", 0),
            status=data.get("status", BATCH_PENDING),
            elements_created=list(data.get("elements_created") or []),
            jobs_created=list(data.get("jobs_created") or []),
            duplicates_skipped=data.get("duplicates_skipped", 0),
            error_message=data.get("error_message"),
            error_details=data.get("error_details"),
            processed_at=_parse(data.get("processed_at")),
            retry_count=data.get("retry_count", 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["processed_at"] = _iso(self.processed_at)
        return data

    def reset(self) -> None:
        """Back to pending with no residual ids or error."""
        self.status = BATCH_PENDING
        self.elements_created = []
        self.jobs_created = []
        self.duplicates_skipped = 0
        self.error_message = None
        self.error_details = None
        self.processed_at = None


@dataclass
class SessionSummary:
    successful_batches: int = 0
    failed_batches: int = 0
    pending_batches: int = 0
    total_elements_created: int = 0
    total_jobs_created: int = 0
    duplicates_skipped: int = 0

    @classmethod
    def from_batches(cls, batches: List[Batch]) -> "SessionSummary":
        summary = cls()
        for batch in batches:
            if batch.status == BATCH_SUCCESS:
                summary.successful_batches += 1
            elif batch.status == BATCH_FAILED:
                summary.failed_batches += 1
            else:
                summary.pending_batches += 1
            summary.total_elements_created += len(batch.elements_created)
            summary.total_jobs_created += len(batch.jobs_created)
            summary.duplicates_skipped += batch.duplicates_skipped
        return summary

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


def build_batches(total_rows: int, batch_size: int) -> List[Batch]:
    """Partition ``total_rows`` into 1-numbered batches with inclusive row ranges."""
    if batch_size < 1:
        raise ValueError("batch_size must be positive")
    total_batches = math.ceil(total_rows / batch_size) if total_rows > 0 else 0
    return [
        Batch(
            batch_number=number,
            start_row=(number - 1) * batch_size + 1,
            end_row=min(number * batch_size, total_rows),
        )
        for number in range(1, total_batches + 1)
    ]


def derive_status(batches: List[Batch]) -> str:
    statuses = [batch.status for batch in batches]
    if not statuses:
        return SESSION_COMPLETED
    if all(status == BATCH_SUCCESS for status in statuses):
        return SESSION_COMPLETED
    if all(status == BATCH_FAILED for status in statuses):
        return SESSION_FAILED
    if any(status == BATCH_PENDING for status in statuses):
        return SESSION_IN_PROGRESS
    return SESSION_PARTIALLY_COMPLETED


class UploadSessionState:
    """
    Mutable view over one upload session's batches.

    Loaded from and written back to an ``UploadSession`` row by
    ``UploadSessionRepository``.
    """

    def __init__(
        self,
        batches: List[Batch],
        status: str = SESSION_PENDING,
        completed_at: Optional[datetime] = None,
        last_processed_at: Optional[datetime] = None,
        version: Optional[int] = None,
        updated_at: Optional[datetime] = None,
    ):
        self.batches = sorted(batches, key=lambda b: b.batch_number)
        self.status = status
        self.completed_at = completed_at
        self.last_processed_at = last_processed_at
        self.summary = SessionSummary.from_batches(self.batches)
        # Read-only: the row version and last write this state was loaded from
        self.version = version
        self.updated_at = updated_at

    @classmethod
    def from_row(cls, row) -> "UploadSessionState":
        return cls(
            batches=[Batch.from_dict(item) for item in (row.batches or [])],
            status=row.status,
            completed_at=row.completed_at,
            last_processed_at=row.last_processed_at,
            version=row.version,
            updated_at=row.updated_at,
        )

    def apply_to(self, row) -> None:
        """Write batches, summary and derived fields onto an ORM row."""
        row.batches = [batch.to_dict() for batch in self.batches]
        row.summary = self.summary.to_dict()
        row.status = self.status
        row.completed_at = self.completed_at
        row.last_processed_at = self.last_processed_at

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_batch(self, batch_number: int) -> Batch:
        for batch in self.batches:
            if batch.batch_number == batch_number:
                return batch
        raise NotFoundError(f"Batch {batch_number} not found")

    @property
    def pending_batches(self) -> List[Batch]:
        return [b for b in self.batches if b.status == BATCH_PENDING]

    @property
    def failed_batches(self) -> List[Batch]:
        return [b for b in self.batches if b.status == BATCH_FAILED]

    @property
    def successful_batches(self) -> List[Batch]:
        return [b for b in self.batches if b.status == BATCH_SUCCESS]

    @property
    def has_processed_batches(self) -> bool:
        return any(b.status != BATCH_PENDING for b in self.batches)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def recompute(self, now: Optional[datetime] = None) -> str:
        """
        Recompute summary and status from the batches.

        A session that was never started stays ``pending`` while all of its
        batches are pending. ``completed_at`` is stamped on entering a
        terminal status and cleared on leaving one.
        """
        self.summary = SessionSummary.from_batches(self.batches)

        if self.status == SESSION_PENDING and not self.has_processed_batches and self.batches:
            return self.status

        status = derive_status(self.batches)
        if status in TERMINAL_STATUSES:
            if self.status not in TERMINAL_STATUSES or self.completed_at is None:
                self.completed_at = now or utcnow()
        else:
            self.completed_at = None
        self.status = status
        return status

    def begin_processing(self, now: Optional[datetime] = None) -> None:
        if self.status == SESSION_PENDING:
            self.status = SESSION_IN_PROGRESS
        self.recompute(now)

    def mark_batch_success(
        self,
        batch_number: int,
        element_ids: List[str],
        job_ids: List[str],
        duplicates_skipped: int = 0,
        now: Optional[datetime] = None,
    ) -> Batch:
        now = now or utcnow()
        batch = self.get_batch(batch_number)
        batch.status = BATCH_SUCCESS
        batch.elements_created = [str(i) for i in element_ids]
        batch.jobs_created = [str(i) for i in job_ids]
        batch.duplicates_skipped = duplicates_skipped
        batch.error_message = None
        batch.error_details = None
        batch.processed_at = now
        self.last_processed_at = now
        self.recompute(now)
        return batch

    def mark_batch_failed(
        self,
        batch_number: int,
        error_message: str,
        error_details: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Batch:
        """
        Record a failure. The writer has rolled the batch back, so no ids
        are kept.
        """
        now = now or utcnow()
        batch = self.get_batch(batch_number)
        batch.status = BATCH_FAILED
        batch.elements_created = []
        batch.jobs_created = []
        batch.duplicates_skipped = 0
        batch.error_message = error_message
        batch.error_details = error_details
        batch.processed_at = now
        self.last_processed_at = now
        self.recompute(now)
        return batch

    def reset_batch(self, batch_number: int, now: Optional[datetime] = None) -> Batch:
        """
        Reset after its documents were deleted (cleanup / delete).

        A session that was never started stays ``pending``.
        """
        batch = self.get_batch(batch_number)
        batch.reset()
        self.recompute(now)
        return batch

    def retry_batch(self, batch_number: int, now: Optional[datetime] = None) -> Batch:
        """
        Flag a failed batch for another processing attempt.

        Raises:
            InvalidStateError: If the batch is not failed
        """
        batch = self.get_batch(batch_number)
        if batch.status != BATCH_FAILED:
            raise InvalidStateError(
                f"Batch {batch_number} is {batch.status}; only failed batches can be retried"
            )
        batch.reset()
        batch.retry_count += 1
        self._reopen()
        self.recompute(now)
        return batch

    def _reopen(self) -> None:
        # A pending batch means work remains, whatever the session was before
        if self.status == SESSION_PENDING:
            self.status = SESSION_IN_PROGRESS
