"""
Exception taxonomy for upload ingestion and recovery.

    IngestionError
    ├── RowValidationError      malformed row or workflow selector (batch-local)
    │   └── UnknownWorkflowError
    ├── TransactionError        commit/abort failure, raised after rollback
    ├── NotFoundError           unknown upload session or batch number
    ├── InvalidStateError       operation not allowed in the current state
    └── StallDetected           built by the stall sweeper, recorded, never raised
"""

from typing import Optional


class IngestionError(Exception):
    """Base class for ingestion errors."""


class RowValidationError(IngestionError):
    """A spreadsheet row could not be turned into a structural element."""

    def __init__(self, message: str, row_number: Optional[int] = None):
        self.row_number = row_number
        if row_number is not None:
            message = f"Row {row_number}: {message}"
        super().__init__(message)


class UnknownWorkflowError(RowValidationError):
    def __init__(self, workflow: str, row_number: Optional[int] = None):
        self.workflow = workflow
        super().__init__(f"Unknown fire proofing workflow: {workflow}", row_number)


class TransactionError(IngestionError):
    """The store failed to commit or abort a transaction."""


class NotFoundError(IngestionError):
    """Referenced upload session or batch does not exist."""


class InvalidStateError(IngestionError):
    """The requested transition is not allowed from the current state."""


class StallDetected(IngestionError):
    """Synthetic condition for batches abandoned by a crashed worker."""

    def __init__(self, batch_number: int, reason: str = "batch not processed"):
        self.batch_number = batch_number
        self.reason = reason
        super().__init__(f"Worker stalled - {reason}")
