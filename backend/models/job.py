"""
Job tracking model for catalog imports.

This module defines the SQLAlchemy model for product import jobs,
including their lifecycle status, progress counters and per-row results.
"""

from datetime import datetime
from enum import Enum
from sqlalchemy import (
    Column, Integer, String, TIMESTAMP, Text,
    CheckConstraint, Index, text
)

from backend.models.schema import Base, JSONType, generate_uuid


class ImportJobStatus(str, Enum):
    """Import job lifecycle status."""
    PENDING = 'pending'
    VALIDATING = 'validating'
    VALIDATED = 'validated'
    PROCESSING = 'processing'
    COMPLETED = 'completed'
    FAILED = 'failed'
    CANCELLED = 'cancelled'
    ROLLED_BACK = 'rolled_back'


class DuplicateAction(str, Enum):
    """How a row matching an existing product is resolved."""
    SKIP = 'skip'
    UPDATE = 'update'
    CREATE_NEW = 'create_new'


class RowStatus(str, Enum):
    """Outcome of a single processed row."""
    CREATED = 'created'
    UPDATED = 'updated'
    SKIPPED = 'skipped'
    FAILED = 'failed'


def _isoformat(value):
    return value.isoformat() if value else None


class ImportJob(Base):
    """
    Represents one spreadsheet import into a business catalog.

    Tracks the lifecycle of an import from upload through validation,
    processing and an optional rollback, storing per-row results and the
    pre-images needed to revert updated products.
    """

    __tablename__ = 'product_import_jobs'
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'validating', 'validated', 'processing', "
            "'completed', 'failed', 'cancelled', 'rolled_back')",
            name='product_import_jobs_status_check'
        ),
        CheckConstraint(
            "duplicate_action IN ('skip', 'update', 'create_new')",
            name='product_import_jobs_duplicate_action_check'
        ),
        CheckConstraint(
            'created_count + updated_count + skipped_count + failed_count = processed_rows',
            name='product_import_jobs_counters_check'
        ),
        Index('idx_import_jobs_business_status', 'business_id', 'status'),
        Index('idx_import_jobs_business_created', 'business_id', 'created_at'),
        {'comment': 'Tracks bulk product imports and their row outcomes'}
    )

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid,
        nullable=False
    )
    business_id = Column(
        String(36),
        nullable=False,
        comment='Owning business'
    )
    status = Column(
        String(20),
        nullable=False,
        default=ImportJobStatus.PENDING.value,
        server_default='pending',
        comment='Current job status'
    )

    # Uploaded file
    file_name = Column(String(255), nullable=False)
    file_type = Column(String(20), nullable=False, comment="'csv' or 'xlsx'")
    file_size = Column(Integer, nullable=False, default=0)
    file_path = Column(
        String(512),
        nullable=True,
        comment='Stored upload, read again when processing starts'
    )

    # Progress counters
    total_rows = Column(Integer, nullable=False, default=0)
    valid_rows = Column(Integer, nullable=False, default=0)
    processed_rows = Column(Integer, nullable=False, default=0)
    created_count = Column(Integer, nullable=False, default=0)
    updated_count = Column(Integer, nullable=False, default=0)
    skipped_count = Column(Integer, nullable=False, default=0)
    failed_count = Column(Integer, nullable=False, default=0)

    # Import options
    duplicate_action = Column(
        String(20),
        nullable=False,
        default=DuplicateAction.SKIP.value,
        server_default='skip'
    )
    column_mapping = Column(
        JSONType,
        nullable=True,
        comment='File header -> product field key'
    )

    # Accumulated row data
    errors = Column(JSONType, nullable=False, default=list)
    warnings = Column(JSONType, nullable=False, default=list)
    results = Column(JSONType, nullable=False, default=list)
    pre_images = Column(
        JSONType,
        nullable=False,
        default=dict,
        comment='Row number -> product fields before an update (for rollback)'
    )
    error_message = Column(Text, nullable=True)

    # Metadata
    created_by = Column(
        String(255),
        nullable=True,
        comment='User or API key that created the job'
    )
    created_at = Column(
        TIMESTAMP,
        default=datetime.utcnow,
        server_default=text('CURRENT_TIMESTAMP'),
        nullable=False
    )
    updated_at = Column(
        TIMESTAMP,
        default=datetime.utcnow,
        server_default=text('CURRENT_TIMESTAMP'),
        nullable=False
    )
    started_at = Column(TIMESTAMP, nullable=True)
    completed_at = Column(TIMESTAMP, nullable=True)
    rollback_at = Column(TIMESTAMP, nullable=True)

    def __repr__(self):
        return f"<ImportJob(id='{self.id}', status='{self.status}', processed={self.processed_rows}/{self.total_rows})>"

    def summary(self) -> dict:
        """Derived counters view; always equal to the job's own counters."""
        return {
            'totalRows': self.total_rows,
            'created': self.created_count,
            'updated': self.updated_count,
            'skipped': self.skipped_count,
            'failed': self.failed_count,
        }

    def to_dict(self) -> dict:
        """Convert job to its persisted JSON shape."""
        return {
            'id': self.id,
            'businessId': self.business_id,
            'status': self.status,
            'fileName': self.file_name,
            'fileType': self.file_type,
            'fileSize': self.file_size,
            'totalRows': self.total_rows,
            'processedRows': self.processed_rows,
            'createdCount': self.created_count,
            'updatedCount': self.updated_count,
            'skippedCount': self.skipped_count,
            'failedCount': self.failed_count,
            'duplicateAction': self.duplicate_action,
            'columnMapping': self.column_mapping,
            'errors': list(self.errors or []),
            'warnings': list(self.warnings or []),
            'results': list(self.results or []),
            'errorMessage': self.error_message,
            'createdAt': _isoformat(self.created_at),
            'startedAt': _isoformat(self.started_at),
            'completedAt': _isoformat(self.completed_at),
            'rollbackAt': _isoformat(self.rollback_at),
        }

    def counters_consistent(self) -> bool:
        """Check the counter invariant (outcomes add up, never over total)."""
        outcomes = (self.created_count + self.updated_count
                    + self.skipped_count + self.failed_count)
        return outcomes == self.processed_rows and self.processed_rows <= self.total_rows

    def committed_rows(self) -> int:
        """Number of rows whose mutation is standing in the catalog."""
        return self.created_count + self.updated_count

    def is_terminal(self) -> bool:
        """Check if job has finished processing (or was rolled back)."""
        return self.status in (
            ImportJobStatus.COMPLETED.value, ImportJobStatus.FAILED.value,
            ImportJobStatus.CANCELLED.value, ImportJobStatus.ROLLED_BACK.value
        )

    def is_busy(self) -> bool:
        """Check if a phase is currently running on this job."""
        return self.status in (
            ImportJobStatus.VALIDATING.value, ImportJobStatus.PROCESSING.value
        )
