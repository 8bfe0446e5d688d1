"""
Error taxonomy for the import engine.

Row-level problems are never raised through the batch: they are recorded
as data (ImportRowError / ImportRowResult). The exceptions below are the
job-level conditions a caller can actually observe.
"""

from typing import Iterable, Optional


class ImportEngineError(Exception):
    """Base class for every job-level import error."""


class JobNotFoundError(ImportEngineError):
    """No import job exists with the given id (in the given business)."""

    def __init__(self, job_id: str):
        super().__init__(f"Import job {job_id} not found")
        self.job_id = job_id


class InvalidTransition(ImportEngineError):
    """A status change that the job lifecycle does not allow."""

    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot move import job from '{current}' to '{target}'")
        self.current = current
        self.target = target


class JobConflictError(ImportEngineError):
    """Another phase is already running on the job (single-writer rule)."""


class StructuralImportError(ImportEngineError):
    """Whole-file defect found before any row is touched."""

    # Set by the engine once the failure has been recorded on a job
    job_id: Optional[str] = None


class FileDecodeError(StructuralImportError):
    """The uploaded file could not be read as a spreadsheet."""


class MappingError(StructuralImportError):
    """The column mapping cannot be used (unknown or missing fields)."""

    def __init__(self, message: str, missing_fields: Optional[Iterable[str]] = None):
        super().__init__(message)
        self.missing_fields = list(missing_fields or [])


class CatalogUnavailableError(ImportEngineError):
    """The catalog store cannot be reached; fatal for the running import."""


class RowImportError(ImportEngineError):
    """A single row could not be applied. Captured into that row's result."""


class RollbackNotAllowedError(ImportEngineError):
    """Rollback requested for a job that has nothing (or no longer) to revert."""
