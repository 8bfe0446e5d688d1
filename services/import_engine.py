"""
Import Engine - orchestrates a catalog import from upload to rollback.

Phases run in order and each one writes its output back to the persisted
ImportJob:

    validate -> (check_duplicates) -> start_processing -> execute -> [rollback]

The engine owns the job record. Components return outcomes and the
engine turns them into state-machine transitions and counter updates.
Counters and processed_rows always move together in one commit, so the
job is consistent whenever it is read.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from sqlalchemy.orm import Session

from backend.models.job import DuplicateAction, ImportJob, ImportJobStatus
from services.cancellation import LocalCancellationRegistry
from services.catalog_store import CatalogStore, SqlAlchemyCatalogStore
from services.column_mapper import DEFAULT_FUZZY_THRESHOLD, ColumnMapper, apply_mapping
from services.duplicate_detector import DuplicateDetector
from services.errors import (
    CatalogUnavailableError, InvalidTransition, JobConflictError,
    RollbackNotAllowedError, StructuralImportError
)
from services.file_decoder import DecodedFile
from services.import_executor import DEFAULT_MAX_WORKERS, ImportExecutor
from services.import_types import DuplicateCheckResult, ImportRow, ImportRowResult, ValidationResult
from services.job_repository import JobRepository
from services.job_state import can_transition, transition
from services.key_locks import KeyedLocks
from services.rollback_manager import RollbackManager
from services.row_validator import RowValidator

logger = logging.getLogger(__name__)

S = ImportJobStatus

DEFAULT_MAX_ROWS = 1000
DEFAULT_ROLLBACK_WINDOW_HOURS = 24
DEFAULT_SAMPLE_ROWS = 5

TEMPLATE_HEADERS = [
    'name', 'sku', 'barcode', 'description', 'category', 'brand',
    'selling_price', 'purchase_price', 'quantity', 'tax_class', 'unit',
    'weight', 'weight_unit', 'tags',
]
TEMPLATE_SAMPLE_ROW = [
    'Sample Product', 'SKU-001', '1234567890123', 'Product description',
    'Electronics', 'BrandName', '29.99', '19.99', '100', 'standard', 'each',
    '0.5', 'lb', '"sale,featured"',
]

# progress_callback(stage, percent, message)
ProgressCallback = Callable[[str, float, str], None]


@dataclass(frozen=True)
class ValidationReport:
    """What ``validate`` hands back to the caller."""
    job_id: str
    headers: List[str]
    suggested_mapping: Dict[str, str]
    column_mapping: Dict[str, str]
    sample_data: List[ImportRow]
    validation: ValidationResult

    @property
    def total_rows(self) -> int:
        return self.validation.total_rows

    def to_dict(self) -> dict:
        return {
            'jobId': self.job_id,
            'headers': list(self.headers),
            'suggestedMapping': dict(self.suggested_mapping),
            'columnMapping': dict(self.column_mapping),
            'sampleData': [dict(row) for row in self.sample_data],
            'validation': self.validation.to_dict(),
            'totalRows': self.total_rows,
        }


def generate_template() -> str:
    """CSV template: header row plus one sample row."""
    return ','.join(TEMPLATE_HEADERS) + '\n' + ','.join(TEMPLATE_SAMPLE_ROW) + '\n'


def _invalid_row_messages(validation: ValidationResult) -> Dict[int, str]:
    messages: Dict[int, List[str]] = {}
    for error in validation.errors:
        messages.setdefault(error.row, []).append(error.message)
    return {row: '; '.join(parts) for row, parts in messages.items()}


class ImportEngine:
    """
    Drives ImportJobs through their lifecycle.

    Framework-agnostic: the API, the Celery worker and the CLI all build
    one of these from a session factory.
    """

    def __init__(self, session_factory: Callable[[], Session],
                 catalog_store: Optional[CatalogStore] = None,
                 cancellation=None,
                 max_rows: int = DEFAULT_MAX_ROWS,
                 max_workers: int = DEFAULT_MAX_WORKERS,
                 fuzzy_threshold: float = DEFAULT_FUZZY_THRESHOLD,
                 rollback_window_hours: float = DEFAULT_ROLLBACK_WINDOW_HOURS,
                 sample_rows: int = DEFAULT_SAMPLE_ROWS,
                 progress_callback: Optional[ProgressCallback] = None):
        self.jobs = JobRepository(session_factory)
        self.store = catalog_store or SqlAlchemyCatalogStore(session_factory)
        self.cancellation = cancellation or LocalCancellationRegistry()
        self.max_rows = max_rows
        self.max_workers = max_workers
        self.rollback_window = timedelta(hours=rollback_window_hours)
        self.sample_rows = sample_rows
        self.progress_callback = progress_callback

        self.mapper = ColumnMapper(fuzzy_threshold=fuzzy_threshold)
        self.validator = RowValidator(max_workers=max_workers)
        self.detector = DuplicateDetector()
        self.rollback_manager = RollbackManager(self.store)
        self._job_locks = KeyedLocks()

    def _notify(self, stage: str, percent: float, message: str):
        if self.progress_callback:
            self.progress_callback(stage, percent, message)

    def _check_row_limit(self, decoded: DecodedFile):
        if len(decoded.rows) > self.max_rows:
            raise StructuralImportError(
                f"File has {len(decoded.rows)} data rows; at most {self.max_rows} can be imported at once"
            )

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self, business_id: str, file_name: str, file_type: str, file_size: int,
                 read_rows: Callable[[], DecodedFile],
                 column_mapping: Optional[Mapping[str, str]] = None,
                 created_by: Optional[str] = None,
                 file_path: Optional[str] = None) -> ValidationReport:
        """
        Create a job for an upload and validate it.

        Args:
            read_rows: Decodes the upload. Called once, after the job
                enters ``validating``, so decode failures are recorded.
            column_mapping: Confirmed mapping; the suggested one is used
                when omitted.

        Returns:
            ValidationReport. The job is ``validated`` even when rows have
            errors.

        Raises:
            StructuralImportError: unreadable file, too many rows or an
                unmapped required field. The job is ``failed`` and the
                exception carries its id.
        """
        job = self.jobs.create(
            business_id=business_id,
            status=S.PENDING.value,
            file_name=file_name,
            file_type=file_type,
            file_size=file_size,
            file_path=file_path,
            created_by=created_by,
        )
        self.jobs.update(job.id, lambda j: transition(j, S.VALIDATING))
        self._notify('validating', 0, f"Validating {file_name}")

        try:
            decoded = read_rows()
            self._check_row_limit(decoded)
            suggested = self.mapper.suggest_mapping(decoded.headers)
            mapping = self.mapper.check_mapping(
                column_mapping if column_mapping is not None else suggested, decoded.headers
            )
        except StructuralImportError as exc:
            logger.warning(f"Import job {job.id} failed validation: {exc}")
            self.jobs.update(job.id, lambda j: self._fail(j, str(exc)))
            exc.job_id = job.id
            raise
        except Exception:
            logger.error(f"Import job {job.id} crashed during validation", exc_info=True)
            self.jobs.update(job.id, lambda j: self._fail(j, "Validation failed unexpectedly"))
            raise

        rows = apply_mapping(decoded.rows, mapping, decoded.row_numbers or None)
        validation = self.validator.validate(rows)

        def _validated(j: ImportJob):
            transition(j, S.VALIDATED)
            j.total_rows = validation.total_rows
            j.valid_rows = validation.valid_rows
            j.column_mapping = dict(mapping)
            j.errors = [e.to_dict() for e in validation.errors]
            j.warnings = [w.to_dict() for w in validation.warnings]

        self.jobs.update(job.id, _validated)
        self._notify('validated', 100, f"{validation.valid_rows} of {validation.total_rows} rows valid")

        return ValidationReport(
            job_id=job.id,
            headers=list(decoded.headers),
            suggested_mapping=suggested,
            column_mapping=mapping,
            sample_data=rows[:self.sample_rows],
            validation=validation,
        )

    @staticmethod
    def _fail(job: ImportJob, message: str):
        transition(job, S.FAILED)
        job.error_message = message

    def check_duplicates(self, business_id: str, headers: Sequence[str],
                         rows: Sequence[Mapping[str, Any]],
                         column_mapping: Optional[Mapping[str, str]] = None,
                         row_numbers: Optional[Sequence[int]] = None) -> DuplicateCheckResult:
        """Match decoded rows against the business's catalog. Read-only."""
        mapping = self.mapper.check_mapping(
            column_mapping if column_mapping is not None else self.mapper.suggest_mapping(headers),
            headers,
        )
        mapped = apply_mapping(rows, mapping, row_numbers)
        return self.detector.detect(mapped, self.store.build_index(business_id))

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def start_processing(self, job_id: str, column_mapping: Optional[Mapping[str, str]] = None,
                         duplicate_action=DuplicateAction.SKIP,
                         business_id: Optional[str] = None) -> ImportJob:
        """
        Confirm mapping and duplicate policy and move the job to ``processing``.

        Raises:
            JobConflictError: a phase is already running on the job.
            MappingError: the confirmed mapping is unusable; the job stays
                ``validated``.
            InvalidTransition: the job is not ``validated``.
        """
        job = self.jobs.get(job_id, business_id)
        if job.is_busy():
            raise JobConflictError(f"Import job {job_id} is already {job.status}")
        action = DuplicateAction(duplicate_action)
        mapping = self.mapper.check_mapping(
            column_mapping if column_mapping is not None else (job.column_mapping or {})
        )

        def _start(j: ImportJob):
            if j.is_busy():
                raise JobConflictError(f"Import job {j.id} is already {j.status}")
            transition(j, S.PROCESSING)
            j.column_mapping = dict(mapping)
            j.duplicate_action = action.value

        job = self.jobs.update(job_id, _start)
        logger.info(f"Import job {job_id} queued for processing (duplicate_action={action.value})")
        return job

    def execute(self, job_id: str, decoded: DecodedFile) -> ImportJob:
        """
        Apply every row of a ``processing`` job and finish it.

        Ends in ``completed``, ``cancelled`` (signal observed before the
        last row) or ``failed`` (structural problem with the stored file, or
        the catalog became unavailable).
        """
        job = self.jobs.get(job_id)
        if job.status != S.PROCESSING.value:
            raise InvalidTransition(job.status, 'execute')

        try:
            return self._execute(job, decoded)
        except Exception:
            logger.error(f"Import job {job_id} crashed during execution", exc_info=True)
            self.jobs.update(job_id, self._fail_if_processing)
            raise
        finally:
            self.cancellation.clear(job_id)

    @staticmethod
    def _fail_if_processing(job: ImportJob, message: str = 'Import failed unexpectedly'):
        if job.status == S.PROCESSING.value:
            ImportEngine._fail(job, message)

    def abandon(self, job_id: str, message: str) -> ImportJob:
        """Fail a ``processing`` job that will never run, e.g. when it could not be queued."""
        logger.error(f"Abandoning import job {job_id}: {message}")
        return self.jobs.update(job_id, lambda j: self._fail_if_processing(j, message))

    def _execute(self, job: ImportJob, decoded: DecodedFile) -> ImportJob:
        job_id = job.id
        try:
            self._check_row_limit(decoded)
            mapping = self.mapper.check_mapping(job.column_mapping or {}, decoded.headers)
            rows = apply_mapping(decoded.rows, mapping, decoded.row_numbers or None)
            validation = self.validator.validate(rows)
            index = self.store.build_index(job.business_id)
        except (StructuralImportError, CatalogUnavailableError) as exc:
            logger.error(f"Import job {job_id} cannot start: {exc}")
            return self.jobs.update(job_id, lambda j: self._fail(j, str(exc)))

        duplicates = self.detector.detect(rows, index).by_row()
        total = len(rows)

        def _prepare(j: ImportJob):
            j.total_rows = total
            j.valid_rows = validation.valid_rows
            j.errors = [e.to_dict() for e in validation.errors]
            j.warnings = [w.to_dict() for w in validation.warnings]

        self.jobs.update(job_id, _prepare)
        self._notify('processing', 0, f"Processing {total} rows")

        def _record(result: ImportRowResult, pre_image: Optional[Dict[str, Any]]):
            def _apply(j: ImportJob):
                j.processed_rows += 1
                counter = f"{result.status}_count"
                setattr(j, counter, getattr(j, counter) + 1)
                # New containers so the JSON columns are flagged dirty
                j.results = list(j.results or []) + [result.to_dict()]
                if pre_image is not None:
                    j.pre_images = {**(j.pre_images or {}), str(result.row): pre_image}

            current = self.jobs.update(job_id, _apply)
            percent = round(current.processed_rows / total * 100, 1) if total else 100.0
            self._notify(
                'processing', percent, f"Processed {current.processed_rows} of {total} rows"
            )

        executor = ImportExecutor(
            self.store, job.business_id,
            duplicate_action=DuplicateAction(job.duplicate_action),
            max_workers=self.max_workers,
        )
        outcome = executor.execute(
            rows,
            invalid_rows=_invalid_row_messages(validation),
            duplicates=duplicates,
            cancel_token=self.cancellation.token_for(job_id),
            on_row_recorded=_record,
        )

        def _finish(j: ImportJob):
            if outcome.fatal_error:
                self._fail(j, f"Import aborted after {j.processed_rows} of {total} rows: {outcome.fatal_error}")
            elif outcome.cancelled:
                transition(j, S.CANCELLED)
            else:
                transition(j, S.COMPLETED)

        job = self.jobs.update(job_id, _finish)
        self._notify(job.status, 100, f"Import {job.status}: {job.summary()}")
        logger.info(f"Import job {job_id} finished as {job.status}: {job.summary()}")
        return job

    # ------------------------------------------------------------------
    # Inspection, cancellation and rollback
    # ------------------------------------------------------------------

    def get_job(self, job_id: str, business_id: Optional[str] = None) -> ImportJob:
        return self.jobs.get(job_id, business_id)

    def cancel(self, job_id: str, business_id: Optional[str] = None) -> ImportJob:
        """
        Ask a processing job to stop after the rows already in flight.

        Raises:
            InvalidTransition: the job is not ``processing``.
        """
        job = self.jobs.get(job_id, business_id)
        if job.status != S.PROCESSING.value:
            raise InvalidTransition(job.status, S.CANCELLED.value)
        self.cancellation.request(job_id)
        return job

    def rollback(self, job_id: str, business_id: Optional[str] = None,
                 now: Optional[datetime] = None) -> ImportJob:
        """
        Revert the created and updated rows of a finished job.

        Raises:
            JobConflictError: a phase is running on the job.
            InvalidTransition: the job is not completed, failed or cancelled.
            RollbackNotAllowedError: nothing was committed, or the rollback
                window has passed.
        """
        now = now or datetime.utcnow()
        with self._job_locks.hold([('job', job_id)]):
            job = self.jobs.get(job_id, business_id)
            if job.is_busy():
                raise JobConflictError(f"Import job {job_id} is still {job.status}")
            if not can_transition(job.status, S.ROLLED_BACK):
                raise InvalidTransition(job.status, S.ROLLED_BACK.value)
            if job.committed_rows() == 0:
                raise RollbackNotAllowedError(f"Import job {job_id} has no committed rows to roll back")
            finished = job.completed_at or job.updated_at
            if finished and now - finished > self.rollback_window:
                raise RollbackNotAllowedError(
                    f"Rollback window of {self.rollback_window} has passed for import job {job_id}"
                )

            results = [ImportRowResult.from_dict(r) for r in (job.results or [])]
            pre_images = {int(row): image for row, image in (job.pre_images or {}).items()}
            report = self.rollback_manager.rollback(results, pre_images)

            def _rolled_back(j: ImportJob):
                transition(j, S.ROLLED_BACK, now=now)
                if not report.complete:
                    j.error_message = report.failure_message()

            job = self.jobs.update(job_id, _rolled_back)

        logger.info(
            f"Import job {job_id} rolled back: {report.reverted} reverted, {len(report.failures)} failed"
        )
        return job

    def list_history(self, business_id: str, page: int = 1, limit: int = 20) -> dict:
        page = max(1, page)
        limit = max(1, limit)
        jobs, total = self.jobs.list_for_business(business_id, page, limit)
        return {
            'jobs': [job.to_dict() for job in jobs],
            'total': total,
            'page': page,
            'limit': limit,
            'totalPages': (total + limit - 1) // limit,
        }
