"""
Import Executor - apply validated rows to the catalog.

The only component that mutates catalog state. Rows are applied in file
order; each row produces exactly one ImportRowResult and a failing row
never stops the rows after it. The only exception is
CatalogUnavailableError, which aborts the remaining rows.

With ``max_workers > 1`` rows run in batches on a thread pool. Writes that
touch the same SKU, barcode or name are serialized through KeyedLocks, and
each batch's results are recorded in row order.
"""

import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from backend.models.job import DuplicateAction, RowStatus
from services.cancellation import CancellationToken, NeverCancelled
from services.catalog_store import FIELD_COLUMNS, CatalogStore
from services.errors import CatalogUnavailableError
from services.import_types import (
    DuplicateInfo, ExistingProduct, ImportRow, ImportRowResult, ROW_NUMBER_KEY
)
from services.key_locks import KeyedLocks, row_lock_keys
from services.row_validator import DECIMAL_FIELDS, cell_text, parse_decimal, parse_quantity

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 1
GENERATED_SKU_PREFIX = 'SKU-'
MAX_SKU_ATTEMPTS = 5

# Called once per recorded row, in row order: (result, pre_image or None)
RowRecorder = Callable[[ImportRowResult, Optional[Dict[str, Any]]], None]


def generate_sku() -> str:
    """Random SKU of the form ``SKU-1A2B3C4D``."""
    return f"{GENERATED_SKU_PREFIX}{uuid.uuid4().hex[:8].upper()}"


def row_to_fields(row: ImportRow) -> Dict[str, Any]:
    """
    Convert the non-empty cells of a mapped row to Product column values.

    Only fields present in the row are returned, so an update overwrites
    exactly what the file supplies.
    """
    fields: Dict[str, Any] = {}
    for key, column in FIELD_COLUMNS.items():
        text = cell_text(row.get(key))
        if not text:
            continue
        if key in DECIMAL_FIELDS:
            fields[column] = parse_decimal(text)
        elif key == 'quantity':
            fields[column] = parse_quantity(text)
        elif key == 'tags':
            fields[column] = [tag.strip() for tag in text.split(',') if tag.strip()]
        else:
            fields[column] = text
    return fields


@dataclass
class ExecutionOutcome:
    """What an executor run did, in recorded order."""
    results: List[ImportRowResult] = field(default_factory=list)
    pre_images: Dict[int, Dict[str, Any]] = field(default_factory=dict)
    cancelled: bool = False
    fatal_error: Optional[str] = None

    @property
    def processed(self) -> int:
        return len(self.results)

    def count(self, status: RowStatus) -> int:
        return sum(1 for result in self.results if result.status == status.value)


class ImportExecutor:
    """Apply rows to a CatalogStore under a duplicate policy."""

    def __init__(self, store: CatalogStore, business_id: str,
                 duplicate_action: DuplicateAction = DuplicateAction.SKIP,
                 max_workers: int = DEFAULT_MAX_WORKERS,
                 locks: Optional[KeyedLocks] = None):
        self.store = store
        self.business_id = business_id
        self.duplicate_action = DuplicateAction(duplicate_action)
        self.max_workers = max(1, int(max_workers))
        self.locks = locks or KeyedLocks()

    def execute(self, rows: Sequence[ImportRow],
                invalid_rows: Optional[Mapping[int, str]] = None,
                duplicates: Optional[Mapping[int, DuplicateInfo]] = None,
                cancel_token: Optional[CancellationToken] = None,
                on_row_recorded: Optional[RowRecorder] = None) -> ExecutionOutcome:
        """
        Apply ``rows`` in order.

        Args:
            rows: Mapped rows.
            invalid_rows: Row number -> validation message for rows that
                must fail without touching the catalog.
            duplicates: Row number -> precomputed match.
            cancel_token: Checked before every row (or batch).
            on_row_recorded: Persistence hook, called in row order.

        Returns:
            ExecutionOutcome
        """
        invalid_rows = invalid_rows or {}
        duplicates = duplicates or {}
        token = cancel_token or NeverCancelled()
        outcome = ExecutionOutcome()

        logger.info(
            f"Executing {len(rows)} rows for business {self.business_id} "
            f"(duplicate_action={self.duplicate_action.value}, workers={self.max_workers})"
        )

        if self.max_workers == 1:
            self._run_sequential(rows, invalid_rows, duplicates, token, outcome, on_row_recorded)
        else:
            self._run_batched(rows, invalid_rows, duplicates, token, outcome, on_row_recorded)

        logger.info(
            f"Execution finished: {outcome.processed}/{len(rows)} rows, "
            f"created={outcome.count(RowStatus.CREATED)}, updated={outcome.count(RowStatus.UPDATED)}, "
            f"skipped={outcome.count(RowStatus.SKIPPED)}, failed={outcome.count(RowStatus.FAILED)}, "
            f"cancelled={outcome.cancelled}, fatal={outcome.fatal_error is not None}"
        )
        return outcome

    def _run_sequential(self, rows, invalid_rows, duplicates, token, outcome, on_row_recorded):
        for row in rows:
            if token.is_cancelled():
                outcome.cancelled = True
                logger.info(f"Cancellation observed before row {row[ROW_NUMBER_KEY]}")
                return
            try:
                result, pre_image = self.apply_row(row, invalid_rows, duplicates)
            except CatalogUnavailableError as exc:
                outcome.fatal_error = str(exc)
                logger.error(f"Aborting import at row {row[ROW_NUMBER_KEY]}: {exc}")
                return
            self._record(outcome, result, pre_image, on_row_recorded)

    def _run_batched(self, rows, invalid_rows, duplicates, token, outcome, on_row_recorded):
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            for start in range(0, len(rows), self.max_workers):
                if token.is_cancelled():
                    outcome.cancelled = True
                    logger.info(f"Cancellation observed before row {rows[start][ROW_NUMBER_KEY]}")
                    return

                batch = rows[start:start + self.max_workers]
                futures = [
                    pool.submit(self.apply_row, row, invalid_rows, duplicates) for row in batch
                ]

                fatal = None
                for row, future in zip(batch, futures):
                    try:
                        result, pre_image = future.result()
                    except CatalogUnavailableError as exc:
                        # Other rows of the batch may already be committed; keep them
                        fatal = fatal or str(exc)
                        logger.error(f"Row {row[ROW_NUMBER_KEY]} hit an unavailable catalog: {exc}")
                        continue
                    self._record(outcome, result, pre_image, on_row_recorded)

                if fatal:
                    outcome.fatal_error = fatal
                    return

    @staticmethod
    def _record(outcome: ExecutionOutcome, result: ImportRowResult,
                pre_image: Optional[Dict[str, Any]], on_row_recorded: Optional[RowRecorder]):
        outcome.results.append(result)
        if pre_image is not None:
            outcome.pre_images[result.row] = pre_image
        if on_row_recorded is not None:
            on_row_recorded(result, pre_image)

    def apply_row(self, row: ImportRow, invalid_rows: Mapping[int, str],
                  duplicates: Mapping[int, DuplicateInfo]) -> Tuple[ImportRowResult, Optional[Dict[str, Any]]]:
        """
        Apply one row.

        Returns:
            (result, pre_image). ``pre_image`` is only set for updates.

        Raises:
            CatalogUnavailableError: the store cannot be reached.
        """
        row_no = row[ROW_NUMBER_KEY]
        sku = cell_text(row.get('sku')) or None
        name = cell_text(row.get('name')) or None

        if row_no in invalid_rows:
            return ImportRowResult(
                row_no, RowStatus.FAILED.value, sku=sku, name=name, error=invalid_rows[row_no]
            ), None

        try:
            with self.locks.hold(row_lock_keys(row)):
                match = duplicates.get(row_no)
                existing = match.existing_product if match else self._live_match(row)
                return self._apply_policy(row, existing)
        except CatalogUnavailableError:
            raise
        except Exception as exc:
            logger.warning(f"Row {row_no} failed: {exc}")
            return ImportRowResult(
                row_no, RowStatus.FAILED.value, sku=sku, name=name, error=str(exc)
            ), None

    def _live_match(self, row: ImportRow) -> Optional[ExistingProduct]:
        """Same priority as the duplicate detector, against the live catalog."""
        sku = cell_text(row.get('sku'))
        if sku:
            entry = self.store.find_by_sku(self.business_id, sku)
            if entry:
                return entry.reference()
        barcode = cell_text(row.get('barcode'))
        if barcode:
            entry = self.store.find_by_barcode(self.business_id, barcode)
            if entry:
                return entry.reference()
        name = cell_text(row.get('name'))
        if name:
            entry = self.store.find_by_name(self.business_id, name)
            if entry:
                return entry.reference()
        return None

    def _apply_policy(self, row: ImportRow,
                      existing: Optional[ExistingProduct]) -> Tuple[ImportRowResult, Optional[Dict[str, Any]]]:
        row_no = row[ROW_NUMBER_KEY]
        fields = row_to_fields(row)

        if existing is not None and self.duplicate_action == DuplicateAction.SKIP:
            return ImportRowResult(
                row_no, RowStatus.SKIPPED.value,
                product_id=existing.id, sku=existing.sku, name=existing.name,
            ), None

        if existing is not None and self.duplicate_action == DuplicateAction.UPDATE:
            pre_image = self.store.update_product(existing.id, fields)
            return ImportRowResult(
                row_no, RowStatus.UPDATED.value,
                product_id=existing.id,
                sku=fields.get('sku', existing.sku),
                name=fields.get('name', existing.name),
            ), pre_image

        # Unmatched row, or a match under create_new
        sku = fields.get('sku')
        if not sku or (existing is not None and self.store.find_by_sku(self.business_id, sku)):
            fields['sku'] = self._fresh_sku()

        entry = self.store.create_product(self.business_id, fields)
        return ImportRowResult(
            row_no, RowStatus.CREATED.value, product_id=entry.id, sku=entry.sku, name=entry.name,
        ), None

    def _fresh_sku(self) -> str:
        for _ in range(MAX_SKU_ATTEMPTS):
            candidate = generate_sku()
            if self.store.find_by_sku(self.business_id, candidate) is None:
                return candidate
        # Still colliding after retries; left to the unique constraint
        return generate_sku()
