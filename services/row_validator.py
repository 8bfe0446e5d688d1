"""
Row Validator - check mapped rows against product field constraints.

Pure and read-only. Every row is checked exhaustively (a row with three
problems reports three errors) and a bad row never stops validation of
the rows after it.
"""

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Sequence, Tuple

from services.column_mapper import REQUIRED_FIELDS
from services.import_types import ImportRow, ImportRowError, ROW_NUMBER_KEY, ValidationResult

logger = logging.getLogger(__name__)

DECIMAL_FIELDS = ('sellingPrice', 'purchasePrice', 'weight')
PRICE_FIELDS = ('sellingPrice', 'purchasePrice')
MIN_NAME_LENGTH = 2
MAX_CODE_LENGTH = 64

SKU_PATTERN = re.compile(r'^[A-Za-z0-9][A-Za-z0-9._-]*$')
BARCODE_PATTERN = re.compile(r'^[A-Za-z0-9]+$')
THOUSANDS_PATTERN = re.compile(r'^[+-]?\d{1,3}(,\d{3})+(\.\d*)?$')


def cell_text(value: Any) -> str:
    """
    Render a raw cell value as trimmed text.

    Spreadsheet readers hand back integral numbers as floats (``5.0``), so
    those are rendered without the fractional part.
    """
    if value is None:
        return ''
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def parse_decimal(value: Any) -> Optional[Decimal]:
    """Parse a price-like value; ``None`` when it is not a finite number."""
    text = cell_text(value)
    if ',' in text:
        # Commas only as thousands separators; "1,5" is not read as 15
        if not THOUSANDS_PATTERN.match(text):
            return None
        text = text.replace(',', '')
    if not text:
        return None
    try:
        number = Decimal(text)
    except (InvalidOperation, ValueError):
        return None
    if not number.is_finite():
        return None
    return number


def parse_quantity(value: Any) -> Optional[int]:
    """Parse a whole-number quantity; ``None`` when not an integer."""
    number = parse_decimal(value)
    if number is None or number != number.to_integral_value():
        return None
    return int(number)


class RowValidator:
    """
    Validate ImportRows.

    Per-row checks may run on a thread pool (``max_workers > 1``); results
    are merged back in row order so the output does not depend on which
    worker finished first.
    """

    def __init__(self, required_fields: Sequence[str] = REQUIRED_FIELDS, max_workers: int = 1):
        self.required_fields = tuple(required_fields)
        self.max_workers = max(1, int(max_workers))

    def validate(self, rows: Sequence[ImportRow]) -> ValidationResult:
        """Validate every row and collect every violation."""
        if self.max_workers > 1 and len(rows) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                per_row = list(pool.map(self.check_row, rows))
        else:
            per_row = [self.check_row(row) for row in rows]

        errors: List[ImportRowError] = []
        warnings: List[ImportRowError] = []
        invalid = set()
        for row, (row_errors, row_warnings) in zip(rows, per_row):
            errors.extend(row_errors)
            warnings.extend(row_warnings)
            if row_errors:
                invalid.add(row[ROW_NUMBER_KEY])

        # Needs the whole file, so it runs after the per-row fan-out
        warnings.extend(self._repeated_sku_warnings(rows))
        warnings.sort(key=lambda w: w.row)

        result = ValidationResult(
            errors=tuple(errors),
            warnings=tuple(warnings),
            valid_rows=len(rows) - len(invalid),
            total_rows=len(rows),
            invalid_row_numbers=frozenset(invalid),
        )
        logger.info(
            f"Validated {result.total_rows} rows: {result.valid_rows} valid, "
            f"{len(result.errors)} errors, {len(result.warnings)} warnings"
        )
        return result

    def check_row(self, row: ImportRow) -> Tuple[List[ImportRowError], List[ImportRowError]]:
        """Return ``(errors, warnings)`` for a single row."""
        row_no = row[ROW_NUMBER_KEY]
        errors: List[ImportRowError] = []
        warnings: List[ImportRowError] = []

        for field in self.required_fields:
            if not cell_text(row.get(field)):
                errors.append(ImportRowError(row_no, field, f"{field} is required", cell_text(row.get(field))))

        name = cell_text(row.get('name'))
        if name and len(name) < MIN_NAME_LENGTH:
            errors.append(ImportRowError(
                row_no, 'name', f"Name must be at least {MIN_NAME_LENGTH} characters", name
            ))

        parsed: Dict[str, Decimal] = {}
        for field in DECIMAL_FIELDS:
            raw = cell_text(row.get(field))
            if not raw:
                continue
            number = parse_decimal(raw)
            if number is None:
                errors.append(ImportRowError(row_no, field, f"{field} must be a valid number", raw))
            elif number < 0:
                errors.append(ImportRowError(row_no, field, f"{field} cannot be negative", raw))
            else:
                parsed[field] = number

        raw_qty = cell_text(row.get('quantity'))
        if raw_qty:
            qty = parse_quantity(raw_qty)
            if qty is None:
                errors.append(ImportRowError(row_no, 'quantity', "quantity must be a whole number", raw_qty))
            elif qty < 0:
                errors.append(ImportRowError(row_no, 'quantity', "quantity cannot be negative", raw_qty))

        sku = cell_text(row.get('sku'))
        if sku and (len(sku) > MAX_CODE_LENGTH or not SKU_PATTERN.match(sku)):
            errors.append(ImportRowError(
                row_no, 'sku',
                "sku may only contain letters, digits, '.', '_' and '-' "
                f"(max {MAX_CODE_LENGTH} characters)",
                sku,
            ))

        barcode = cell_text(row.get('barcode'))
        if barcode and (len(barcode) > MAX_CODE_LENGTH or not BARCODE_PATTERN.match(barcode)):
            errors.append(ImportRowError(
                row_no, 'barcode',
                f"barcode must be alphanumeric (max {MAX_CODE_LENGTH} characters)",
                barcode,
            ))

        selling = parsed.get('sellingPrice')
        cost = parsed.get('purchasePrice')
        if selling and cost and cost > selling:
            warnings.append(ImportRowError(
                row_no, 'purchasePrice',
                "Purchase price is higher than selling price (negative margin)",
                f"Cost: {cost}, Price: {selling}",
            ))

        return errors, warnings

    @staticmethod
    def _repeated_sku_warnings(rows: Sequence[ImportRow]) -> List[ImportRowError]:
        first_seen: Dict[str, int] = {}
        warnings: List[ImportRowError] = []
        for row in rows:
            sku = cell_text(row.get('sku'))
            if not sku:
                continue
            row_no = row[ROW_NUMBER_KEY]
            if sku in first_seen:
                warnings.append(ImportRowError(
                    row_no, 'sku', f"SKU also used on row {first_seen[sku]}", sku
                ))
            else:
                first_seen[sku] = row_no
        return warnings
