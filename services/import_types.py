"""
Value types passed between import phases.

All of them serialize to the camelCase JSON shape stored on the job
record and returned by the API.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

# A mapped spreadsheet row: product field key -> raw cell value, plus the
# 1-based file row number under ROW_NUMBER_KEY (header is row 1).
ImportRow = Dict[str, Any]
ROW_NUMBER_KEY = 'rowNumber'
FIRST_DATA_ROW = 2


@dataclass(frozen=True)
class ImportRowError:
    """A single validation problem (or warning) on one row."""

    row: int
    field: str
    message: str
    value: Optional[str] = None

    def to_dict(self) -> dict:
        data = {'row': self.row, 'field': self.field, 'message': self.message}
        if self.value is not None:
            data['value'] = self.value
        return data


@dataclass(frozen=True)
class ImportRowResult:
    """Outcome of one processed row."""

    row: int
    status: str
    product_id: Optional[str] = None
    sku: Optional[str] = None
    name: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        data: Dict[str, Any] = {'row': self.row, 'status': self.status}
        if self.product_id is not None:
            data['productId'] = self.product_id
        if self.sku is not None:
            data['sku'] = self.sku
        if self.name is not None:
            data['name'] = self.name
        if self.error is not None:
            data['error'] = self.error
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'ImportRowResult':
        return cls(
            row=data['row'],
            status=data['status'],
            product_id=data.get('productId'),
            sku=data.get('sku'),
            name=data.get('name'),
            error=data.get('error'),
        )


@dataclass(frozen=True)
class ValidationResult:
    """Immutable snapshot of the validation phase."""

    errors: Tuple[ImportRowError, ...]
    warnings: Tuple[ImportRowError, ...]
    valid_rows: int
    total_rows: int
    invalid_row_numbers: FrozenSet[int] = frozenset()

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def errors_for_row(self, row: int) -> List[ImportRowError]:
        return [err for err in self.errors if err.row == row]

    def to_dict(self) -> dict:
        return {
            'isValid': self.is_valid,
            'errors': [err.to_dict() for err in self.errors],
            'warnings': [warn.to_dict() for warn in self.warnings],
            'validRows': self.valid_rows,
            'totalRows': self.total_rows,
        }


@dataclass(frozen=True)
class ExistingProduct:
    """Reference to the catalog record a row collided with."""

    id: str
    name: str
    sku: str

    def to_dict(self) -> dict:
        return {'id': self.id, 'name': self.name, 'sku': self.sku}


@dataclass(frozen=True)
class DuplicateInfo:
    """A row that matches an existing catalog record."""

    row: int
    match_field: str
    match_value: str
    existing_product: ExistingProduct

    def to_dict(self) -> dict:
        return {
            'row': self.row,
            'matchField': self.match_field,
            'matchValue': self.match_value,
            'existingProduct': self.existing_product.to_dict(),
        }


@dataclass(frozen=True)
class DuplicateCheckResult:
    """Output of the duplicate detection phase."""

    total_rows: int
    duplicates: Tuple[DuplicateInfo, ...] = field(default_factory=tuple)

    @property
    def duplicate_count(self) -> int:
        return len(self.duplicates)

    @property
    def unique_count(self) -> int:
        return self.total_rows - self.duplicate_count

    def by_row(self) -> Dict[int, DuplicateInfo]:
        return {dup.row: dup for dup in self.duplicates}

    def to_dict(self) -> dict:
        return {
            'totalRows': self.total_rows,
            'duplicateCount': self.duplicate_count,
            'uniqueCount': self.unique_count,
            'duplicates': [dup.to_dict() for dup in self.duplicates],
        }
