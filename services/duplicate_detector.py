"""
Duplicate Detector - match import rows against existing catalog products.

Pure and read-only: works on a CatalogIndex snapshot, never touches the
catalog or the job counters.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

from services.import_types import (
    DuplicateCheckResult, DuplicateInfo, ExistingProduct, ImportRow, ROW_NUMBER_KEY
)
from services.row_validator import cell_text

logger = logging.getLogger(__name__)

# Checked in this order; the first hit wins
MATCH_FIELDS = ('sku', 'barcode', 'name')


@dataclass(frozen=True)
class CatalogEntry:
    """The identifying fields of one existing product."""
    id: str
    name: str
    sku: str
    barcode: Optional[str] = None

    def reference(self) -> ExistingProduct:
        return ExistingProduct(id=self.id, name=self.name, sku=self.sku)


def name_key(name: str) -> str:
    return cell_text(name).lower()


class CatalogIndex:
    """
    Lookup tables over a business's products.

    When several products share a key, the one with the smallest id is
    kept, so the index does not depend on the order entries arrive in.
    """

    def __init__(self, entries: Iterable[CatalogEntry] = ()):
        self.by_sku: Dict[str, CatalogEntry] = {}
        self.by_barcode: Dict[str, CatalogEntry] = {}
        self.by_name: Dict[str, CatalogEntry] = {}
        for entry in entries:
            self.add(entry)

    def add(self, entry: CatalogEntry) -> None:
        if entry.sku:
            self._keep(self.by_sku, cell_text(entry.sku), entry)
        if entry.barcode:
            self._keep(self.by_barcode, cell_text(entry.barcode), entry)
        if entry.name:
            self._keep(self.by_name, name_key(entry.name), entry)

    @staticmethod
    def _keep(table: Dict[str, CatalogEntry], key: str, entry: CatalogEntry) -> None:
        current = table.get(key)
        if current is None or entry.id < current.id:
            table[key] = entry

    def __len__(self):
        return len({entry.id for table in (self.by_sku, self.by_barcode, self.by_name)
                    for entry in table.values()})

    def match(self, row: ImportRow) -> Optional[DuplicateInfo]:
        """Find the existing product for ``row`` (SKU, then barcode, then name)."""
        row_no = row[ROW_NUMBER_KEY]

        sku = cell_text(row.get('sku'))
        if sku and sku in self.by_sku:
            return DuplicateInfo(row_no, 'sku', sku, self.by_sku[sku].reference())

        barcode = cell_text(row.get('barcode'))
        if barcode and barcode in self.by_barcode:
            return DuplicateInfo(row_no, 'barcode', barcode, self.by_barcode[barcode].reference())

        name = cell_text(row.get('name'))
        if name and name_key(name) in self.by_name:
            return DuplicateInfo(row_no, 'name', name, self.by_name[name_key(name)].reference())

        return None


class DuplicateDetector:
    """Run every row through a CatalogIndex and collect the matches."""

    def detect(self, rows: Sequence[ImportRow], index: CatalogIndex) -> DuplicateCheckResult:
        duplicates: List[DuplicateInfo] = []
        for row in rows:
            found = index.match(row)
            if found is not None:
                duplicates.append(found)

        duplicates.sort(key=lambda dup: dup.row)
        result = DuplicateCheckResult(total_rows=len(rows), duplicates=tuple(duplicates))
        logger.info(
            f"Duplicate check: {result.duplicate_count} of {result.total_rows} rows "
            f"match existing products"
        )
        return result
