"""
Column Mapper - map uploaded header strings to product field keys.

Resolution order for every header:
    1. case-insensitive exact match on a field key or label
    2. the fixed alias dictionary
    3. fuzzy similarity above a threshold

Each pass runs over all headers before the next one starts, so an exact
match always beats an alias and an alias always beats a fuzzy guess.
"""

import logging
from dataclasses import dataclass
from difflib import SequenceMatcher
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from services.errors import MappingError
from services.import_types import FIRST_DATA_ROW, ImportRow, ROW_NUMBER_KEY

logger = logging.getLogger(__name__)

DEFAULT_FUZZY_THRESHOLD = 0.8


@dataclass(frozen=True)
class FieldSpec:
    """A product field an uploaded column can be mapped to."""
    key: str
    label: str
    required: bool = False


PRODUCT_FIELDS: tuple = (
    FieldSpec('name', 'Product Name', required=True),
    FieldSpec('sku', 'SKU'),
    FieldSpec('barcode', 'Barcode (UPC/EAN)'),
    FieldSpec('description', 'Description'),
    FieldSpec('categoryName', 'Category'),
    FieldSpec('brand', 'Brand'),
    FieldSpec('sellingPrice', 'Selling Price', required=True),
    FieldSpec('purchasePrice', 'Purchase Price'),
    FieldSpec('quantity', 'Stock Quantity'),
    FieldSpec('taxClass', 'Tax Class'),
    FieldSpec('unitOfMeasure', 'Unit of Measure'),
    FieldSpec('weight', 'Weight'),
    FieldSpec('weightUnit', 'Weight Unit'),
    FieldSpec('tags', 'Tags'),
)

FIELD_KEYS = tuple(product_field.key for product_field in PRODUCT_FIELDS)
REQUIRED_FIELDS = tuple(product_field.key for product_field in PRODUCT_FIELDS if product_field.required)

COLUMN_ALIASES: Dict[str, tuple] = {
    'name': ('name', 'product', 'item', 'product name', 'productname', 'title',
             'product title', 'item name'),
    'sku': ('sku', 'stock keeping unit', 'item code', 'product code', 'code'),
    'barcode': ('barcode', 'upc', 'ean', 'gtin', 'primary barcode'),
    'description': ('description', 'desc', 'details', 'product description'),
    'categoryName': ('category', 'category name', 'categoryname', 'product category'),
    'brand': ('brand', 'manufacturer', 'vendor', 'brand name'),
    'sellingPrice': ('selling price', 'sellingprice', 'price', 'retail price',
                     'sale price', 'unit price'),
    'purchasePrice': ('purchase price', 'purchaseprice', 'cost', 'cost price',
                      'unit cost', 'buy price'),
    'quantity': ('quantity', 'qty', 'stock', 'stock quantity', 'inventory', 'on hand'),
    'taxClass': ('tax class', 'taxclass', 'tax', 'tax rate'),
    'unitOfMeasure': ('unit', 'uom', 'unit of measure', 'unit type'),
    'weight': ('weight', 'gross weight', 'net weight'),
    'weightUnit': ('weight unit', 'weightunit', 'wt unit'),
    'tags': ('tags', 'labels', 'keywords'),
}


def normalize_header(header: str) -> str:
    """Lowercase, trimmed header used for exact and alias matching."""
    return ' '.join(str(header).strip().lower().split())


def compact_header(header: str) -> str:
    """Alphanumeric-only header used for fuzzy matching."""
    return ''.join(ch for ch in str(header).lower() if ch.isalnum())


class ColumnMapper:
    """Suggest and check header -> field key mappings."""

    def __init__(self, fields: Sequence[FieldSpec] = PRODUCT_FIELDS,
                 aliases: Mapping[str, Iterable[str]] = COLUMN_ALIASES,
                 fuzzy_threshold: float = DEFAULT_FUZZY_THRESHOLD):
        self.fields = tuple(fields)
        self.field_keys = tuple(product_field.key for product_field in self.fields)
        self.required_fields = tuple(product_field.key for product_field in self.fields if product_field.required)
        self.fuzzy_threshold = fuzzy_threshold

        self._exact: Dict[str, str] = {}
        for product_field in self.fields:
            self._exact.setdefault(normalize_header(product_field.key), product_field.key)
            self._exact.setdefault(normalize_header(product_field.label), product_field.key)

        self._aliases: Dict[str, str] = {}
        for key, names in aliases.items():
            for alias in names:
                self._aliases.setdefault(normalize_header(alias), key)

        self._fuzzy_candidates: Dict[str, List[str]] = {}
        for product_field in self.fields:
            candidates = [product_field.key, product_field.label, *aliases.get(product_field.key, ())]
            self._fuzzy_candidates[product_field.key] = [
                compact for compact in (compact_header(c) for c in candidates) if compact
            ]

    def suggest_mapping(self, headers: Sequence[str]) -> Dict[str, str]:
        """
        Build a suggested mapping for the given headers.

        Returns:
            Dict of header -> field key, in header order. Headers with no
            match are left out.
        """
        mapping: Dict[str, str] = {}
        used_fields = set()

        passes = (
            lambda h: self._exact.get(normalize_header(h)),
            lambda h: self._aliases.get(normalize_header(h)),
            lambda h: self._fuzzy_match(h, used_fields),
        )
        for resolve in passes:
            for header in headers:
                if header in mapping or not str(header).strip():
                    continue
                field_key = resolve(header)
                if field_key and field_key not in used_fields:
                    mapping[header] = field_key
                    used_fields.add(field_key)

        ordered = {h: mapping[h] for h in headers if h in mapping}
        logger.debug(f"Suggested mapping for {len(headers)} headers: {ordered}")
        return ordered

    def _fuzzy_match(self, header: str, used_fields: set) -> Optional[str]:
        header_compact = compact_header(header)
        if not header_compact:
            return None

        best_key = None
        best_score = 0.0
        for key in self.field_keys:
            if key in used_fields:
                continue
            for candidate in self._fuzzy_candidates[key]:
                score = SequenceMatcher(None, header_compact, candidate).ratio()
                if score > best_score:
                    best_score = score
                    best_key = key

        if best_key is not None and best_score >= self.fuzzy_threshold:
            logger.debug(f"Fuzzy matched header '{header}' -> {best_key} ({best_score:.2f})")
            return best_key
        return None

    def missing_required(self, mapping: Mapping[str, str]) -> List[str]:
        """Required field keys that no header maps to."""
        mapped = set(mapping.values())
        return [key for key in self.required_fields if key not in mapped]

    def check_mapping(self, mapping: Mapping[str, str], headers: Optional[Sequence[str]] = None) -> Dict[str, str]:
        """
        Check a confirmed mapping structurally.

        Blank targets are dropped (the header is simply not imported).

        Raises:
            MappingError: unknown field key, a field mapped twice, a header
                not present in the file, or an unmapped required field.
        """
        cleaned: Dict[str, str] = {}
        seen: Dict[str, str] = {}
        for header, field_key in mapping.items():
            if field_key is None or not str(field_key).strip():
                continue
            field_key = str(field_key).strip()
            if field_key not in self.field_keys:
                raise MappingError(f"Unknown product field '{field_key}' for column '{header}'")
            if field_key in seen:
                raise MappingError(
                    f"Field '{field_key}' is mapped from both '{seen[field_key]}' and '{header}'"
                )
            if headers is not None and header not in headers:
                raise MappingError(f"Column '{header}' is not present in the file")
            seen[field_key] = header
            cleaned[header] = field_key

        missing = self.missing_required(cleaned)
        if missing:
            labels = ', '.join(self._label(key) for key in missing)
            raise MappingError(
                f"Required field(s) not mapped to any column: {labels}",
                missing_fields=missing,
            )
        return cleaned

    def _label(self, key: str) -> str:
        for product_field in self.fields:
            if product_field.key == key:
                return f"{product_field.label} ({product_field.key})"
        return key


def apply_mapping(rows: Sequence[Mapping[str, Any]], mapping: Mapping[str, str],
                  row_numbers: Optional[Sequence[int]] = None) -> List[ImportRow]:
    """
    Turn decoded rows (header -> value) into ImportRows (field key -> value).

    Args:
        rows: Decoded rows
        mapping: Header -> field key
        row_numbers: File row number of each decoded row. Without them rows
            are numbered consecutively from row 2.
    """
    if row_numbers is None:
        row_numbers = range(FIRST_DATA_ROW, FIRST_DATA_ROW + len(rows))
    elif len(row_numbers) != len(rows):
        raise ValueError(f"Got {len(row_numbers)} row numbers for {len(rows)} rows")

    mapped_rows: List[ImportRow] = []
    for row_number, row in zip(row_numbers, rows):
        mapped: ImportRow = {ROW_NUMBER_KEY: row_number}
        for header, field_key in mapping.items():
            if header in row:
                mapped[field_key] = row[header]
        mapped_rows.append(mapped)
    return mapped_rows
