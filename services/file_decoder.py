"""
File Decoder - turn an uploaded CSV or Excel file into headers and rows.

Every failure is raised as FileDecodeError, which the engine treats as a
structural failure of the whole file.
"""

import csv
import io
import logging
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Sequence, Tuple, Union

import openpyxl
from openpyxl.utils.exceptions import InvalidFileException

from services.errors import FileDecodeError
from services.import_types import FIRST_DATA_ROW

logger = logging.getLogger(__name__)

CSV_ENCODINGS = ('utf-8-sig', 'utf-8', 'latin-1')
EXCEL_TYPES = ('xlsx', 'xlsm')
FILE_TYPES = ('csv',) + EXCEL_TYPES


@dataclass
class DecodedFile:
    """
    Headers in file order and one dict per non-empty data row.

    ``row_numbers[i]`` is the file row of ``rows[i]`` (header is row 1);
    blank rows are dropped but still counted.
    """
    headers: List[str]
    rows: List[Dict[str, Any]] = field(default_factory=list)
    row_numbers: List[int] = field(default_factory=list)


def file_type_for(file_name: str) -> str:
    """
    File type from the extension.

    Raises:
        FileDecodeError: unsupported extension.
    """
    ext = Path(file_name or '').suffix.lower().lstrip('.')
    if ext not in FILE_TYPES:
        raise FileDecodeError(
            f"Unsupported file type '.{ext}'. Allowed: {', '.join('.' + t for t in FILE_TYPES)}"
        )
    return ext


def _decode_text(content: bytes) -> str:
    for encoding in CSV_ENCODINGS:
        try:
            return content.decode(encoding)
        except UnicodeDecodeError:
            continue
    raise FileDecodeError("Could not decode CSV file")


def _clean_headers(raw_headers: Sequence[Any]) -> List[str]:
    headers = [str(h).strip() if h is not None else '' for h in raw_headers]
    named = [h for h in headers if h]
    if not named:
        raise FileDecodeError("File has no header row")
    duplicates = sorted({h for h in named if named.count(h) > 1})
    if duplicates:
        raise FileDecodeError(f"Duplicate column header(s): {', '.join(duplicates)}")
    return headers


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _build_rows(headers: List[str], raw_rows) -> Tuple[List[Dict[str, Any]], List[int]]:
    rows = []
    row_numbers = []
    for row_number, raw in enumerate(raw_rows, start=FIRST_DATA_ROW):
        values = list(raw)
        if all(_is_blank(v) for v in values):
            continue
        row = {}
        for index, header in enumerate(headers):
            if not header:
                continue
            row[header] = values[index] if index < len(values) else None
        rows.append(row)
        row_numbers.append(row_number)
    return rows, row_numbers


def decode_csv(content: bytes) -> DecodedFile:
    text = _decode_text(content)
    try:
        reader = csv.reader(io.StringIO(text))
        raw_headers = next(reader, None)
        if raw_headers is None:
            raise FileDecodeError("File is empty")
        headers = _clean_headers(raw_headers)
        rows, row_numbers = _build_rows(headers, reader)
    except csv.Error as exc:
        raise FileDecodeError(f"Malformed CSV: {exc}") from exc
    return DecodedFile(headers=[h for h in headers if h], rows=rows, row_numbers=row_numbers)


def decode_excel(content: bytes) -> DecodedFile:
    try:
        workbook = openpyxl.load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, OSError, KeyError, ValueError) as exc:
        raise FileDecodeError(f"Could not open Excel file: {exc}") from exc

    try:
        sheet = workbook.active
        if sheet is None:
            raise FileDecodeError("Workbook has no worksheets")
        values = sheet.iter_rows(values_only=True)
        raw_headers = next(values, None)
        if raw_headers is None:
            raise FileDecodeError("File is empty")
        headers = _clean_headers(raw_headers)
        rows, row_numbers = _build_rows(headers, values)
    finally:
        workbook.close()
    return DecodedFile(headers=[h for h in headers if h], rows=rows, row_numbers=row_numbers)


def decode_file(source: Union[bytes, str, Path], file_type: str) -> DecodedFile:
    """
    Decode an upload.

    Args:
        source: Raw bytes, or a path to a stored upload
        file_type: 'csv', 'xlsx' or 'xlsm'

    Raises:
        FileDecodeError: unreadable file, missing or duplicate headers,
            or no data rows.
    """
    if isinstance(source, (str, Path)):
        try:
            content = Path(source).read_bytes()
        except OSError as exc:
            raise FileDecodeError(f"Could not read stored file: {exc}") from exc
    else:
        content = source

    file_type = (file_type or '').lower().lstrip('.')
    if file_type == 'csv':
        decoded = decode_csv(content)
    elif file_type in EXCEL_TYPES:
        decoded = decode_excel(content)
    else:
        raise FileDecodeError(f"Unsupported file type '{file_type}'")

    if not decoded.rows:
        raise FileDecodeError("File is empty or has no data rows")

    logger.info(f"Decoded {file_type} file: {len(decoded.headers)} columns, {len(decoded.rows)} rows")
    return decoded
