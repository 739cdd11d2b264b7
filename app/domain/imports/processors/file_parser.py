"""
Parsing of uploaded import files into normalized rows.

Two formats are supported: delimited text (CSV) and XLSX workbooks. Headers
are normalized (trimmed, lower-cased, whitespace runs collapsed to ``_``) so
"Customer Name" and "customer_name" address the same field.
"""
import csv
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional

import pandas as pd

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = {
    ".csv": "csv",
    ".xlsx": "xlsx",
    ".xlsm": "xlsx",
}


class FileParseError(Exception):
    """Raised when an import file cannot be read at all."""

    def __init__(self, file_name: str, message: str = None):
        self.file_name = file_name
        self.message = message or f"Could not parse import file '{file_name}'."
        super().__init__(self.message)


class UnsupportedFileTypeError(ValueError):
    """Raised when a file's extension is not a supported import format."""

    def __init__(self, file_name: str):
        self.file_name = file_name
        allowed = ", ".join(sorted(SUPPORTED_EXTENSIONS))
        super().__init__(f"Unsupported file type for '{file_name}'. Allowed extensions: {allowed}")


@dataclass
class ParsedRow:
    """One data row, keyed by normalized header. ``error`` marks a structurally broken row."""
    row_number: int
    values: Dict[str, str]
    error: Optional[str] = None


@dataclass
class ParsedFile:
    total_rows: int
    rows: List[ParsedRow] = field(default_factory=list)
    headers: List[str] = field(default_factory=list)


def detect_file_type(filename: str) -> str:
    """
    Detect the import format from a filename.

    Returns:
        'csv' or 'xlsx'

    Raises:
        UnsupportedFileTypeError: If the extension is not supported
    """
    extension = os.path.splitext(filename or "")[1].lower()
    file_type = SUPPORTED_EXTENSIONS.get(extension)
    if file_type is None:
        raise UnsupportedFileTypeError(filename)
    return file_type


def validate_file_size(file_path: str, max_bytes: int) -> bool:
    """Return True when the file on disk is within ``max_bytes``."""
    return os.path.getsize(file_path) <= max_bytes


def normalize_header(header: object) -> str:
    return re.sub(r"\s+", "_", str(header if header is not None else "").strip().lower())


def _resolve_headers(raw_headers: List[object], column_mapping: Optional[Dict[str, str]]) -> List[str]:
    headers = [normalize_header(h) for h in raw_headers]
    if not column_mapping:
        return headers

    mapping = {normalize_header(source): normalize_header(target) for source, target in column_mapping.items()}
    return [mapping.get(h, h) for h in headers]


def _is_blank(cells: List[str]) -> bool:
    return all(not str(cell).strip() for cell in cells)


def iter_csv_rows(
    file_path: str,
    column_mapping: Optional[Dict[str, str]] = None,
) -> Iterator[ParsedRow]:
    """
    Stream a CSV file row by row.

    The header row is consumed first; every following non-blank line yields a
    ``ParsedRow``. A line whose column count differs from the header is still
    yielded, with ``error`` set, so it can be reported against its row number.

    Raises:
        FileParseError: If the file is missing, not UTF-8, or has no header row
    """
    file_name = os.path.basename(file_path)
    try:
        with open(file_path, newline="", encoding="utf-8-sig") as handle:
            reader = csv.reader(handle)

            headers: Optional[List[str]] = None
            for cells in reader:
                if not _is_blank(cells):
                    headers = _resolve_headers(cells, column_mapping)
                    break
            if headers is None:
                raise FileParseError(file_name, f"'{file_name}' has no header row")

            row_number = 0
            for cells in reader:
                if _is_blank(cells):
                    continue
                row_number += 1
                values = {
                    header: (cells[index].strip() if index < len(cells) else "")
                    for index, header in enumerate(headers)
                }
                error = None
                if len(cells) != len(headers):
                    error = f"Expected {len(headers)} columns but found {len(cells)}"
                yield ParsedRow(row_number=row_number, values=values, error=error)
    except FileParseError:
        raise
    except (OSError, UnicodeDecodeError, csv.Error) as exc:
        raise FileParseError(file_name, f"Could not read CSV file '{file_name}': {exc}") from exc


def parse_csv(file_path: str, column_mapping: Optional[Dict[str, str]] = None) -> ParsedFile:
    rows = list(iter_csv_rows(file_path, column_mapping))
    headers = list(rows[0].values.keys()) if rows else []
    logger.info(f"Parsed CSV '{os.path.basename(file_path)}': {len(rows)} data rows")
    return ParsedFile(total_rows=len(rows), rows=rows, headers=headers)


def parse_excel(file_path: str, column_mapping: Optional[Dict[str, str]] = None) -> ParsedFile:
    """
    Read the first worksheet of an XLSX workbook.

    Every cell is read as text; blank rows are skipped.

    Raises:
        FileParseError: If the workbook is missing, corrupt or has no header row
    """
    file_name = os.path.basename(file_path)
    try:
        df = pd.read_excel(
            file_path,
            sheet_name=0,
            header=0,
            dtype=str,
            engine="openpyxl",
            keep_default_na=False,
        )
    except Exception as exc:
        raise FileParseError(file_name, f"Could not read Excel file '{file_name}': {exc}") from exc

    if len(df.columns) == 0:
        raise FileParseError(file_name, f"'{file_name}' has no header row")

    headers = _resolve_headers(list(df.columns), column_mapping)
    df = df.fillna("")

    rows: List[ParsedRow] = []
    for cells in df.itertuples(index=False, name=None):
        text_cells = [str(cell).strip() for cell in cells]
        if _is_blank(text_cells):
            continue
        rows.append(
            ParsedRow(
                row_number=len(rows) + 1,
                values=dict(zip(headers, text_cells)),
            )
        )

    logger.info(f"Parsed workbook '{file_name}' (first sheet): {len(rows)} data rows")
    return ParsedFile(total_rows=len(rows), rows=rows, headers=headers)


def parse_import_file(
    file_path: str,
    file_type: str,
    column_mapping: Optional[Dict[str, str]] = None,
) -> ParsedFile:
    """
    Parse an import file of the given type.

    Args:
        file_path: Path of the stored upload
        file_type: 'csv' or 'xlsx' (see ``detect_file_type``)
        column_mapping: Optional source header -> canonical field renames

    Returns:
        ParsedFile with the number of data rows and the rows themselves
    """
    if file_type == "csv":
        return parse_csv(file_path, column_mapping)
    if file_type == "xlsx":
        return parse_excel(file_path, column_mapping)
    raise UnsupportedFileTypeError(file_path)
