"""
Worksheet row readers for the two workbook strategies.

Both readers walk every worksheet, keep only those whose header row matches
the reference header set, and yield data rows starting from row 2. The
normal reader loads the whole workbook; the constrained reader streams rows
from the package without building the cell model.
"""
import logging
from typing import Any, Iterator, List, Optional, Sequence, Tuple

from openpyxl import load_workbook

from .cells import align_headers, build_record, header_text, headers_match, trim_trailing_blanks
from .types import HeaderSet, RawRecord

logger = logging.getLogger(__name__)

NumberedRecord = Tuple[int, RawRecord]


def _sheet_headers(first_row: Optional[Sequence[Any]]) -> HeaderSet:
    if not first_row:
        return []
    return trim_trailing_blanks([header_text(value) for value in first_row])


def _resolve_sheet_headers(
    sheet_name: str,
    first_row: Optional[Sequence[Any]],
    reference_headers: Sequence[str],
) -> Optional[HeaderSet]:
    """Return the sheet's columns named after the reference headers, or None to skip the sheet."""
    sheet_headers = _sheet_headers(first_row)
    if not sheet_headers:
        logger.warning(f"No headers found in worksheet: {sheet_name}, skipping")
        return None
    if not headers_match(reference_headers, sheet_headers):
        logger.info(f"Worksheet {sheet_name} headers do not match the reference header row, skipping")
        return None
    logger.info(f"Found matching headers in worksheet: {sheet_name}")
    return align_headers(reference_headers, sheet_headers)


def _has_any_cell(values: Sequence[Any]) -> bool:
    return any(value is not None for value in values)


def _has_data(record: RawRecord) -> bool:
    return any(value for value in record.values())


def iter_normal_records(path: str, reference_headers: Sequence[str]) -> Iterator[NumberedRecord]:
    """Yield ``(row_number, record)`` from a fully loaded workbook."""
    workbook = load_workbook(path, data_only=True)
    try:
        logger.info(f"Workbook loaded with {len(workbook.worksheets)} worksheets")
        for worksheet in workbook.worksheets:
            logger.info(f"Processing worksheet: {worksheet.title}")
            rows = worksheet.iter_rows(values_only=True)
            headers = _resolve_sheet_headers(worksheet.title, next(rows, None), reference_headers)
            if headers is None:
                continue

            for row_number, values in enumerate(rows, start=2):
                if not _has_any_cell(values):
                    continue
                yield row_number, build_record(headers, values)
    finally:
        workbook.close()


def iter_constrained_records(path: str, reference_headers: Sequence[str]) -> Iterator[NumberedRecord]:
    """
    Yield ``(row_number, record)`` using openpyxl's read-only row streaming.

    Rows with no non-empty value across the header columns are dropped.
    """
    workbook = load_workbook(path, read_only=True, data_only=True)
    try:
        for worksheet in workbook.worksheets:
            logger.info(f"Processing large worksheet: {worksheet.title}")
            rows = worksheet.iter_rows(min_row=1, values_only=True)
            headers = _resolve_sheet_headers(worksheet.title, next(rows, None), reference_headers)
            if headers is None:
                continue

            for row_number, values in enumerate(rows, start=2):
                record = build_record(headers, values)
                if _has_data(record):
                    yield row_number, record
    finally:
        workbook.close()


def list_sheet_dimensions(path: str) -> List[dict]:
    """Worksheet names with their row and column counts, for diagnostics."""
    workbook = load_workbook(path, read_only=True, data_only=True)
    try:
        sheets = []
        for worksheet in workbook.worksheets:
            sheets.append({
                "name": worksheet.title,
                "row_count": worksheet.max_row or 0,
                "column_count": worksheet.max_column or 0,
            })
        return sheets
    finally:
        workbook.close()
