"""
Header extraction without materializing the full dataset.

CSV files are read through a small range request; workbooks are downloaded to
a scratch file, validated, and only the first row of the first sheet is read.
"""
import csv
import logging
import os
import re
from typing import Optional

from openpyxl import load_workbook

from ledger_ingest.integrations.storage import BlobStore

from .cells import header_text, trim_trailing_blanks
from .errors import FormatError, IngestionError
from .scratch import download_to_path, scratch_file
from .sniffer import require_valid_workbook, sniff_kind
from .types import BlobReference, FileKind, HeaderSet

logger = logging.getLogger(__name__)

DEFAULT_CSV_WINDOW_BYTES = 8192
MAX_STREAMED_HEADER_BYTES = 1024 * 1024

_LINE_BREAK = re.compile(r"\r\n|\r|\n")
_BYTE_LINE_BREAK = re.compile(rb"\r\n|\r|\n")


def parse_header_line(content: str) -> HeaderSet:
    """
    Parse the first non-blank line of delimited text into trimmed header names.

    Lines may end in LF, CRLF or a bare CR. When the content has no line
    terminator it is treated as the header line.

    Raises:
        csv.Error: If the header line is not valid delimited text
    """
    for line in _LINE_BREAK.split(content):
        row = next(csv.reader([line]), [])
        if any(cell.strip() for cell in row):
            return [cell.strip() for cell in row]
    return []


def _parse_prefix(prefix: bytes, blob: BlobReference) -> HeaderSet:
    try:
        return parse_header_line(_decode_prefix(prefix))
    except csv.Error as exc:
        raise FormatError(
            f"Could not parse the header row of {blob.file_name}: {exc}",
            kind=FileKind.DELIMITED_TEXT,
            signature=prefix[:4].hex(),
        ) from exc


def check_text_prefix(prefix: bytes, blob: BlobReference) -> None:
    """Refuse a ``.csv`` blob whose leading bytes are a workbook or binary data."""
    kind = sniff_kind(prefix)
    if kind == FileKind.LEGACY_SPREADSHEET:
        raise FormatError(
            "Legacy XLS format is not supported. Please convert the file to XLSX format before uploading.",
            kind=kind,
            signature=prefix[:4].hex(),
        )
    if kind == FileKind.SPREADSHEET_CONTAINER:
        raise FormatError(
            f"{blob.file_name} is a spreadsheet workbook, not a CSV file. "
            "Please upload it with an .xlsx extension.",
            kind=kind,
            signature=prefix[:4].hex(),
        )
    if kind == FileKind.UNKNOWN:
        raise FormatError(
            f"{blob.file_name} does not look like a text CSV file.",
            kind=kind,
            signature=prefix[:4].hex(),
        )


def _decode_prefix(prefix: bytes) -> str:
    # The window may end inside a multi-byte character
    return prefix.decode("utf-8-sig", errors="ignore")


def extract_csv_headers(
    store: BlobStore,
    blob: BlobReference,
    window_bytes: int = DEFAULT_CSV_WINDOW_BYTES,
) -> HeaderSet:
    """Read CSV headers from a range request over the first ``window_bytes``."""
    prefix = store.download_range(blob.storage_location, blob.key, 0, window_bytes - 1)
    if not prefix:
        raise FormatError(f"{blob.file_name} is empty", kind=FileKind.DELIMITED_TEXT)

    check_text_prefix(prefix, blob)
    headers = _parse_prefix(prefix, blob)
    logger.debug(f"Fast-path CSV headers for {blob}: {headers}")
    return headers


def _has_header_line(buffer: bytes) -> bool:
    # The last piece may be a line cut by the read, so it is not counted
    complete_lines = _BYTE_LINE_BREAK.split(buffer)[:-1]
    return any(line.strip(b' \t,"') for line in complete_lines)


def extract_csv_headers_streaming(store: BlobStore, blob: BlobReference) -> HeaderSet:
    """
    Read CSV headers from a full download stream, stopping after the first line.

    Used when range requests are unavailable or failed.
    """
    body = store.download(blob.storage_location, blob.key)
    buffer = b""
    try:
        while len(buffer) < MAX_STREAMED_HEADER_BYTES:
            chunk = body.read(DEFAULT_CSV_WINDOW_BYTES)
            if not chunk:
                break
            buffer += chunk
            if _has_header_line(buffer):
                break
    finally:
        close = getattr(body, "close", None)
        if close is not None:
            close()

    if not buffer:
        raise FormatError(f"{blob.file_name} is empty", kind=FileKind.DELIMITED_TEXT)

    check_text_prefix(buffer[:DEFAULT_CSV_WINDOW_BYTES], blob)
    return _parse_prefix(buffer, blob)


def read_first_sheet_headers(path: str) -> HeaderSet:
    """Read the first row of the first worksheet without loading the rest."""
    workbook = load_workbook(path, read_only=True, data_only=True)
    try:
        if not workbook.worksheets:
            raise FormatError("Excel worksheet not found", kind=FileKind.SPREADSHEET_CONTAINER)
        worksheet = workbook.worksheets[0]
        first_row = next(worksheet.iter_rows(min_row=1, max_row=1, values_only=True), ())
        return trim_trailing_blanks([header_text(value) for value in first_row])
    finally:
        workbook.close()


def extract_container_headers(
    store: BlobStore,
    blob: BlobReference,
    timeout_seconds: float,
    scratch_dir: Optional[str] = None,
) -> HeaderSet:
    """
    Download a workbook to scratch space and read its header row.

    Raises:
        FormatError: For legacy, corrupt or unreadable workbooks
        StreamTimeoutError: If the download exceeds ``timeout_seconds``
    """
    with scratch_file("excel-header-", ".xlsx", scratch_dir) as path:
        download_to_path(store, blob, path, timeout_seconds)
        require_valid_workbook(path)
        try:
            headers = read_first_sheet_headers(path)
        except IngestionError:
            raise
        except Exception as exc:
            size = os.path.getsize(path) if os.path.exists(path) else 0
            raise FormatError(
                f"Failed to parse Excel headers: {type(exc).__name__}: {exc} "
                f"(file type: xlsx, size: {size} bytes)",
                kind=FileKind.SPREADSHEET_CONTAINER,
            ) from exc

    logger.info(f"Successfully extracted {len(headers)} headers from Excel file {blob}")
    return headers
