"""
Read-only diagnostics for uploaded workbooks, used by support tooling to
explain why a file cannot be processed.
"""
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ledger_ingest.core.config import settings
from ledger_ingest.integrations.storage import BlobStore, StorageError

from .errors import IngestionError
from .scratch import download_to_path, scratch_file
from .sniffer import HEADER_PROBE_BYTES, LEGACY_MAGIC, ZIP_MAGIC, validate_file
from .types import BlobReference, FileKind
from .workbook_stream import list_sheet_dimensions

logger = logging.getLogger(__name__)

MIME_TYPES = {
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".xls": "application/vnd.ms-excel",
    ".csv": "text/csv",
}


@dataclass(frozen=True)
class FileDiagnosis:
    is_valid: bool
    file_type: str
    message: str
    can_process: bool


def diagnose_file(
    store: BlobStore,
    blob: BlobReference,
    *,
    timeout_seconds: Optional[float] = None,
    scratch_dir: Optional[str] = None,
) -> FileDiagnosis:
    """Validate a stored workbook without processing it. Never raises for bad files."""
    logger.info(f"Diagnosing Excel file: {blob}")
    timeout = timeout_seconds or settings.full_download_timeout_seconds
    try:
        with scratch_file("excel-diag-", ".xlsx", scratch_dir) as path:
            download_to_path(store, blob, path, timeout)
            verdict = validate_file(path)
    except (StorageError, IngestionError) as e:
        return FileDiagnosis(
            is_valid=False,
            file_type=FileKind.UNKNOWN.value,
            message=f"Error diagnosing file: {e}",
            can_process=False,
        )

    return FileDiagnosis(
        is_valid=verdict.is_valid,
        file_type=verdict.kind.value,
        message=verdict.message,
        can_process=verdict.is_valid and verdict.kind == FileKind.SPREADSHEET_CONTAINER,
    )


def describe_file(
    store: BlobStore,
    blob: BlobReference,
    *,
    timeout_seconds: Optional[float] = None,
    scratch_dir: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    """
    Collect file size, signature, detected format and worksheet layout.

    Returns None when the file cannot be fetched.
    """
    timeout = timeout_seconds or settings.full_download_timeout_seconds
    try:
        stored_size = store.get_size(blob.storage_location, blob.key)
        logger.info(f"Describing {blob} ({stored_size} bytes in storage)")
        with scratch_file("excel-info-", ".xlsx", scratch_dir) as path:
            download_to_path(store, blob, path, timeout)
            return _describe_local_file(path, blob)
    except (StorageError, IngestionError) as e:
        logger.error(f"Error getting Excel file info for {blob}: {e}")
        return None


def _describe_local_file(path: str, blob: BlobReference) -> Dict[str, Any]:
    size = os.path.getsize(path)
    info: Dict[str, Any] = {
        "file_name": blob.file_name,
        "file_size_bytes": size,
        "file_size_mb": f"{size / (1024 * 1024):.2f}",
        "mime_type": MIME_TYPES.get(blob.extension, "unknown"),
    }

    with open(path, "rb") as handle:
        header = handle.read(HEADER_PROBE_BYTES)
    info["file_signature"] = header[:4].hex()

    if header.startswith(ZIP_MAGIC):
        info["detected_format"] = "XLSX (ZIP container)"
        try:
            sheets = list_sheet_dimensions(path)
        except Exception as e:
            info["is_readable"] = False
            info["read_error"] = str(e)
        else:
            info["is_readable"] = True
            info["worksheet_count"] = len(sheets)
            info["worksheets"] = sheets
    elif header.startswith(LEGACY_MAGIC):
        info["detected_format"] = "XLS (OLE Compound Document)"
        info["is_readable"] = False
        info["read_error"] = "XLS format is not supported"
    else:
        info["detected_format"] = "Unknown format"
        info["is_readable"] = False

    return info
