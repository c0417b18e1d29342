"""
Bundle compliance results into a ZIP of per-result Excel workbooks.

Each result becomes one workbook with ``Test``, ``Summary`` and ``Results``
sheets. Workbooks are written into a scratch directory that is removed once
the archive is built; a partially written archive is removed on failure.
"""
import logging
import os
import re
import tempfile
import time
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import AbstractSet, Any, Iterable, Optional, Set, Union

import pandas as pd
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter
from pydantic import BaseModel, ConfigDict, Field

from ledger_ingest.core.config import settings
from ledger_ingest.domain.ingestion.errors import ResourceError
from ledger_ingest.integrations.storage import BlobStore

from .shapes import RenderedSheet, render_payload

logger = logging.getLogger(__name__)

DEFAULT_LABEL_PREFIX = "compliance-results"
MAX_TEST_ID_LENGTH = 50
_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9\-_]")


class ExportError(Exception):
    """Raised when an archive cannot be built or published."""
    pass


class ComplianceResultRecord(BaseModel):
    """One analysis result to render as a workbook."""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    status: str = "unknown"
    results: Any = None
    summary: Any = None
    test_id: Optional[str] = Field(None, alias="testId")
    analysis_name: Optional[str] = Field(None, alias="analysisName")


@dataclass(frozen=True)
class PublishedArchive:
    key: str
    url: str
    size_bytes: int


def workbook_file_name(record: ComplianceResultRecord, taken: AbstractSet[str] = frozenset()) -> str:
    """
    ``{test_id}-{id[:8]}.xlsx``, falling back to the whole id (and then a counter)
    when that name is already in ``taken``.
    """
    test_id = record.test_id or "unknown-test"
    safe_test_id = _UNSAFE_FILENAME_CHARS.sub("_", test_id)[:MAX_TEST_ID_LENGTH]
    name = f"{safe_test_id}-{record.id[:8]}.xlsx"
    if name not in taken:
        return name

    full_id = _UNSAFE_FILENAME_CHARS.sub("_", record.id)
    name = f"{safe_test_id}-{full_id}.xlsx"
    counter = 2
    while name in taken:
        name = f"{safe_test_id}-{full_id}-{counter}.xlsx"
        counter += 1
    return name


def _test_sheet(record: ComplianceResultRecord) -> RenderedSheet:
    return RenderedSheet(
        rows=[
            ["Test Information"],
            ["Test ID", record.test_id or "unknown-test"],
            ["Analysis Name", record.analysis_name or "Compliance Test"],
            ["Status", record.status],
            ["Result ID", record.id],
        ],
        column_widths={1: 30, 2: 70},
    )


def _write_sheet(writer: pd.ExcelWriter, name: str, sheet: RenderedSheet, header_font: Optional[Font] = None) -> None:
    pd.DataFrame(sheet.rows).to_excel(writer, sheet_name=name, header=False, index=False)
    worksheet = writer.sheets[name]

    font = header_font or (Font(bold=True) if sheet.bold_header else None)
    if font is not None:
        for cell in worksheet[1]:
            cell.font = font
    for column, width in sheet.column_widths.items():
        worksheet.column_dimensions[get_column_letter(column)].width = width


def write_result_workbook(record: ComplianceResultRecord, directory: Path, file_name: Optional[str] = None) -> Path:
    path = directory / (file_name or workbook_file_name(record))
    with pd.ExcelWriter(path, engine="openpyxl") as writer:
        _write_sheet(writer, "Test", _test_sheet(record), header_font=Font(bold=True, size=14))
        _write_sheet(writer, "Summary", render_payload(record.summary, "Summary"))
        _write_sheet(writer, "Results", render_payload(record.results, "Results"))
    return path


def _coerce_record(result: Union[ComplianceResultRecord, dict, None]) -> Optional[ComplianceResultRecord]:
    if result is None:
        return None
    if isinstance(result, ComplianceResultRecord):
        return result
    if not result.get("id"):
        return None
    return ComplianceResultRecord.model_validate(result)


def build_archive(
    results: Iterable[Union[ComplianceResultRecord, dict]],
    label_prefix: str = DEFAULT_LABEL_PREFIX,
    *,
    work_root: Optional[Union[str, Path]] = None,
    compression_level: Optional[int] = None,
) -> Path:
    """
    Render each result into a workbook and bundle them into one ZIP.

    Results without an id are skipped.

    Returns:
        Path of the archive, named ``{label_prefix}-{epoch_millis}.zip``

    Raises:
        ResourceError: The archive or a workbook could not be written
        ExportError: Any other failure while rendering
    """
    level = settings.export_compression_level if compression_level is None else compression_level
    output_dir = Path(work_root) if work_root else Path(tempfile.gettempdir())
    archive_path = output_dir / f"{label_prefix}-{int(time.time() * 1000)}.zip"

    names: Set[str] = set()
    try:
        with tempfile.TemporaryDirectory(prefix="compliance-export-", dir=work_root) as work_dir:
            with zipfile.ZipFile(archive_path, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=level) as archive:
                for result in results:
                    record = _coerce_record(result)
                    if record is None:
                        continue
                    file_name = workbook_file_name(record, names)
                    names.add(file_name)
                    workbook_path = write_result_workbook(record, Path(work_dir), file_name)
                    archive.write(workbook_path, arcname=file_name)
    except Exception as exc:
        _remove_partial_archive(archive_path)
        logger.error(f"Error creating zip file: {exc}")
        if isinstance(exc, OSError):
            raise ResourceError(f"Failed to create compliance results zip: {exc}") from exc
        raise ExportError(f"Failed to create compliance results zip: {exc}") from exc

    logger.info(f"ZIP archive created: {archive_path} ({len(names)} workbooks, {archive_path.stat().st_size} bytes)")
    return archive_path


def _remove_partial_archive(archive_path: Path) -> None:
    try:
        if archive_path.exists():
            archive_path.unlink()
    except OSError as cleanup_error:
        logger.error(f"Failed to remove partial archive {archive_path}: {cleanup_error}")


def publish_archive(
    store: BlobStore,
    archive_path: Union[str, Path],
    location: str,
    key_prefix: Optional[str] = None,
    *,
    expires_in: Optional[int] = None,
) -> PublishedArchive:
    """
    Upload an archive, return a time-limited download URL and delete the local copy.

    The local archive is removed whether or not the upload succeeds.
    """
    archive_path = Path(archive_path)
    prefix = (key_prefix if key_prefix is not None else settings.export_key_prefix).strip("/")
    key = f"{prefix}/{archive_path.name}" if prefix else archive_path.name
    expiry = expires_in or settings.export_url_expiry_seconds

    try:
        data = archive_path.read_bytes()
        store.upload(
            location,
            key,
            data,
            content_type="application/zip",
            content_disposition=f'attachment; filename="{archive_path.name}"',
        )
        url = store.generate_presigned_download_url(location, key, expires_in=expiry)
    finally:
        try:
            if archive_path.exists():
                os.unlink(archive_path)
        except OSError as cleanup_error:
            logger.error(f"Error cleaning up archive {archive_path}: {cleanup_error}")

    logger.info(f"Published export archive to {location}/{key}")
    return PublishedArchive(key=key, url=url, size_bytes=len(data))
