"""
Byte-level format detection and structural validation of uploaded files.

Validation is read-only: it never modifies or deletes the file it inspects.
"""
import logging
import os
from typing import Union

from openpyxl import load_workbook

from .errors import FormatError
from .types import FileKind, ValidationVerdict

logger = logging.getLogger(__name__)

ZIP_MAGIC = b"PK"
LEGACY_MAGIC = b"\xd0\xcf\x11\xe0"
END_OF_CENTRAL_DIRECTORY = b"PK\x05\x06"

MIN_FILE_SIZE = 100
HEADER_PROBE_BYTES = 8
TAIL_PROBE_BYTES = 4096

PathLike = Union[str, os.PathLike]


def sniff_kind(prefix: bytes) -> FileKind:
    """
    Classify a blob from its leading bytes.

    Anything that is neither a ZIP container nor a legacy compound document
    counts as delimited text when it decodes as UTF-8 and has no NUL bytes.
    """
    if prefix.startswith(ZIP_MAGIC):
        return FileKind.SPREADSHEET_CONTAINER
    if prefix.startswith(LEGACY_MAGIC):
        return FileKind.LEGACY_SPREADSHEET
    if b"\x00" in prefix:
        return FileKind.UNKNOWN
    try:
        prefix.decode("utf-8")
    except UnicodeDecodeError as exc:
        # A multi-byte character cut at the end of the probe window is still text
        if exc.start < len(prefix) - 3:
            return FileKind.UNKNOWN
    return FileKind.DELIMITED_TEXT


def read_signature(path: PathLike, length: int = 4) -> str:
    """Hex of the first ``length`` bytes, for diagnostic messages."""
    with open(path, "rb") as handle:
        return handle.read(length).hex()


def has_end_of_central_directory(path: PathLike, size: int) -> bool:
    """Search the tail of a ZIP file for the end-of-central-directory record."""
    window = min(size, TAIL_PROBE_BYTES)
    with open(path, "rb") as handle:
        handle.seek(max(0, size - window))
        tail = handle.read(window)
    return tail.find(END_OF_CENTRAL_DIRECTORY) != -1


def validate_file(path: PathLike) -> ValidationVerdict:
    """
    Validate that a local file is a readable XLSX workbook.

    Checks, in order: existence, minimum size, leading magic bytes, the ZIP
    end-of-central-directory record (catches truncated uploads) and finally
    that openpyxl can open the workbook.
    """
    try:
        if not os.path.exists(path):
            return ValidationVerdict(False, FileKind.UNKNOWN, "File does not exist")

        size = os.path.getsize(path)
        if size < MIN_FILE_SIZE:
            return ValidationVerdict(False, FileKind.UNKNOWN, "File too small to be valid Excel file")

        with open(path, "rb") as handle:
            header = handle.read(HEADER_PROBE_BYTES)

        if header.startswith(ZIP_MAGIC):
            if not has_end_of_central_directory(path, size):
                return ValidationVerdict(
                    False,
                    FileKind.SPREADSHEET_CONTAINER,
                    "ZIP file structure is corrupted - missing end of central directory. "
                    "The file may be incomplete or corrupted.",
                )

            try:
                workbook = load_workbook(path, read_only=True, data_only=True)
                workbook.close()
            except Exception as e:
                # A ZIP archive that is not a workbook, or a damaged one
                return ValidationVerdict(
                    False,
                    FileKind.SPREADSHEET_CONTAINER,
                    f"File has XLSX signature but cannot be read: {e}",
                )
            return ValidationVerdict(True, FileKind.SPREADSHEET_CONTAINER, "Valid XLSX file")

        if header.startswith(LEGACY_MAGIC):
            return ValidationVerdict(
                False,
                FileKind.LEGACY_SPREADSHEET,
                "XLS format detected - this older format is not supported. Please convert to XLSX.",
            )

        return ValidationVerdict(False, FileKind.UNKNOWN, "File does not appear to be an Excel file")
    except OSError as e:
        logger.warning(f"Error validating file {path}: {e}")
        return ValidationVerdict(False, FileKind.UNKNOWN, f"Error validating file: {e}")


def require_valid_workbook(path: PathLike) -> ValidationVerdict:
    """
    Validate a workbook and raise a user-actionable ``FormatError`` if it is unusable.

    The error distinguishes "convert your file" (legacy XLS) from "re-export,
    this one is damaged" (truncated container).
    """
    verdict = validate_file(path)
    logger.info(f"File validation result: {verdict.message}")
    if verdict.is_valid:
        return verdict

    try:
        signature = read_signature(path)
    except OSError:
        signature = None

    if verdict.kind == FileKind.LEGACY_SPREADSHEET:
        raise FormatError(
            "This file appears to be in the older XLS format which is not supported. "
            "Please convert the file to XLSX format using Microsoft Excel or another "
            "spreadsheet application before uploading.",
            kind=verdict.kind,
            signature=signature,
        )
    if "central directory" in verdict.message:
        raise FormatError(
            "The Excel file appears to be corrupted or incomplete: the ZIP structure is "
            "missing its end of central directory. Please try re-saving or re-exporting "
            "the file before uploading.",
            kind=verdict.kind,
            signature=signature,
        )
    raise FormatError(
        f"Invalid Excel file: {verdict.message} (detected type: {verdict.kind.value}, "
        f"signature: {signature or 'unavailable'}). "
        "Please ensure the file is a valid Excel workbook in XLSX format.",
        kind=verdict.kind,
        signature=signature,
    )
