"""
Exceptions raised by the ingestion pipeline.

Every error raised past a component boundary wraps the low-level cause via
``raise ... from exc`` so logs keep the root cause while callers get a
message they can show to users.
"""
import copy
from typing import Optional

from .types import FileKind


class IngestionError(Exception):
    """Base exception for ingestion failures."""

    def with_context(self, context: str) -> "IngestionError":
        """Copy of this error, same type and attributes, with ``context`` prefixed to the message."""
        wrapped = copy.copy(self)
        wrapped.args = (f"{context}: {self}",)
        return wrapped


class FormatError(IngestionError):
    """The blob is not a recognised file type or failed structural validation."""

    def __init__(self, message: str, kind: FileKind = FileKind.UNKNOWN, signature: Optional[str] = None):
        super().__init__(message)
        self.kind = kind
        self.signature = signature

    @property
    def is_legacy_format(self) -> bool:
        return self.kind == FileKind.LEGACY_SPREADSHEET


class StreamTimeoutError(IngestionError):
    """A download or stream exceeded its wall-clock budget."""

    def __init__(self, message: str, timeout_seconds: Optional[float] = None):
        super().__init__(message)
        self.timeout_seconds = timeout_seconds


class TransformError(IngestionError):
    """A row could not be coerced and no default applies."""

    def __init__(self, message: str, row_number: Optional[int] = None, field: Optional[str] = None):
        super().__init__(message)
        self.row_number = row_number
        self.field = field


class ResourceError(IngestionError):
    """Scratch-file or archive I/O failed (disk full, permission denied)."""
    pass
