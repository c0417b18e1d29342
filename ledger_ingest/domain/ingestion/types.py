"""
Core value types shared by the ingestion pipeline.
"""
from __future__ import annotations

import posixpath
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Union


class FileKind(str, Enum):
    """Physical format of a blob, decided from its leading bytes."""
    DELIMITED_TEXT = "csv"
    SPREADSHEET_CONTAINER = "xlsx"
    LEGACY_SPREADSHEET = "xls"
    UNKNOWN = "unknown"


class FieldType(str, Enum):
    """Template field types a file column can be mapped onto."""
    TEXT = "text"
    NUMBER = "number"
    DATE = "date"
    EMAIL = "email"
    PHONE = "phone"
    TEXTAREA = "textarea"
    SELECT = "select"
    CHECKBOX = "checkbox"
    FILE = "file"


class Strategy(str, Enum):
    """Code path used to read a file's rows."""
    STREAM = "stream"
    NORMAL = "normal"
    CONSTRAINED = "constrained"


SUPPORTED_EXTENSIONS = (".csv", ".xlsx", ".xls")


@dataclass(frozen=True)
class BlobReference:
    """A file in object storage, addressed by location (bucket) and key."""
    storage_location: str
    key: str

    @property
    def file_name(self) -> str:
        return posixpath.basename(self.key)

    @property
    def extension(self) -> str:
        return posixpath.splitext(self.file_name.lower())[1]

    def __str__(self) -> str:
        return f"{self.storage_location}/{self.key}"


@dataclass(frozen=True)
class ValidationVerdict:
    is_valid: bool
    kind: FileKind
    message: str


@dataclass(frozen=True)
class TemplateField:
    name: str
    type: FieldType = FieldType.TEXT
    required: bool = False
    description: Optional[str] = None


@dataclass(frozen=True)
class ProcessingOutcome:
    total_rows: int
    completed: bool
    strategy: Strategy


HeaderSet = List[str]
FieldMapping = Dict[str, str]
RawRecord = Dict[str, str]
TypedValue = Union[str, int, float, date]
TypedRecord = Dict[str, TypedValue]
Batch = List[dict]

BatchHandler = Callable[[Batch], Awaitable[None]]
CompletionHandler = Callable[[int], Awaitable[None]]


class BatchSink(Protocol):
    """Persistence collaborator that receives typed batches."""

    async def accept(self, batch: Batch) -> None:
        ...

    async def finalize(self, total_rows: int) -> None:
        ...
