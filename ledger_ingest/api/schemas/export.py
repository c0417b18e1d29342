from typing import List, Optional

from pydantic import BaseModel, Field

from ledger_ingest.domain.exports.archiver import DEFAULT_LABEL_PREFIX, ComplianceResultRecord


class ExportResultsRequest(BaseModel):
    """Request model for the compliance results export endpoint."""
    results: List[ComplianceResultRecord] = Field(..., description="Results to render, one workbook each")
    label_prefix: str = Field(DEFAULT_LABEL_PREFIX, pattern=r"^[A-Za-z0-9_\-]+$")
    storage_location: Optional[str] = Field(None, description="Bucket for the archive (defaults to the configured bucket)")


class ExportResultsResponse(BaseModel):
    key: str
    url: str
    size_bytes: int
    workbook_count: int
