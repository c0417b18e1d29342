from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from ledger_ingest.domain.ingestion.types import BlobReference, FieldType, TemplateField


class BlobReferenceRequest(BaseModel):
    """A stored file, addressed by bucket (storage location) and object key."""
    storage_location: str = Field(..., min_length=1)
    key: str = Field(..., min_length=1)

    def to_blob(self) -> BlobReference:
        return BlobReference(storage_location=self.storage_location, key=self.key)


class HeaderResponse(BaseModel):
    headers: List[str]
    cached: bool = False


class DiagnoseRequest(BlobReferenceRequest):
    include_details: bool = Field(False, description="Also report signature and worksheet layout")


class DiagnoseResponse(BaseModel):
    is_valid: bool
    file_type: str
    message: str
    can_process: bool
    details: Optional[Dict[str, Any]] = None


class TemplateFieldSchema(BaseModel):
    name: str
    type: FieldType = FieldType.TEXT
    required: bool = False
    description: Optional[str] = None

    def to_field(self) -> TemplateField:
        return TemplateField(
            name=self.name,
            type=self.type,
            required=self.required,
            description=self.description,
        )


class ProcessFileRequest(BlobReferenceRequest):
    template_id: str = Field(..., min_length=1)
    mapping: Dict[str, str] = Field(..., description="File header -> template field name")
    fields: List[TemplateFieldSchema] = Field(default_factory=list)
    expected_headers: Optional[List[str]] = None

    @field_validator("mapping")
    @classmethod
    def mapping_not_empty(cls, value: Dict[str, str]) -> Dict[str, str]:
        if not value:
            raise ValueError("mapping must contain at least one column")
        return value


class ProcessFileResponse(BaseModel):
    file_id: str
    status: str


class TemplateFileResponse(BaseModel):
    id: str
    template_id: str
    storage_location: str
    file_key: str
    file_name: str
    status: str
    row_count: int
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class TemplateRowsResponse(BaseModel):
    file_id: str
    rows: List[Dict[str, Any]]
    limit: int
    offset: int
