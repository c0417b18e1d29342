"""
Ingestion endpoints: header extraction for column mapping, file
diagnostics, background processing into template tables, and file status
and deletion.
"""
import asyncio
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from sqlalchemy.engine import Engine

from ledger_ingest.api.dependencies import (
    get_blob_store,
    get_db_engine,
    get_header_service,
    get_row_transformer,
    http_error_for,
)
from ledger_ingest.api.schemas.ingest import (
    BlobReferenceRequest,
    DiagnoseRequest,
    DiagnoseResponse,
    HeaderResponse,
    ProcessFileRequest,
    ProcessFileResponse,
    TemplateFileResponse,
    TemplateRowsResponse,
)
from ledger_ingest.db.template_data import (
    STATUS_PROCESSING,
    delete_template_file,
    fetch_template_rows,
    get_template_file,
    register_template_file,
)
from ledger_ingest.domain.ingestion.diagnostics import describe_file, diagnose_file
from ledger_ingest.domain.ingestion.errors import IngestionError
from ledger_ingest.domain.ingestion.header_service import HeaderService
from ledger_ingest.domain.ingestion.jobs import process_template_file
from ledger_ingest.domain.ingestion.transformer import RowTransformer
from ledger_ingest.domain.ingestion.types import SUPPORTED_EXTENSIONS
from ledger_ingest.integrations.storage import BlobStore, StorageError

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/ingest",
    tags=["ingest"]
)


@router.post("/headers", response_model=HeaderResponse)
async def extract_headers(
    request: BlobReferenceRequest,
    service: HeaderService = Depends(get_header_service),
):
    """Return the header row of a stored CSV or Excel file."""
    try:
        headers, cached = await service.lookup(request.to_blob())
    except (IngestionError, StorageError) as exc:
        logger.error(f"Header extraction failed for {request.storage_location}/{request.key}: {exc}")
        raise http_error_for(exc) from exc
    return HeaderResponse(headers=headers, cached=cached)


@router.post("/diagnose", response_model=DiagnoseResponse)
async def diagnose(
    request: DiagnoseRequest,
    store: BlobStore = Depends(get_blob_store),
):
    blob = request.to_blob()
    diagnosis = await asyncio.to_thread(diagnose_file, store, blob)
    details = None
    if request.include_details:
        details = await asyncio.to_thread(describe_file, store, blob)
    return DiagnoseResponse(
        is_valid=diagnosis.is_valid,
        file_type=diagnosis.file_type,
        message=diagnosis.message,
        can_process=diagnosis.can_process,
        details=details,
    )


@router.post("/process", response_model=ProcessFileResponse, status_code=202)
async def process_file(
    request: ProcessFileRequest,
    background_tasks: BackgroundTasks,
    transformer: RowTransformer = Depends(get_row_transformer),
    engine: Engine = Depends(get_db_engine),
):
    """
    Register a file and process it in the background.

    Poll ``GET /api/ingest/files/{file_id}`` for the outcome.
    """
    blob = request.to_blob()
    if blob.extension not in SUPPORTED_EXTENSIONS:
        raise HTTPException(
            status_code=422,
            detail="Unsupported file type. Only CSV and Excel files are supported.",
        )

    file_id = await asyncio.to_thread(
        register_template_file, engine, template_id=request.template_id, blob=blob
    )
    background_tasks.add_task(
        process_template_file,
        transformer,
        engine,
        file_id,
        blob,
        mapping=request.mapping,
        fields=[field.to_field() for field in request.fields],
        expected_headers=request.expected_headers,
    )
    logger.info(f"Queued processing of {blob} as template file {file_id}")
    return ProcessFileResponse(file_id=file_id, status=STATUS_PROCESSING)


@router.get("/files/{file_id}", response_model=TemplateFileResponse)
async def get_file_status(file_id: str, engine: Engine = Depends(get_db_engine)):
    record = await asyncio.to_thread(get_template_file, engine, file_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"File {file_id} not found")
    return TemplateFileResponse(**record)


@router.get("/files/{file_id}/rows", response_model=TemplateRowsResponse)
async def get_file_rows(
    file_id: str,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    engine: Engine = Depends(get_db_engine),
):
    record = await asyncio.to_thread(get_template_file, engine, file_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"File {file_id} not found")
    rows = await asyncio.to_thread(fetch_template_rows, engine, file_id, limit, offset)
    return TemplateRowsResponse(file_id=file_id, rows=rows, limit=limit, offset=offset)


@router.delete("/files/{file_id}")
async def delete_file(
    file_id: str,
    engine: Engine = Depends(get_db_engine),
    store: BlobStore = Depends(get_blob_store),
):
    """Delete a file's stored rows, its status record and the uploaded blob."""
    try:
        deleted = await asyncio.to_thread(delete_template_file, engine, store, file_id)
    except StorageError as exc:
        logger.error(f"Failed to delete blob for template file {file_id}: {exc}")
        raise http_error_for(exc) from exc
    if not deleted:
        raise HTTPException(status_code=404, detail=f"File {file_id} not found")
    return {"success": True, "file_id": file_id}
