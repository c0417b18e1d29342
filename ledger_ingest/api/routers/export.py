"""
Export router for compliance result archives.

Results are rendered into one workbook each, bundled into a ZIP, uploaded
to storage and returned as a short-lived download link.
"""
import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException

from ledger_ingest.api.dependencies import get_blob_store, http_error_for
from ledger_ingest.api.schemas.export import ExportResultsRequest, ExportResultsResponse
from ledger_ingest.core.config import settings
from ledger_ingest.domain.exports.archiver import ExportError, build_archive, publish_archive
from ledger_ingest.domain.ingestion.errors import ResourceError
from ledger_ingest.integrations.storage import BlobStore, StorageError

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/export",
    tags=["export"]
)


@router.post("/results", response_model=ExportResultsResponse)
async def export_results(
    request: ExportResultsRequest,
    store: BlobStore = Depends(get_blob_store),
):
    location = request.storage_location or settings.storage_bucket_name
    if not location:
        raise HTTPException(status_code=400, detail="No storage location configured for exports")
    if not request.results:
        raise HTTPException(status_code=400, detail="No results to export")

    try:
        archive_path = await asyncio.to_thread(build_archive, request.results, request.label_prefix)
        published = await asyncio.to_thread(publish_archive, store, archive_path, location)
    except StorageError as exc:
        raise http_error_for(exc) from exc
    except (ResourceError, ExportError) as exc:
        logger.error(f"Export failed: {exc}")
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    return ExportResultsResponse(
        key=published.key,
        url=published.url,
        size_bytes=published.size_bytes,
        workbook_count=len(request.results),
    )


@router.get("/health")
async def export_health():
    """Health check for export endpoint."""
    return {
        "status": "healthy",
        "endpoint": "/api/export/results",
        "compression_level": settings.export_compression_level,
        "url_expiry_seconds": settings.export_url_expiry_seconds,
    }
