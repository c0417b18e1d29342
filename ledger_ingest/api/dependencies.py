"""
Shared dependencies for the API routers.

The header cache lives for the whole process so repeated header lookups
for the same file during column mapping are served from memory.
"""
from typing import Optional

from fastapi import Depends, HTTPException
from sqlalchemy.engine import Engine

from ledger_ingest.core.config import settings
from ledger_ingest.db.session import get_engine
from ledger_ingest.domain.ingestion.errors import FormatError, IngestionError, StreamTimeoutError
from ledger_ingest.domain.ingestion.header_cache import HeaderCache
from ledger_ingest.domain.ingestion.header_service import HeaderService
from ledger_ingest.domain.ingestion.transformer import RowTransformer
from ledger_ingest.integrations.storage import BlobStore, S3BlobStore, StorageError, StorageNotFoundError

header_cache = HeaderCache(settings.header_cache_ttl_seconds)
_blob_store: Optional[S3BlobStore] = None


def get_blob_store() -> BlobStore:
    global _blob_store
    if _blob_store is None:
        _blob_store = S3BlobStore()
    return _blob_store


def get_header_cache() -> HeaderCache:
    return header_cache


def get_header_service(
    store: BlobStore = Depends(get_blob_store),
    cache: HeaderCache = Depends(get_header_cache),
) -> HeaderService:
    return HeaderService(store, cache)


def get_row_transformer(store: BlobStore = Depends(get_blob_store)) -> RowTransformer:
    return RowTransformer(store)


def get_db_engine() -> Engine:
    return get_engine()


def http_error_for(exc: Exception) -> HTTPException:
    """
    Map pipeline and storage failures onto HTTP errors.

    - FormatError -> 422 (the file itself needs fixing)
    - StreamTimeoutError -> 504 (retry may succeed)
    - StorageNotFoundError -> 404
    - other StorageError -> 502
    """
    if isinstance(exc, FormatError):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, StreamTimeoutError):
        return HTTPException(status_code=504, detail=str(exc))
    if isinstance(exc, StorageNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, StorageError):
        return HTTPException(status_code=502, detail=str(exc))
    if isinstance(exc, IngestionError):
        return HTTPException(status_code=400, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))
