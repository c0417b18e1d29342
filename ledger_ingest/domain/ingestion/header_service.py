"""
Header lookup used by the column-mapping step.

Tries the cheap extraction path for the file type first, falls back to the
slower path on transient failures, and caches successful results.
"""
import asyncio
import logging
from typing import Optional, Tuple

from ledger_ingest.core.config import settings
from ledger_ingest.integrations.storage import BlobStore

from .errors import FormatError
from .header_cache import HeaderCache, cache_key
from .headers import (
    extract_container_headers,
    extract_csv_headers,
    extract_csv_headers_streaming,
)
from .types import SUPPORTED_EXTENSIONS, BlobReference, FileKind, HeaderSet

logger = logging.getLogger(__name__)


class HeaderService:
    def __init__(
        self,
        store: BlobStore,
        cache: Optional[HeaderCache] = None,
        *,
        csv_window_bytes: Optional[int] = None,
        header_timeout_seconds: Optional[float] = None,
        full_timeout_seconds: Optional[float] = None,
        scratch_dir: Optional[str] = None,
    ):
        self.store = store
        self.cache = cache if cache is not None else HeaderCache(settings.header_cache_ttl_seconds)
        self.csv_window_bytes = csv_window_bytes or settings.csv_header_window_bytes
        self.header_timeout_seconds = header_timeout_seconds or settings.header_download_timeout_seconds
        self.full_timeout_seconds = full_timeout_seconds or settings.full_download_timeout_seconds
        self.scratch_dir = scratch_dir

    async def get_headers(self, blob: BlobReference) -> HeaderSet:
        headers, _ = await self.lookup(blob)
        return headers

    async def lookup(self, blob: BlobReference) -> Tuple[HeaderSet, bool]:
        """Return ``(headers, served_from_cache)``."""
        key = cache_key(blob)
        cached = self.cache.get(key)
        if cached is not None:
            return cached, True

        headers = await asyncio.to_thread(self.extract, blob)
        self.cache.set(key, headers)
        return headers, False

    def extract(self, blob: BlobReference) -> HeaderSet:
        """
        Extract headers, bypassing the cache.

        Format errors are final; any other failure of the fast path is
        retried once through the slower path before surfacing.
        """
        extension = blob.extension
        if extension not in SUPPORTED_EXTENSIONS:
            raise FormatError(
                "Unsupported file type. Only CSV and Excel files are supported.",
                kind=FileKind.UNKNOWN,
            )

        if extension == ".csv":
            try:
                return extract_csv_headers(self.store, blob, self.csv_window_bytes)
            except FormatError:
                raise
            except Exception as exc:
                logger.error(f"Failed to fetch CSV headers for {blob}: {exc}")
                return extract_csv_headers_streaming(self.store, blob)

        try:
            return extract_container_headers(self.store, blob, self.header_timeout_seconds, self.scratch_dir)
        except FormatError:
            raise
        except Exception as exc:
            logger.error(f"Failed to fetch Excel headers for {blob}: {exc}")
            return extract_container_headers(self.store, blob, self.full_timeout_seconds, self.scratch_dir)
