"""
Short-lived memo of extracted header rows.

A miss is always safe (it only triggers another extraction), so entries
expire by TTL alone and there is no invalidation protocol.
"""
import time
from typing import Callable, Dict, Optional, Tuple

from .types import BlobReference, HeaderSet

DEFAULT_TTL_SECONDS = 300


def cache_key(blob: BlobReference) -> str:
    return f"{blob.storage_location}:{blob.key}:headers"


class HeaderCache:
    def __init__(self, ttl_seconds: int = DEFAULT_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[HeaderSet, float]] = {}

    def get(self, key: str) -> Optional[HeaderSet]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        headers, expires_at = entry
        if self._clock() > expires_at:
            self._entries.pop(key, None)
            return None
        return list(headers)

    def set(self, key: str, headers: HeaderSet, ttl_seconds: Optional[int] = None) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        self._entries[key] = (list(headers), self._clock() + ttl)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
