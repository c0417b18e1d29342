"""
Scratch files on local disk and time-bounded downloads into them.

Every scratch file is created inside ``scratch_file()`` and removed when the
block exits, whether it exits normally or with an exception.
"""
import logging
import os
import tempfile
import time
from contextlib import contextmanager
from typing import BinaryIO, Callable, Iterator, Optional

from botocore.exceptions import ReadTimeoutError

from ledger_ingest.core.config import settings
from ledger_ingest.integrations.storage import BlobStore

from .errors import ResourceError, StreamTimeoutError
from .types import BlobReference

logger = logging.getLogger(__name__)

DOWNLOAD_CHUNK_BYTES = 1024 * 1024


def resolve_scratch_dir(scratch_dir: Optional[str] = None) -> Optional[str]:
    return scratch_dir or settings.scratch_dir or None


@contextmanager
def scratch_file(prefix: str, suffix: str = "", scratch_dir: Optional[str] = None) -> Iterator[str]:
    """Yield the path of a fresh, empty scratch file and delete it afterwards."""
    try:
        fd, path = tempfile.mkstemp(prefix=prefix, suffix=suffix, dir=resolve_scratch_dir(scratch_dir))
    except OSError as exc:
        raise ResourceError(f"Could not create scratch file: {exc}") from exc
    os.close(fd)

    try:
        yield path
    finally:
        try:
            if os.path.exists(path):
                os.unlink(path)
                logger.debug(f"Scratch file removed: {path}")
        except OSError as cleanup_error:
            logger.error(f"Failed to delete scratch file {path}: {cleanup_error}")


def download_to_path(
    store: BlobStore,
    blob: BlobReference,
    path: str,
    timeout_seconds: float,
    chunk_size: int = DOWNLOAD_CHUNK_BYTES,
    clock: Callable[[], float] = time.monotonic,
) -> int:
    """
    Copy an object from storage into ``path`` within a wall-clock budget.

    Returns:
        Number of bytes written

    Raises:
        StreamTimeoutError: If the copy does not finish within ``timeout_seconds``
        ResourceError: If the scratch file cannot be written
    """
    deadline = clock() + timeout_seconds
    body = store.download(blob.storage_location, blob.key)
    written = 0

    try:
        try:
            out = open(path, "wb")
        except OSError as exc:
            raise ResourceError(f"Could not open scratch file {path}: {exc}") from exc

        with out:
            while True:
                if clock() > deadline:
                    raise StreamTimeoutError(
                        f"File download timed out after {timeout_seconds:g} seconds",
                        timeout_seconds=timeout_seconds,
                    )
                try:
                    chunk = body.read(chunk_size)
                except (TimeoutError, ReadTimeoutError) as exc:
                    raise StreamTimeoutError(
                        f"File download stalled reading {blob}: {exc}",
                        timeout_seconds=timeout_seconds,
                    ) from exc
                if not chunk:
                    break
                try:
                    out.write(chunk)
                except OSError as exc:
                    raise ResourceError(f"Could not write scratch file {path}: {exc}") from exc
                written += len(chunk)
    finally:
        close = getattr(body, "close", None)
        if close is not None:
            close()

    logger.debug(f"Downloaded {written} bytes from {blob} to {path}")
    return written


class TimedReader:
    """
    Read-through wrapper over a download body that bounds the time spent reading.

    Only time spent inside the body's ``read`` counts against the budget, so a
    slow consumer between reads never trips it.
    """

    def __init__(
        self,
        body: BinaryIO,
        timeout_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        description: str = "download",
    ):
        self._body = body
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._description = description
        self._pending = b""
        self.elapsed = 0.0

    def peek(self, size: int) -> bytes:
        """Return up to ``size`` leading bytes without consuming them."""
        while len(self._pending) < size:
            chunk = self._timed_read(size - len(self._pending))
            if not chunk:
                break
            self._pending += chunk
        return self._pending[:size]

    def read(self, size: Optional[int] = -1) -> bytes:
        if not self._pending:
            return self._timed_read(size)
        if size is None or size < 0:
            data = self._pending + self._timed_read(size)
            self._pending = b""
            return data
        data, self._pending = self._pending[:size], self._pending[size:]
        return data

    def close(self) -> None:
        close = getattr(self._body, "close", None)
        if close is not None:
            close()

    def _timed_read(self, size: Optional[int]) -> bytes:
        started = self._clock()
        try:
            chunk = self._body.read() if size is None or size < 0 else self._body.read(size)
        except (TimeoutError, ReadTimeoutError) as exc:
            raise StreamTimeoutError(
                f"{self._description} stalled: {exc}",
                timeout_seconds=self.timeout_seconds,
            ) from exc
        self.elapsed += self._clock() - started
        if self.elapsed > self.timeout_seconds:
            raise StreamTimeoutError(
                f"{self._description} timed out after {self.timeout_seconds:g} seconds of reading",
                timeout_seconds=self.timeout_seconds,
            )
        return chunk
