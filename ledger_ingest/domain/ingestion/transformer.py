"""
Streaming row transformer: turns a stored CSV or workbook into batches of
typed records delivered to an async consumer.

Parsing runs in a worker thread and hands batches over a bounded channel,
so a slow consumer holds the reader back instead of letting rows pile up in
memory. ``on_complete`` is awaited exactly once, after the last batch has
been handled; if anything fails it is not called and the error propagates.
Batches already delivered before a failure are not rolled back.
"""
import asyncio
import gc
import logging
import time
from typing import Callable, Iterable, Iterator, List, Optional, Sequence, Tuple

from ledger_ingest.core.config import settings
from ledger_ingest.integrations.storage import BlobStore, StorageError

from .channel import BatchChannel
from .csv_stream import read_csv_records
from .errors import FormatError, IngestionError
from .headers import DEFAULT_CSV_WINDOW_BYTES, check_text_prefix, read_first_sheet_headers
from .mapper import build_field_types, map_record
from .scratch import TimedReader, download_to_path, scratch_file
from .sniffer import require_valid_workbook
from .strategy import choose_strategy, threshold_from_mb
from .types import (
    SUPPORTED_EXTENSIONS,
    Batch,
    BatchHandler,
    BatchSink,
    BlobReference,
    CompletionHandler,
    FieldMapping,
    FileKind,
    ProcessingOutcome,
    RawRecord,
    Strategy,
    TemplateField,
)
from .workbook_stream import iter_constrained_records, iter_normal_records

logger = logging.getLogger(__name__)

PROGRESS_LOG_EVERY = 5000
CSV_PROBE_BYTES = DEFAULT_CSV_WINDOW_BYTES

NumberedRecord = Tuple[int, RawRecord]
RecordPreparer = Callable[[RawRecord, int], dict]


def _record_preparer(mapping: Optional[FieldMapping], fields: Optional[Iterable[TemplateField]]) -> RecordPreparer:
    if not mapping:
        return lambda record, row_number: record
    field_types = build_field_types(fields)
    return lambda record, row_number: map_record(record, mapping, field_types, row_number)


def _batched(
    records: Iterator[NumberedRecord],
    batch_size: int,
    prepare: RecordPreparer,
    after_flush: Optional[Callable[[int], None]] = None,
) -> Iterator[Batch]:
    """Group prepared records into batches; ``after_flush`` gets the running row count."""
    batch: Batch = []
    flushed = 0
    try:
        for row_number, record in records:
            batch.append(prepare(record, row_number))
            if len(batch) >= batch_size:
                flushed += len(batch)
                yield batch
                batch = []
                if after_flush is not None:
                    after_flush(flushed)
        if batch:
            yield batch
    finally:
        close = getattr(records, "close", None)
        if close is not None:
            close()


def _after_constrained_flush(flushed: int) -> None:
    gc.collect()
    if flushed % PROGRESS_LOG_EVERY == 0:
        logger.info(f"Processed {flushed} rows so far...")


class RowTransformer:
    def __init__(
        self,
        store: BlobStore,
        *,
        scratch_dir: Optional[str] = None,
        threshold_bytes: Optional[int] = None,
        csv_batch_size: Optional[int] = None,
        workbook_batch_size: Optional[int] = None,
        constrained_batch_size: Optional[int] = None,
        full_timeout_seconds: Optional[float] = None,
        max_pending: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.scratch_dir = scratch_dir
        self.threshold_bytes = threshold_bytes or threshold_from_mb(settings.large_file_threshold_mb)
        self.csv_batch_size = csv_batch_size or settings.csv_batch_size
        self.workbook_batch_size = workbook_batch_size or settings.workbook_batch_size
        self.constrained_batch_size = constrained_batch_size or settings.constrained_batch_size
        self.full_timeout_seconds = full_timeout_seconds or settings.full_download_timeout_seconds
        self.max_pending = max_pending or settings.max_pending_batches
        self._clock = clock

    async def process(
        self,
        blob: BlobReference,
        on_batch: BatchHandler,
        on_complete: Optional[CompletionHandler] = None,
        *,
        mapping: Optional[FieldMapping] = None,
        fields: Optional[Sequence[TemplateField]] = None,
        expected_headers: Optional[Sequence[str]] = None,
    ) -> ProcessingOutcome:
        """
        Stream a stored file into batches.

        Args:
            blob: File to read
            on_batch: Awaited once per batch, in row order
            on_complete: Awaited once with the total row count after the last batch
            mapping: File header -> template field; without it raw records are delivered
            fields: Template fields supplying the type of each mapped field
            expected_headers: Reference header set; defaults to the first sheet's header row

        Raises:
            FormatError: Unsupported, legacy or corrupt file
            StreamTimeoutError: The download exceeded its time budget
            TransformError: A row could not be coerced
            StorageError: The file could not be fetched
        """
        extension = blob.extension
        if extension not in SUPPORTED_EXTENSIONS:
            raise FormatError(
                f"Unsupported file type for {blob.file_name}. Only CSV and Excel files are supported.",
                kind=FileKind.UNKNOWN,
            )

        is_csv = extension == ".csv"
        label = "CSV" if is_csv else "Excel"
        prepare = _record_preparer(mapping, fields)
        logger.info(f"Processing {label} file {blob}")

        try:
            if is_csv:
                strategy = Strategy.STREAM
                total_rows = await self._process_csv(blob, on_batch, prepare, expected_headers)
            else:
                strategy, total_rows = await self._process_workbook(blob, on_batch, prepare, expected_headers)

            if on_complete is not None:
                await on_complete(total_rows)
        except IngestionError as exc:
            logger.error(f"{label} processing error for {blob}: {exc}")
            raise exc.with_context(f"Failed to process {label} file from storage") from exc
        except StorageError:
            raise
        except Exception as exc:
            logger.error(f"{label} processing error for {blob}: {exc}", exc_info=True)
            raise IngestionError(f"Failed to process {label} file from storage: {exc}") from exc

        logger.info(f"{label} processing complete. Total rows processed: {total_rows}")
        return ProcessingOutcome(total_rows=total_rows, completed=True, strategy=strategy)

    async def process_into(
        self,
        blob: BlobReference,
        sink: BatchSink,
        *,
        mapping: Optional[FieldMapping] = None,
        fields: Optional[Sequence[TemplateField]] = None,
        expected_headers: Optional[Sequence[str]] = None,
    ) -> ProcessingOutcome:
        """Process a file into a persistence sink (``accept`` per batch, ``finalize`` once)."""
        return await self.process(
            blob,
            sink.accept,
            sink.finalize,
            mapping=mapping,
            fields=fields,
            expected_headers=expected_headers,
        )

    async def collect_records(
        self,
        blob: BlobReference,
        *,
        mapping: Optional[FieldMapping] = None,
        fields: Optional[Sequence[TemplateField]] = None,
        expected_headers: Optional[Sequence[str]] = None,
    ) -> List[dict]:
        """Read a whole (small) file into memory through the same pipeline."""
        records: List[dict] = []

        async def collect(batch: Batch) -> None:
            records.extend(batch)

        await self.process(blob, collect, mapping=mapping, fields=fields, expected_headers=expected_headers)
        return records

    async def _process_csv(
        self,
        blob: BlobReference,
        on_batch: BatchHandler,
        prepare: RecordPreparer,
        expected_headers: Optional[Sequence[str]],
    ) -> int:
        body = await asyncio.to_thread(self.store.download, blob.storage_location, blob.key)
        batches = self._csv_batches(body, blob, prepare, expected_headers)
        return await BatchChannel(self.max_pending).run(batches, on_batch)

    def _csv_batches(
        self,
        body,
        blob: BlobReference,
        prepare: RecordPreparer,
        expected_headers: Optional[Sequence[str]],
    ) -> Iterator[Batch]:
        # Only storage reads count against the budget, not time spent in on_batch
        reader = TimedReader(body, self.full_timeout_seconds, clock=self._clock, description=f"CSV stream {blob}")
        try:
            check_text_prefix(reader.peek(CSV_PROBE_BYTES), blob)
            records = read_csv_records(reader, expected_headers)
            yield from _batched(records, self.csv_batch_size, prepare)
        except UnicodeDecodeError as exc:
            raise FormatError(
                f"{blob.file_name} is not UTF-8 text: {exc}",
                kind=FileKind.DELIMITED_TEXT,
            ) from exc
        finally:
            reader.close()

    async def _process_workbook(
        self,
        blob: BlobReference,
        on_batch: BatchHandler,
        prepare: RecordPreparer,
        expected_headers: Optional[Sequence[str]],
    ) -> Tuple[Strategy, int]:
        # The channel only returns once its reader thread is done with the file
        with scratch_file("excel-stream-", ".xlsx", self.scratch_dir) as path:
            size = await asyncio.to_thread(
                download_to_path, self.store, blob, path, self.full_timeout_seconds, clock=self._clock
            )
            await asyncio.to_thread(require_valid_workbook, path)

            if expected_headers is not None:
                reference_headers = list(expected_headers)
            else:
                reference_headers = await asyncio.to_thread(read_first_sheet_headers, path)
            logger.info(f"Reference headers for {blob}: {reference_headers}")

            strategy = choose_strategy(size, self.threshold_bytes)
            if strategy == Strategy.CONSTRAINED:
                total_rows = await self._run_constrained(path, reference_headers, on_batch, prepare)
            else:
                total_rows = await self._run_normal(path, reference_headers, on_batch, prepare)
        return strategy, total_rows

    async def _run_normal(
        self,
        path: str,
        reference_headers: Sequence[str],
        on_batch: BatchHandler,
        prepare: RecordPreparer,
    ) -> int:
        batches = _batched(iter_normal_records(path, reference_headers), self.workbook_batch_size, prepare)
        return await BatchChannel(self.max_pending).run(batches, on_batch)

    async def _run_constrained(
        self,
        path: str,
        reference_headers: Sequence[str],
        on_batch: BatchHandler,
        prepare: RecordPreparer,
    ) -> int:
        batches = _batched(
            iter_constrained_records(path, reference_headers),
            self.constrained_batch_size,
            prepare,
            after_flush=_after_constrained_flush,
        )
        return await BatchChannel(self.max_pending, yield_between_batches=True).run(batches, on_batch)
