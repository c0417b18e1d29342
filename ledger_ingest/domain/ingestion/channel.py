"""
Bounded hand-off between a blocking row reader and an async batch consumer.

The reader runs in a worker thread and pushes batches into an
``asyncio.Queue`` of fixed depth. When the consumer falls behind the queue
fills and the worker blocks, so at most ``max_pending`` batches (plus the
one being delivered) are held in memory at any time.
"""
import asyncio
import logging
import threading
from typing import Iterable

from .types import Batch, BatchHandler

logger = logging.getLogger(__name__)

_END = object()
_DRAIN_POLL_SECONDS = 0.05


class _ProducerFailure:
    def __init__(self, error: BaseException):
        self.error = error


class BatchChannel:
    def __init__(self, max_pending: int = 2, yield_between_batches: bool = False):
        if max_pending < 1:
            raise ValueError("max_pending must be at least 1")
        self.max_pending = max_pending
        self.yield_between_batches = yield_between_batches

    async def run(self, batches: Iterable[Batch], on_batch: BatchHandler) -> int:
        """
        Deliver every batch from ``batches`` to ``on_batch`` in order.

        Returns:
            Total number of records delivered

        Raises:
            Whatever the reader or ``on_batch`` raised; the other side is stopped first.
        """
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_pending)
        abandoned = threading.Event()

        def put(item) -> None:
            asyncio.run_coroutine_threadsafe(queue.put(item), loop).result()

        def produce() -> None:
            iterator = iter(batches)
            try:
                for batch in iterator:
                    if abandoned.is_set():
                        return
                    if batch:
                        put(batch)
                put(_END)
            except Exception as exc:
                put(_ProducerFailure(exc))
            finally:
                close = getattr(iterator, "close", None)
                if close is not None:
                    close()

        producer = loop.run_in_executor(None, produce)
        total = 0
        try:
            while True:
                item = await queue.get()
                if item is _END:
                    break
                if isinstance(item, _ProducerFailure):
                    raise item.error
                await on_batch(item)
                total += len(item)
                if self.yield_between_batches:
                    await asyncio.sleep(0)
        except BaseException:
            abandoned.set()
            await self._drain_until_done(queue, producer)
            raise

        await producer
        return total

    @staticmethod
    async def _drain_until_done(queue: asyncio.Queue, producer: "asyncio.Future") -> None:
        # Unblock a reader waiting on a full queue so its thread can exit
        while not producer.done():
            while not queue.empty():
                queue.get_nowait()
            await asyncio.wait({producer}, timeout=_DRAIN_POLL_SECONDS)
        if not producer.cancelled() and producer.exception() is not None:
            logger.debug(f"Row reader stopped with {producer.exception()!r} after consumer failure")
