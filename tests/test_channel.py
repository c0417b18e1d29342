import asyncio
import threading

import pytest

from ledger_ingest.domain.ingestion.channel import BatchChannel


@pytest.mark.asyncio
async def test_batches_arrive_in_order_and_are_counted():
    batches = [[{"n": i} for i in range(start, start + 3)] for start in range(0, 30, 3)]
    received = []

    async def on_batch(batch):
        received.append(batch)

    total = await BatchChannel(max_pending=2).run(iter(batches), on_batch)

    assert total == 30
    assert received == batches


@pytest.mark.asyncio
async def test_producer_is_held_back_by_a_slow_consumer():
    produced = []
    in_flight = []

    def produce():
        for index in range(10):
            produced.append(index)
            yield [{"n": index}]

    async def on_batch(batch):
        # Batches produced but not yet handed to this consumer
        in_flight.append(len(produced) - batch[0]["n"] - 1)
        await asyncio.sleep(0.01)

    await BatchChannel(max_pending=2).run(produce(), on_batch)

    # Queue depth 2, plus one batch the reader may hold while blocked on put
    assert max(in_flight) <= 3


@pytest.mark.asyncio
async def test_reader_error_propagates_after_delivered_batches():
    received = []

    def produce():
        yield [{"n": 1}]
        raise ValueError("bad row")

    async def on_batch(batch):
        received.append(batch)

    with pytest.raises(ValueError, match="bad row"):
        await BatchChannel().run(produce(), on_batch)

    assert received == [[{"n": 1}]]


@pytest.mark.asyncio
async def test_consumer_error_stops_the_reader_and_closes_it():
    closed = threading.Event()
    produced = []

    def produce():
        try:
            for index in range(1000):
                produced.append(index)
                yield [{"n": index}]
        finally:
            closed.set()

    async def on_batch(batch):
        if batch[0]["n"] == 2:
            raise RuntimeError("sink unavailable")

    with pytest.raises(RuntimeError, match="sink unavailable"):
        await BatchChannel(max_pending=2).run(produce(), on_batch)

    assert closed.is_set()
    assert len(produced) < 1000


@pytest.mark.asyncio
async def test_empty_batches_are_not_delivered():
    received = []

    async def on_batch(batch):
        received.append(batch)

    total = await BatchChannel().run(iter([[], [{"n": 1}], []]), on_batch)

    assert total == 1
    assert received == [[{"n": 1}]]


def test_channel_depth_must_be_positive():
    with pytest.raises(ValueError):
        BatchChannel(max_pending=0)
