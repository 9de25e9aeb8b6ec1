import asyncio

import pytest

from attendrix.features.sync.write_buffer import WriteBuffer
from attendrix.models.attendance import PendingWrite
from attendrix.tests.mocks import FailingMirrorStore, mirror_document
from attendrix.workers.flush_worker import FlushWorker


@pytest.mark.asyncio
async def test_run_once_flushes_due_writes(memory_store):
    await memory_store.upsert_document("u1", mirror_document())
    buffer = WriteBuffer(memory_store, debounce_seconds=0)
    await buffer.enqueue(PendingWrite(user_id="u1", amplix_delta=5))

    worker = FlushWorker(buffer, interval_seconds=60)
    assert await worker.run_once() == 1
    assert (await memory_store.get_document("u1"))["amplix"] == 105


@pytest.mark.asyncio
async def test_loop_flushes_on_interval(memory_store):
    await memory_store.upsert_document("u1", mirror_document())
    buffer = WriteBuffer(memory_store, debounce_seconds=0)
    worker = FlushWorker(buffer, interval_seconds=0.01)

    worker.start()
    assert worker.running
    await buffer.enqueue(PendingWrite(user_id="u1", amplix_delta=5))
    for _ in range(100):
        if buffer.pending_count() == 0:
            break
        await asyncio.sleep(0.01)
    await worker.stop(drain=False)

    assert not worker.running
    assert (await memory_store.get_document("u1"))["amplix"] == 105


@pytest.mark.asyncio
async def test_stop_drains_pending_writes(memory_store):
    await memory_store.upsert_document("u1", mirror_document())
    buffer = WriteBuffer(memory_store, debounce_seconds=3600)
    worker = FlushWorker(buffer, interval_seconds=3600)
    worker.start()

    await buffer.enqueue(PendingWrite(user_id="u1", amplix_delta=-4))
    assert await worker.stop(drain=True) == 1

    assert buffer.pending_count() == 0
    assert (await memory_store.get_document("u1"))["amplix"] == 96


@pytest.mark.asyncio
async def test_failed_flush_stays_queued_for_next_pass():
    store = FailingMirrorStore(failures=1)
    await store.upsert_document("u1", mirror_document())
    buffer = WriteBuffer(store, debounce_seconds=0)
    await buffer.enqueue(PendingWrite(user_id="u1", amplix_delta=5))
    worker = FlushWorker(buffer, interval_seconds=60)

    assert await worker.run_once() == 0
    assert buffer.pending_count() == 1
    assert await worker.run_once() == 1
    assert (await store.get_document("u1"))["amplix"] == 105
