import asyncio

import pytest

from oss_token.donation.outbox import DONE, FAILED, PENDING, IssuanceOutbox, stage_entry
from oss_token.models import IssuanceStatus
from oss_token.store import Collections, InMemoryDocumentStore

from .fakes import FakeClock
from .utils import DONOR, make_settings


class RecordingHandler:
    def __init__(self, failures: int = 0) -> None:
        self.calls: list[str] = []
        self.firsts: list[bool] = []
        self.failures = failures

    async def __call__(self, record_id: str, first: bool) -> None:
        self.calls.append(record_id)
        self.firsts.append(first)
        if self.failures:
            self.failures -= 1
            raise RuntimeError("ledger node down")


async def _staged(store: InMemoryDocumentStore, *record_ids: str) -> None:
    clock = FakeClock()
    async with store.transaction() as txn:
        for record_id in record_ids:
            stage_entry(txn, record_id, clock())


@pytest.mark.asyncio
async def test_successful_handling_marks_entry_done() -> None:
    store = InMemoryDocumentStore()
    handler = RecordingHandler()
    outbox = IssuanceOutbox(store, handler, make_settings(), FakeClock())
    await _staged(store, "rec-1")

    assert outbox.enqueue("rec-1") is True
    await outbox.process_next()

    entry = await store.get(Collections.ISSUANCE_OUTBOX, "rec-1")
    assert entry["status"] == DONE
    assert entry["attempts"] == 1
    assert handler.calls == ["rec-1"]


@pytest.mark.asyncio
async def test_failing_handler_leaves_entry_pending() -> None:
    store = InMemoryDocumentStore()
    handler = RecordingHandler(failures=1)
    outbox = IssuanceOutbox(store, handler, make_settings(), FakeClock())
    await _staged(store, "rec-1")

    outbox.enqueue("rec-1")
    await outbox.process_next()
    entry = await store.get(Collections.ISSUANCE_OUTBOX, "rec-1")
    assert entry["status"] == PENDING
    assert entry["attempts"] == 1
    assert entry["failures"] == 1
    assert entry["last_error"] == "ledger node down"

    assert await outbox.sweep() == 1
    await outbox.process_next()
    entry = await store.get(Collections.ISSUANCE_OUTBOX, "rec-1")
    assert entry["status"] == DONE
    assert entry["attempts"] == 2
    assert entry["failures"] == 0
    assert handler.firsts == [True, False]


@pytest.mark.asyncio
async def test_enqueue_deduplicates_and_never_blocks_when_full() -> None:
    store = InMemoryDocumentStore()
    outbox = IssuanceOutbox(store, RecordingHandler(), make_settings(ISSUANCE_QUEUE_SIZE=2), FakeClock())

    assert outbox.enqueue("rec-1") is True
    assert outbox.enqueue("rec-1") is False
    assert outbox.enqueue("rec-2") is True
    assert outbox.enqueue("rec-3") is False
    assert await outbox.size() == 2


@pytest.mark.asyncio
async def test_start_recovers_pending_entries_and_worker_drains_them() -> None:
    store = InMemoryDocumentStore()
    handler = RecordingHandler()
    outbox = IssuanceOutbox(store, handler, make_settings(), FakeClock())
    await _staged(store, "rec-1", "rec-2")

    await outbox.start()
    try:
        await asyncio.wait_for(outbox.join(), timeout=1)
    finally:
        await outbox.stop()

    assert sorted(handler.calls) == ["rec-1", "rec-2"]
    assert await outbox.sweep() == 0


@pytest.mark.asyncio
async def test_requeue_trustline_required_records_for_donor() -> None:
    store = InMemoryDocumentStore()
    outbox = IssuanceOutbox(store, RecordingHandler(), make_settings(), FakeClock())
    await store.set(
        Collections.PLEDGE_RECORDS,
        "rec-1",
        {"id": "rec-1", "donor_address": DONOR, "issuance": {"status": IssuanceStatus.TRUSTLINE_REQUIRED.value}},
    )
    await store.set(
        Collections.PLEDGE_RECORDS,
        "rec-2",
        {"id": "rec-2", "donor_address": DONOR, "issuance": {"status": IssuanceStatus.COMPLETED.value}},
    )

    assert await outbox.requeue_trustline_required(DONOR) == 1
    entry = await store.get(Collections.ISSUANCE_OUTBOX, "rec-1")
    assert entry["status"] == PENDING
    assert await outbox.size() == 1


@pytest.mark.asyncio
async def test_entry_fails_after_repeated_handler_failures() -> None:
    store = InMemoryDocumentStore()
    handler = RecordingHandler(failures=5)
    outbox = IssuanceOutbox(store, handler, make_settings(ISSUANCE_MAX_FAILURES=2), FakeClock())
    await _staged(store, "rec-1")

    outbox.enqueue("rec-1")
    await outbox.process_next()
    assert await outbox.sweep() == 1
    await outbox.process_next()

    entry = await store.get(Collections.ISSUANCE_OUTBOX, "rec-1")
    assert entry["status"] == FAILED
    assert entry["failures"] == 2
    assert await outbox.sweep() == 0


@pytest.mark.asyncio
async def test_trustline_requeue_resets_failure_count() -> None:
    store = InMemoryDocumentStore()
    outbox = IssuanceOutbox(store, RecordingHandler(), make_settings(), FakeClock())
    await _staged(store, "rec-1")
    await store.update(Collections.ISSUANCE_OUTBOX, "rec-1", {"status": DONE, "attempts": 3, "failures": 2})
    await store.set(
        Collections.PLEDGE_RECORDS,
        "rec-1",
        {"id": "rec-1", "donor_address": DONOR, "issuance": {"status": IssuanceStatus.TRUSTLINE_REQUIRED.value}},
    )

    await outbox.requeue_trustline_required(DONOR)

    entry = await store.get(Collections.ISSUANCE_OUTBOX, "rec-1")
    assert entry["status"] == PENDING
    assert entry["failures"] == 0
    assert entry["attempts"] == 3
