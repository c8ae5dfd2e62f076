"""Durable hand-off from donation completion to reward-token issuance."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional

from ..config import Settings, get_settings
from ..errors import ServiceError
from ..models import Clock, IssuanceOutboxEntry, IssuanceStatus, utcnow
from ..store import Collections, DocumentStore, Transaction

logger = logging.getLogger(__name__)

# called with the record id and whether this is its first handling
RecordHandler = Callable[[str, bool], Awaitable[None]]

PENDING = "pending"
DONE = "done"
FAILED = "failed"


def stage_entry(txn: Transaction, record_id: str, now: datetime) -> None:
    """Write the outbox entry inside the transaction that creates the record."""

    entry = IssuanceOutboxEntry(record_id=record_id, status=PENDING, created_at=now)
    txn.set(Collections.ISSUANCE_OUTBOX, record_id, entry.model_dump(mode="json"))


class IssuanceOutbox:
    """Queue of pledge record ids still owed an issuance attempt.

    Entries are persisted before they are queued, so a crash between the
    donation commit and the issuance attempt is recovered by :meth:`sweep`.
    A failing handler leaves its entry pending for the periodic sweep until
    ``issuance_max_failures`` consecutive failures mark it failed.
    """

    def __init__(
        self,
        store: DocumentStore,
        handler: RecordHandler,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = store
        self._handler = handler
        self._clock = clock
        self._queue: asyncio.Queue[str] = asyncio.Queue(self._settings.issuance_queue_size)
        self._queued: set[str] = set()
        self._worker_task: Optional[asyncio.Task[None]] = None
        self._sweep_task: Optional[asyncio.Task[None]] = None

    async def start(self) -> None:
        if self._worker_task:
            return
        recovered = await self.sweep()
        if recovered:
            logger.info("outbox.recovered", extra={"count": recovered})
        self._worker_task = asyncio.create_task(self._worker_loop(), name="issuance-worker")
        self._sweep_task = asyncio.create_task(self._sweep_loop(), name="issuance-sweeper")

    async def stop(self) -> None:
        for task in (self._sweep_task, self._worker_task):
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._sweep_task = None
        self._worker_task = None

    def enqueue(self, record_id: str) -> bool:
        """Queue ``record_id`` unless it is already waiting; never blocks."""

        if record_id in self._queued:
            return False
        try:
            self._queue.put_nowait(record_id)
        except asyncio.QueueFull:
            # the entry stays pending in the store; the next sweep picks it up
            logger.warning("outbox.queue_full", extra={"record_id": record_id})
            return False
        self._queued.add(record_id)
        return True

    async def sweep(self) -> int:
        """Re-queue every pending entry left behind by an earlier process."""

        entries = await self._store.query(Collections.ISSUANCE_OUTBOX, status=PENDING)
        return sum(1 for entry in entries if self.enqueue(entry["record_id"]))

    async def requeue_trustline_required(self, donor_address: str) -> int:
        """Retry issuance for a donor whose earlier attempts lacked a trust line."""

        records = await self._store.query(Collections.PLEDGE_RECORDS, donor_address=donor_address)
        count = 0
        for record in records:
            issuance = record.get("issuance") or {}
            if issuance.get("status") != IssuanceStatus.TRUSTLINE_REQUIRED.value:
                continue
            await self._mark(record["id"], PENDING, failures=0)
            if self.enqueue(record["id"]):
                count += 1
        if count:
            logger.info("outbox.trustline_requeued", extra={"donor": donor_address, "count": count})
        return count

    async def join(self) -> None:
        """Wait until every queued record has been handled."""

        await self._queue.join()

    async def size(self) -> int:
        return self._queue.qsize()

    async def process_next(self) -> str:
        record_id = await self._queue.get()
        try:
            await self._handle(record_id)
        finally:
            self._queued.discard(record_id)
            self._queue.task_done()
        return record_id

    async def _worker_loop(self) -> None:
        while True:
            await self.process_next()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.issuance_retry_interval_sec)
            await self.sweep()

    async def _handle(self, record_id: str) -> None:
        entry = await self._store.get(Collections.ISSUANCE_OUTBOX, record_id) or {}
        attempts = int(entry.get("attempts", 0)) + 1
        try:
            await self._handler(record_id, attempts == 1)
        except Exception as exc:
            # the worker must outlive a faulty handler
            failures = int(entry.get("failures", 0)) + 1
            error = exc.message if isinstance(exc, ServiceError) else str(exc)
            if failures >= self._settings.issuance_max_failures:
                logger.error(
                    "outbox.gave_up",
                    extra={"record_id": record_id, "failures": failures, "error": error},
                )
                await self._mark(record_id, FAILED, attempts, failures, error)
                return
            if isinstance(exc, ServiceError):
                logger.warning("outbox.retry_scheduled", extra={"record_id": record_id, "failures": failures, "error": error})
            else:
                logger.exception("outbox.handler_failure", extra={"record_id": record_id}, exc_info=exc)
            await self._mark(record_id, PENDING, attempts, failures, error)
            return
        await self._mark(record_id, DONE, attempts, 0)

    async def _mark(
        self,
        record_id: str,
        status: str,
        attempts: Optional[int] = None,
        failures: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        fields: dict = {"status": status, "updated_at": self._clock().isoformat(), "last_error": error}
        if attempts is not None:
            fields["attempts"] = attempts
        if failures is not None:
            fields["failures"] = failures
        existing = await self._store.get(Collections.ISSUANCE_OUTBOX, record_id)
        if existing is None:
            entry = IssuanceOutboxEntry(record_id=record_id, created_at=self._clock())
            await self._store.set(Collections.ISSUANCE_OUTBOX, record_id, {**entry.model_dump(mode="json"), **fields})
        else:
            await self._store.update(Collections.ISSUANCE_OUTBOX, record_id, fields)
