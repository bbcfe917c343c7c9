"""
Queue Store — Durable work items with an ordering cache in front.

Lifecycle of one item:

    enqueue ──▶ pending ──claim──▶ processing ──▶ completed
                  ▲                    │
                  └── retry (delay) ───┤  attempts < max_attempts
                                       └──▶ failed   (attempts exhausted,
                                                      or permanent error)

The Queue Store is the only writer of ``status`` and ``attempts``.
Claiming is a compare-and-swap on the durable record taken under a
per-queue-type lock, so concurrent dequeue_next() calls never receive the
same item. Ordering comes from the cache: higher priority first, FIFO by
``seq`` within a priority.
"""
from __future__ import annotations

import asyncio
import time
import structlog
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Union

from pydantic import BaseModel

from core.errors import ConflictError, InvalidPayloadError, NotFoundError
from database.store_base import BaseDeliveryStore
from job_queue.cache import QueueCache
from models.schemas import QueueItem, QueueItemStatus, QueueType, decode_payload

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QueueStore:
    """
    Usage:
        queue = QueueStore(store, cache)
        await queue.recover()                       # once at startup
        item_id = await queue.enqueue("delivery_send", {...})
        item = await queue.dequeue_next("delivery_send")
        await queue.mark_completed(item.id)
    """

    def __init__(
        self,
        store: BaseDeliveryStore,
        cache: QueueCache,
        max_attempts: int = 3,
        retry_delay_s: float = 5.0,
    ):
        self.store = store
        self.cache = cache
        self.max_attempts = max_attempts
        self.retry_delay_s = retry_delay_s
        self._locks: dict[str, asyncio.Lock] = {}
        self._last_seq = 0

    def _lock_for(self, queue_type: str) -> asyncio.Lock:
        if queue_type not in self._locks:
            self._locks[queue_type] = asyncio.Lock()
        return self._locks[queue_type]

    def _next_seq(self) -> int:
        self._last_seq = max(time.time_ns(), self._last_seq + 1)
        return self._last_seq

    # ── Producer ──────────────────────────────────────────────

    async def enqueue(
        self,
        queue_type: Union[QueueType, str],
        payload: Union[dict[str, Any], BaseModel],
        priority: int = 0,
    ) -> str:
        """Validate and persist a new pending item. Raises InvalidPayloadError."""
        decoded = decode_payload(queue_type, payload)
        qtype = QueueType(queue_type)
        if not isinstance(priority, int):
            raise InvalidPayloadError("priority must be an integer")

        item = QueueItem(
            type=qtype,
            payload=decoded.model_dump(mode="json"),
            priority=priority,
            seq=self._next_seq(),
            max_attempts=self.max_attempts,
        )
        await self.store.create_queue_item(item)
        await self.cache.push(qtype.value, item.id, item.priority, item.seq)
        logger.info("queue_item_enqueued",
                    item_id=item.id, queue_type=qtype.value, priority=priority)
        return item.id

    # ── Consumer ──────────────────────────────────────────────

    async def dequeue_next(self, queue_type: Union[QueueType, str]) -> Optional[QueueItem]:
        """Claim the next eligible item (pending → processing), or None."""
        qtype = QueueType(queue_type).value
        async with self._lock_for(qtype):
            while True:
                item_id = await self.cache.pop(qtype)
                if item_id is None:
                    return None
                item = await self.store.claim_queue_item(item_id)
                if item is not None:
                    logger.debug("queue_item_claimed",
                                 item_id=item.id, queue_type=qtype, attempts=item.attempts)
                    return item
                # Stale cache entry: item was removed, already claimed or terminal
                logger.debug("queue_cache_entry_skipped", item_id=item_id, queue_type=qtype)

    async def mark_completed(self, item_id: str) -> None:
        """processing → completed. No-op if already completed."""
        item = await self._require(item_id)
        if item.status == QueueItemStatus.COMPLETED:
            return
        now = _utcnow()
        ok = await self.store.update_queue_item(
            item_id, expected_status=QueueItemStatus.PROCESSING,
            status=QueueItemStatus.COMPLETED, processed_at=now, updated_at=now,
        )
        if not ok:
            current = await self._require(item_id)
            if current.status == QueueItemStatus.COMPLETED:
                return
            raise ConflictError(f"Queue item {item_id} is {current.status.value}, not processing")
        logger.info("queue_item_completed", item_id=item_id, queue_type=item.type.value)

    async def mark_failed(self, item_id: str, error: str, permanent: bool = False) -> QueueItemStatus:
        """
        Record a failed attempt.

        attempts < max_attempts → pending again, claimable after retry_delay_s.
        Otherwise (or when permanent) → failed, error retained.
        """
        item = await self._require(item_id)
        if item.status != QueueItemStatus.PROCESSING:
            raise ConflictError(f"Queue item {item_id} is {item.status.value}, not processing")

        attempts = item.max_attempts if permanent else min(item.attempts + 1, item.max_attempts)
        now = _utcnow()

        if attempts >= item.max_attempts:
            ok = await self.store.update_queue_item(
                item_id, expected_status=QueueItemStatus.PROCESSING,
                status=QueueItemStatus.FAILED, attempts=attempts,
                last_error=error, processed_at=now, updated_at=now,
            )
            if not ok:
                raise ConflictError(f"Queue item {item_id} changed while being failed")
            logger.warning("queue_item_failed",
                           item_id=item_id, queue_type=item.type.value,
                           attempts=attempts, permanent=permanent, error=error)
            return QueueItemStatus.FAILED

        available_at = now + timedelta(seconds=self.retry_delay_s)
        ok = await self.store.update_queue_item(
            item_id, expected_status=QueueItemStatus.PROCESSING,
            status=QueueItemStatus.PENDING, attempts=attempts,
            last_error=error, available_at=available_at, updated_at=now,
        )
        if not ok:
            raise ConflictError(f"Queue item {item_id} changed while being retried")
        await self.cache.push_delayed(item.type.value, item_id, item.priority, item.seq,
                                      available_at.timestamp())
        logger.info("queue_item_retry_scheduled",
                    item_id=item_id, queue_type=item.type.value,
                    attempt=attempts, max_attempts=item.max_attempts,
                    retry_in_s=self.retry_delay_s, error=error)
        return QueueItemStatus.PENDING

    # ── Inspection ────────────────────────────────────────────

    async def stats(self, queue_type: Union[QueueType, str] = None) -> dict[str, int]:
        qtype = QueueType(queue_type).value if queue_type else None
        counts = await self.store.count_queue_items(qtype)
        return {"total": sum(counts.values()), **counts}

    async def get_item(self, item_id: str) -> Optional[QueueItem]:
        return await self.store.get_queue_item(item_id)

    async def get_failed(self, queue_type: Union[QueueType, str] = None,
                         limit: int = 100) -> list[QueueItem]:
        qtype = QueueType(queue_type).value if queue_type else None
        return await self.store.list_queue_items(qtype, QueueItemStatus.FAILED.value, limit=limit)

    # ── Operator actions ──────────────────────────────────────

    async def retry_failed(self, item_id: str) -> QueueItem:
        """Manually reset a failed item: attempts=0, error cleared, pending."""
        item = await self._require(item_id)
        if item.status != QueueItemStatus.FAILED:
            raise ConflictError(f"Only failed items can be retried; {item_id} is {item.status.value}")
        ok = await self.store.update_queue_item(
            item_id, expected_status=QueueItemStatus.FAILED,
            status=QueueItemStatus.PENDING, attempts=0, last_error=None,
            available_at=None, processed_at=None,
        )
        if not ok:
            raise ConflictError(f"Queue item {item_id} changed while being reset")
        await self.cache.push(item.type.value, item_id, item.priority, item.seq)
        logger.info("queue_item_manual_retry", item_id=item_id, queue_type=item.type.value)
        return await self._require(item_id)

    async def clear_completed(self, older_than_hours: float = 24) -> int:
        cutoff = _utcnow() - timedelta(hours=older_than_hours)
        removed = await self.store.delete_queue_items(QueueItemStatus.COMPLETED.value, cutoff)
        logger.info("queue_completed_cleared", removed=removed, older_than_hours=older_than_hours)
        return removed

    # ── Recovery ──────────────────────────────────────────────

    async def recover(self) -> dict[str, int]:
        """
        Rebuild the cache from durable records at startup.

        Items left in processing by a previous process are returned to pending
        without consuming an attempt.
        """
        reset = 0
        for item in await self.store.list_queue_items(status=QueueItemStatus.PROCESSING.value):
            if await self.store.update_queue_item(
                item.id, expected_status=QueueItemStatus.PROCESSING,
                status=QueueItemStatus.PENDING,
            ):
                reset += 1

        for qtype in QueueType:
            await self.cache.clear(qtype.value)

        pending = await self.store.list_queue_items(status=QueueItemStatus.PENDING.value)
        for item in pending:
            await self._push_pending(item)

        logger.info("queue_recovered", reset_processing=reset, requeued=len(pending))
        return {"reset_processing": reset, "requeued": len(pending)}

    async def reclaim_stale(self, older_than_s: float) -> int:
        """Return items stuck in processing longer than older_than_s to pending."""
        cutoff = _utcnow() - timedelta(seconds=older_than_s)
        stale = await self.store.list_queue_items(
            status=QueueItemStatus.PROCESSING.value, updated_before=cutoff,
        )
        reclaimed = 0
        for item in stale:
            if await self.store.update_queue_item(
                item.id, expected_status=QueueItemStatus.PROCESSING,
                status=QueueItemStatus.PENDING, last_error="reclaimed after processing timeout",
            ):
                await self.cache.push(item.type.value, item.id, item.priority, item.seq)
                reclaimed += 1
        if reclaimed:
            logger.warning("queue_items_reclaimed", count=reclaimed, older_than_s=older_than_s)
        return reclaimed

    # ── Helpers ───────────────────────────────────────────────

    async def _push_pending(self, item: QueueItem) -> None:
        if item.available_at and item.available_at > _utcnow():
            await self.cache.push_delayed(item.type.value, item.id, item.priority, item.seq,
                                          item.available_at.timestamp())
        else:
            await self.cache.push(item.type.value, item.id, item.priority, item.seq)

    async def _require(self, item_id: str) -> QueueItem:
        item = await self.store.get_queue_item(item_id)
        if item is None:
            raise NotFoundError(f"Queue item not found: {item_id}", {"item_id": item_id})
        return item
