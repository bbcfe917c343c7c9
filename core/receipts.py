"""
Receipt Reconciler — Size/time micro-batcher for delivery receipts.

A batch is flushed when it reaches ``batch_size`` receipts or
``batch_timeout_s`` after its first receipt was added, whichever comes
first. A flush tries one all-or-nothing bulk application; if that raises,
each receipt is applied on its own so one bad record cannot block the rest.

The in-flight batch is held in memory only. Flushes are serialized, so
stop() waits for a timed flush that is already applying before it flushes
whatever is left.
"""
from __future__ import annotations

import asyncio
import structlog
from collections import deque
from typing import Any, Awaitable, Callable, Optional

from models.schemas import Receipt

logger = structlog.get_logger()

BulkApply = Callable[[list[Receipt]], Awaitable[Any]]
SingleApply = Callable[[Receipt], Awaitable[bool]]


class ReceiptBatcher:
    """
    Usage:
        batcher = ReceiptBatcher(delivery.apply_receipt_batch, delivery.process_receipt)
        await batcher.add(receipt)
        await batcher.stop()
    """

    def __init__(
        self,
        apply_batch: BulkApply,
        apply_one: SingleApply,
        batch_size: int = 10,
        batch_timeout_s: float = 5.0,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.apply_batch = apply_batch
        self.apply_one = apply_one
        self.batch_size = batch_size
        self.batch_timeout_s = batch_timeout_s
        self._batch: list[Receipt] = []
        self._timer: Optional[asyncio.Task] = None
        self._flush_lock = asyncio.Lock()
        self.flush_count = 0
        self.recent_flush_sizes: deque[int] = deque(maxlen=100)

    @property
    def pending(self) -> int:
        return len(self._batch)

    async def add(self, receipt: Receipt) -> None:
        self._batch.append(receipt)
        if len(self._batch) >= self.batch_size:
            await self.flush()
        elif self._timer is None:
            self._timer = asyncio.create_task(self._flush_after_timeout())

    async def _flush_after_timeout(self) -> None:
        await asyncio.sleep(self.batch_timeout_s)
        self._timer = None
        try:
            await self.flush()
        except Exception as e:
            logger.error("receipt_timed_flush_error", error=str(e), exc_info=True)

    def _cancel_timer(self) -> None:
        if self._timer is not None and self._timer is not asyncio.current_task():
            self._timer.cancel()
        self._timer = None

    async def flush(self) -> dict[str, Any]:
        """Apply everything currently buffered."""
        async with self._flush_lock:
            self._cancel_timer()
            batch, self._batch = self._batch, []
            return await self._apply(batch)

    async def _apply(self, batch: list[Receipt]) -> dict[str, Any]:
        if not batch:
            return {"size": 0, "applied": 0, "skipped": 0, "errors": 0, "mode": "empty"}

        self.flush_count += 1
        self.recent_flush_sizes.append(len(batch))

        try:
            await self.apply_batch(batch)
            logger.info("receipt_batch_flushed", size=len(batch), mode="bulk")
            return {"size": len(batch), "applied": len(batch), "skipped": 0, "errors": 0,
                    "mode": "bulk"}
        except Exception as e:
            logger.warning("receipt_bulk_apply_failed", size=len(batch), error=str(e))

        applied = skipped = errors = 0
        for receipt in batch:
            try:
                if await self.apply_one(receipt):
                    applied += 1
                else:
                    skipped += 1
            except Exception as e:
                errors += 1
                logger.error("receipt_apply_failed", log_id=receipt.log_id,
                             vendor_id=receipt.vendor_id, error=str(e))

        logger.info("receipt_batch_flushed", size=len(batch), mode="individual",
                    applied=applied, skipped=skipped, errors=errors)
        return {"size": len(batch), "applied": applied, "skipped": skipped, "errors": errors,
                "mode": "individual"}

    async def stop(self) -> dict[str, Any]:
        return await self.flush()

    def status(self) -> dict[str, Any]:
        return {
            "pending": self.pending,
            "batch_size": self.batch_size,
            "batch_timeout_s": self.batch_timeout_s,
            "flush_count": self.flush_count,
        }
