"""
FileDeliveryStore — JSON file-backed store with persistence across restarts.

Data layout:
  {data_dir}/
    queue_items.json
    communication_logs.json
    campaigns.json
    customers.json
    orders.json

Features:
  - Queue items and logs survive process restarts (unlike InMemoryDeliveryStore)
  - No external dependencies (no database server, no Redis)
  - Flush on every mutation, or batched with flush_interval_s > 0
  - Single-process only (no concurrent write safety)

Best for: small deployments, demos, edge devices, air-gapped environments.
"""
from __future__ import annotations

import asyncio
import json
import structlog
from datetime import datetime
from pathlib import Path
from typing import Optional

from database.store_base import ExpectedStatus
from database.store_memory import InMemoryDeliveryStore
from models.schemas import (
    Campaign, CommunicationLog, Customer, Order, QueueItem, Receipt,
)

logger = structlog.get_logger()

_COLLECTIONS = {
    "queue_items": "_queue_items",
    "communication_logs": "_logs",
    "campaigns": "_campaigns",
    "customers": "_customers",
    "orders": "_orders",
}


class FileDeliveryStore(InMemoryDeliveryStore):
    """
    Extends InMemoryDeliveryStore with JSON file persistence.

    On init: loads all data from JSON files into memory.
    On every write: flushes the changed collection to disk.

    For higher performance, set flush_interval_s > 0 to batch writes.
    """

    def __init__(self, data_dir: str = "./data", flush_interval_s: float = 0):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._flush_interval = flush_interval_s
        self._dirty: set[str] = set()
        self._flush_task: Optional[asyncio.Task] = None
        self._load_all()
        logger.info("file_store_initialized", data_dir=str(self._data_dir))

    # ── Load / Save ───────────────────────────────────────

    def _file_path(self, collection: str) -> Path:
        return self._data_dir / f"{collection}.json"

    def _load_all(self):
        """Load all collections from disk."""
        for collection, attr in _COLLECTIONS.items():
            path = self._file_path(collection)
            if not path.exists():
                continue
            try:
                with open(path, "r") as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("file_store_load_error",
                               collection=collection, error=str(e))
                continue
            setattr(self, attr, data if isinstance(data, dict) else {})
            logger.debug("file_store_loaded", collection=collection, records=len(data))

    def _flush_collection(self, collection: str):
        """Write a single collection to disk."""
        path = self._file_path(collection)
        data = getattr(self, _COLLECTIONS[collection])
        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2, default=str)
        tmp_path.replace(path)  # atomic on POSIX

    def _mark_dirty(self, *collections: str):
        """Mark collections as needing a flush."""
        if self._flush_interval <= 0:
            for c in collections:
                self._flush_collection(c)
        else:
            self._dirty.update(collections)
            if self._flush_task is None or self._flush_task.done():
                self._flush_task = asyncio.get_running_loop().create_task(
                    self._deferred_flush()
                )

    async def _deferred_flush(self):
        """Batch flush after interval."""
        await asyncio.sleep(self._flush_interval)
        dirty = self._dirty.copy()
        self._dirty.clear()
        for c in dirty:
            self._flush_collection(c)

    def flush_all(self):
        """Force flush all collections to disk."""
        for c in _COLLECTIONS:
            self._flush_collection(c)
        logger.info("file_store_flushed_all")

    async def close(self) -> None:
        if self._flush_task and not self._flush_task.done():
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
        self.flush_all()

    # ── Override write methods to trigger persistence ──────

    async def create_queue_item(self, item: QueueItem) -> QueueItem:
        result = await super().create_queue_item(item)
        self._mark_dirty("queue_items")
        return result

    async def claim_queue_item(self, item_id: str) -> Optional[QueueItem]:
        result = await super().claim_queue_item(item_id)
        if result:
            self._mark_dirty("queue_items")
        return result

    async def update_queue_item(self, item_id: str, expected_status: ExpectedStatus = None,
                                **fields) -> bool:
        ok = await super().update_queue_item(item_id, expected_status, **fields)
        if ok:
            self._mark_dirty("queue_items")
        return ok

    async def delete_queue_items(self, status: str, processed_before: datetime) -> int:
        removed = await super().delete_queue_items(status, processed_before)
        if removed:
            self._mark_dirty("queue_items")
        return removed

    async def create_log(self, log: CommunicationLog) -> CommunicationLog:
        result = await super().create_log(log)
        self._mark_dirty("communication_logs")
        return result

    async def update_log(self, log_id: str, expected_status: ExpectedStatus = None,
                         **fields) -> bool:
        ok = await super().update_log(log_id, expected_status, **fields)
        if ok:
            self._mark_dirty("communication_logs")
        return ok

    async def apply_receipts(self, receipts: list[Receipt]) -> int:
        applied = await super().apply_receipts(receipts)
        self._mark_dirty("communication_logs")
        return applied

    async def create_campaign(self, campaign: Campaign) -> Campaign:
        result = await super().create_campaign(campaign)
        self._mark_dirty("campaigns")
        return result

    async def update_campaign(self, campaign_id: str, expected_status: ExpectedStatus = None,
                              **fields) -> bool:
        ok = await super().update_campaign(campaign_id, expected_status, **fields)
        if ok:
            self._mark_dirty("campaigns")
        return ok

    async def upsert_customer(self, customer: Customer) -> Customer:
        result = await super().upsert_customer(customer)
        self._mark_dirty("customers")
        return result

    async def delete_customer(self, customer_id: str) -> bool:
        ok = await super().delete_customer(customer_id)
        if ok:
            self._mark_dirty("customers", "orders")
        return ok

    async def upsert_order(self, order: Order) -> Order:
        result = await super().upsert_order(order)
        self._mark_dirty("orders")
        return result

    async def delete_order(self, order_id: str) -> bool:
        ok = await super().delete_order(order_id)
        if ok:
            self._mark_dirty("orders")
        return ok
