"""
InMemoryDeliveryStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database, no Redis)
  - Full interface compatibility with SqlDeliveryStore
  - Compare-and-swap updates are atomic: no await between check and write
  - All data lost on process restart

Records are held as JSON-mode dicts so FileDeliveryStore can persist the
same collections verbatim.

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from database.store_base import (
    BaseDeliveryStore, ExpectedStatus, ReceiptApplyError,
    check_receipt, receipt_fields, status_set,
)
from models.schemas import (
    Campaign, CommunicationLog, Customer, Order, QueueItem, Receipt,
)

logger = structlog.get_logger()

_QUEUE_STATUSES = ("pending", "processing", "completed", "failed")
_LOG_STATUSES = ("pending", "sent", "delivered", "failed")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dump(model) -> dict[str, Any]:
    return model.model_dump(mode="json")


class InMemoryDeliveryStore(BaseDeliveryStore):
    """
    Full-featured in-memory store with the same interface as SqlDeliveryStore.
    Returns pydantic models; keeps JSON dicts internally.
    """

    def __init__(self):
        self._queue_items: dict[str, dict] = {}     # id → item dict
        self._logs: dict[str, dict] = {}            # id → log dict
        self._campaigns: dict[str, dict] = {}       # id → campaign dict
        self._customers: dict[str, dict] = {}       # id → customer dict
        self._orders: dict[str, dict] = {}          # id → order dict
        logger.info("inmemory_store_initialized")

    # ── Shared CAS helper ─────────────────────────────────

    @staticmethod
    def _cas(collection: dict[str, dict], model_cls, record_id: str,
             expected_status: ExpectedStatus, fields: dict[str, Any]) -> bool:
        current = collection.get(record_id)
        if current is None:
            return False
        allowed = status_set(expected_status)
        if allowed is not None and current.get("status") not in allowed:
            return False
        fields.setdefault("updated_at", _utcnow())
        merged = model_cls.model_validate({**current, **fields})
        collection[record_id] = _dump(merged)
        return True

    # ── Queue items ───────────────────────────────────────

    async def create_queue_item(self, item: QueueItem) -> QueueItem:
        self._queue_items[item.id] = _dump(item)
        return item

    async def get_queue_item(self, item_id: str) -> Optional[QueueItem]:
        data = self._queue_items.get(item_id)
        return QueueItem.model_validate(data) if data else None

    async def claim_queue_item(self, item_id: str) -> Optional[QueueItem]:
        claimed = self._cas(self._queue_items, QueueItem, item_id, "pending",
                            {"status": "processing"})
        return await self.get_queue_item(item_id) if claimed else None

    async def update_queue_item(self, item_id: str, expected_status: ExpectedStatus = None,
                                **fields) -> bool:
        return self._cas(self._queue_items, QueueItem, item_id, expected_status, fields)

    async def list_queue_items(self, queue_type: str = None, status: str = None,
                               limit: int = None,
                               updated_before: datetime = None) -> list[QueueItem]:
        items = [
            QueueItem.model_validate(d) for d in self._queue_items.values()
            if (queue_type is None or d["type"] == queue_type)
            and (status is None or d["status"] == status)
        ]
        if updated_before is not None:
            items = [i for i in items if i.updated_at < updated_before]
        items.sort(key=lambda i: (-i.priority, i.seq))
        return items[:limit] if limit else items

    async def count_queue_items(self, queue_type: str = None) -> dict[str, int]:
        counts = {s: 0 for s in _QUEUE_STATUSES}
        for d in self._queue_items.values():
            if queue_type is None or d["type"] == queue_type:
                counts[d["status"]] += 1
        return counts

    async def delete_queue_items(self, status: str, processed_before: datetime) -> int:
        doomed = []
        for item_id, d in self._queue_items.items():
            if d["status"] != status:
                continue
            item = QueueItem.model_validate(d)
            stamp = item.processed_at or item.updated_at
            if stamp < processed_before:
                doomed.append(item_id)
        for item_id in doomed:
            del self._queue_items[item_id]
        return len(doomed)

    # ── Communication logs ────────────────────────────────

    async def create_log(self, log: CommunicationLog) -> CommunicationLog:
        self._logs[log.id] = _dump(log)
        return log

    async def get_log(self, log_id: str) -> Optional[CommunicationLog]:
        data = self._logs.get(log_id)
        return CommunicationLog.model_validate(data) if data else None

    async def update_log(self, log_id: str, expected_status: ExpectedStatus = None,
                         **fields) -> bool:
        return self._cas(self._logs, CommunicationLog, log_id, expected_status, fields)

    async def list_logs(self, campaign_id: str = None, status: str = None,
                        offset: int = 0, limit: int = None) -> list[CommunicationLog]:
        logs = [
            CommunicationLog.model_validate(d) for d in self._logs.values()
            if (campaign_id is None or d["campaign_id"] == campaign_id)
            and (status is None or d["status"] == status)
        ]
        logs.sort(key=lambda l: l.created_at, reverse=True)
        end = offset + limit if limit else None
        return logs[offset:end]

    async def count_logs(self, campaign_id: str = None) -> dict[str, int]:
        counts = {s: 0 for s in _LOG_STATUSES}
        for d in self._logs.values():
            if campaign_id is None or d["campaign_id"] == campaign_id:
                counts[d["status"]] += 1
        return counts

    async def apply_receipts(self, receipts: list[Receipt]) -> int:
        seen: set[str] = set()
        for receipt in receipts:
            if receipt.log_id in seen:
                raise ReceiptApplyError(f"Duplicate receipt for log {receipt.log_id}",
                                        receipt.log_id)
            seen.add(receipt.log_id)
            check_receipt(await self.get_log(receipt.log_id), receipt)

        now = _utcnow()
        for receipt in receipts:
            self._cas(self._logs, CommunicationLog, receipt.log_id, "sent",
                      receipt_fields(receipt, now))
        return len(receipts)

    # ── Campaigns ─────────────────────────────────────────

    async def create_campaign(self, campaign: Campaign) -> Campaign:
        self._campaigns[campaign.id] = _dump(campaign)
        return campaign

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        data = self._campaigns.get(campaign_id)
        return Campaign.model_validate(data) if data else None

    async def update_campaign(self, campaign_id: str, expected_status: ExpectedStatus = None,
                              **fields) -> bool:
        return self._cas(self._campaigns, Campaign, campaign_id, expected_status, fields)

    # ── Customers & Orders ────────────────────────────────

    async def get_customer(self, customer_id: str) -> Optional[Customer]:
        data = self._customers.get(customer_id)
        return Customer.model_validate(data) if data else None

    async def upsert_customer(self, customer: Customer) -> Customer:
        existing = self._customers.get(customer.id)
        if existing:
            customer = customer.model_copy(update={
                "created_at": Customer.model_validate(existing).created_at,
                "updated_at": _utcnow(),
            })
        self._customers[customer.id] = _dump(customer)
        return customer

    async def delete_customer(self, customer_id: str) -> bool:
        if self._customers.pop(customer_id, None) is None:
            return False
        for order_id in [oid for oid, o in self._orders.items() if o["customer_id"] == customer_id]:
            del self._orders[order_id]
        return True

    async def get_order(self, order_id: str) -> Optional[Order]:
        data = self._orders.get(order_id)
        return Order.model_validate(data) if data else None

    async def upsert_order(self, order: Order) -> Order:
        existing = self._orders.get(order.id)
        if existing:
            order = order.model_copy(update={
                "created_at": Order.model_validate(existing).created_at,
                "updated_at": _utcnow(),
            })
        self._orders[order.id] = _dump(order)
        return order

    async def delete_order(self, order_id: str) -> bool:
        return self._orders.pop(order_id, None) is not None

    # ── Stats (for debugging) ─────────────────────────────

    def stats(self) -> dict[str, int]:
        return {
            "queue_items": len(self._queue_items),
            "communication_logs": len(self._logs),
            "campaigns": len(self._campaigns),
            "customers": len(self._customers),
            "orders": len(self._orders),
        }
