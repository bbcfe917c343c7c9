"""
Abstract Delivery Store — Interface for all storage backends.

Implementations:
  - SqlDeliveryStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryDeliveryStore (dict-based, single-process, no persistence)
  - FileDeliveryStore     (JSON files on disk, single-process, durable)

Status transitions go through compare-and-swap updates: callers pass
``expected_status`` and get False back when the record was not in that
state. The Queue Store and services build their lifecycle guarantees on
this, so every backend must apply the check and the write atomically.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Optional, Union

from models.schemas import (
    Campaign, CommunicationLog, Customer, Order, QueueItem, Receipt,
)

# A single status or any of several
ExpectedStatus = Union[str, Enum, Iterable[Union[str, Enum]], None]


def status_set(expected: ExpectedStatus) -> Optional[set[str]]:
    """Normalise an expected_status argument to a set of raw values."""
    if expected is None:
        return None
    if isinstance(expected, (str, Enum)):
        expected = [expected]
    return {e.value if isinstance(e, Enum) else e for e in expected}


class ReceiptApplyError(Exception):
    """A receipt batch could not be applied as a whole; nothing was written."""

    def __init__(self, message: str, log_id: str = ""):
        self.log_id = log_id
        super().__init__(message)


class BaseDeliveryStore(ABC):
    """Interface that all delivery store backends must implement."""

    # ── Queue items ───────────────────────────────────────────

    @abstractmethod
    async def create_queue_item(self, item: QueueItem) -> QueueItem:
        ...

    @abstractmethod
    async def get_queue_item(self, item_id: str) -> Optional[QueueItem]:
        ...

    @abstractmethod
    async def claim_queue_item(self, item_id: str) -> Optional[QueueItem]:
        """Atomically move a pending item to processing. None if not pending."""
        ...

    @abstractmethod
    async def update_queue_item(self, item_id: str, expected_status: ExpectedStatus = None,
                                **fields) -> bool:
        ...

    @abstractmethod
    async def list_queue_items(self, queue_type: str = None, status: str = None,
                               limit: int = None,
                               updated_before: datetime = None) -> list[QueueItem]:
        """Items ordered by priority (desc) then seq (asc)."""
        ...

    @abstractmethod
    async def count_queue_items(self, queue_type: str = None) -> dict[str, int]:
        """Counts per status."""
        ...

    @abstractmethod
    async def delete_queue_items(self, status: str, processed_before: datetime) -> int:
        ...

    # ── Communication logs ────────────────────────────────────

    @abstractmethod
    async def create_log(self, log: CommunicationLog) -> CommunicationLog:
        ...

    @abstractmethod
    async def get_log(self, log_id: str) -> Optional[CommunicationLog]:
        ...

    @abstractmethod
    async def update_log(self, log_id: str, expected_status: ExpectedStatus = None,
                         **fields) -> bool:
        ...

    @abstractmethod
    async def list_logs(self, campaign_id: str = None, status: str = None,
                        offset: int = 0, limit: int = None) -> list[CommunicationLog]:
        """Logs ordered newest first."""
        ...

    @abstractmethod
    async def count_logs(self, campaign_id: str = None) -> dict[str, int]:
        """Counts per status."""
        ...

    @abstractmethod
    async def apply_receipts(self, receipts: list[Receipt]) -> int:
        """
        Apply a batch of receipts all-or-nothing.

        Every receipt's log must exist, be in ``sent`` and carry either no
        vendor_id or the receipt's vendor_id; otherwise ReceiptApplyError is
        raised and no log is changed. Returns the number applied.
        """
        ...

    # ── Campaigns ─────────────────────────────────────────────

    @abstractmethod
    async def create_campaign(self, campaign: Campaign) -> Campaign:
        ...

    @abstractmethod
    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        ...

    @abstractmethod
    async def update_campaign(self, campaign_id: str, expected_status: ExpectedStatus = None,
                              **fields) -> bool:
        ...

    # ── Customers & Orders ────────────────────────────────────

    @abstractmethod
    async def get_customer(self, customer_id: str) -> Optional[Customer]:
        ...

    @abstractmethod
    async def upsert_customer(self, customer: Customer) -> Customer:
        ...

    @abstractmethod
    async def delete_customer(self, customer_id: str) -> bool:
        """Delete a customer and its orders. False if it did not exist."""
        ...

    @abstractmethod
    async def get_order(self, order_id: str) -> Optional[Order]:
        ...

    @abstractmethod
    async def upsert_order(self, order: Order) -> Order:
        ...

    @abstractmethod
    async def delete_order(self, order_id: str) -> bool:
        ...

    # ── Lifecycle ─────────────────────────────────────────────

    async def close(self) -> None:
        """Release backend resources. Default: nothing to release."""
        return None


def receipt_fields(receipt: Receipt, now: datetime) -> dict[str, Any]:
    """Log fields written when a receipt is applied."""
    fields: dict[str, Any] = {"vendor_id": receipt.vendor_id, "updated_at": now}
    if receipt.status.value == "delivered":
        fields.update(status="delivered", delivered_at=now)
    else:
        fields.update(status="failed", failed_at=now,
                      failure_reason=receipt.failure_reason or "Delivery failed")
    return fields


def check_receipt(log: Optional[CommunicationLog], receipt: Receipt) -> None:
    """Raise ReceiptApplyError when the receipt may not be applied to log."""
    if log is None:
        raise ReceiptApplyError(f"Log not found: {receipt.log_id}", receipt.log_id)
    if log.status.value != "sent":
        raise ReceiptApplyError(
            f"Log {log.id} is {log.status.value}, receipts apply only to sent logs",
            receipt.log_id,
        )
    if log.vendor_id and log.vendor_id != receipt.vendor_id:
        raise ReceiptApplyError(
            f"Vendor id mismatch for log {log.id}: {log.vendor_id} != {receipt.vendor_id}",
            receipt.log_id,
        )
