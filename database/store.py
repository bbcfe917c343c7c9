"""
SqlDeliveryStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Compare-and-swap transitions are single conditional UPDATE statements;
``rowcount == 1`` means this caller won the transition. No row locks or
dialect-specific SKIP LOCKED are needed.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy import and_, delete, func, or_, select, update

from database.models import (
    CampaignRow, CommunicationLogRow, CustomerRow, OrderRow, QueueItemRow,
)
from database.session import get_session
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


def _column_values(fields: dict[str, Any]) -> dict[str, Any]:
    """Enums are stored by value."""
    return {k: (v.value if isinstance(v, Enum) else v) for k, v in fields.items()}


def _row_values(model) -> dict[str, Any]:
    return _column_values(model.model_dump())


class SqlDeliveryStore(BaseDeliveryStore):
    """
    Persistent delivery store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    async def _cas_update(self, row_cls, record_id: str,
                          expected_status: ExpectedStatus, fields: dict[str, Any]) -> bool:
        values = _column_values(fields)
        values.setdefault("updated_at", _utcnow())
        conditions = [row_cls.id == record_id]
        allowed = status_set(expected_status)
        if allowed is not None:
            conditions.append(row_cls.status.in_(allowed))
        async with get_session() as db:
            result = await db.execute(
                update(row_cls).where(and_(*conditions)).values(**values)
            )
            return result.rowcount == 1

    @staticmethod
    async def _status_counts(db, row_cls, statuses, *conditions) -> dict[str, int]:
        stmt = select(row_cls.status, func.count()).group_by(row_cls.status)
        if conditions:
            stmt = stmt.where(and_(*conditions))
        counts = {s: 0 for s in statuses}
        for status, count in (await db.execute(stmt)).all():
            counts[status] = count
        return counts

    # ── Queue items ────────────────────────────────────────

    async def create_queue_item(self, item: QueueItem) -> QueueItem:
        async with get_session() as db:
            db.add(QueueItemRow(**_row_values(item)))
        return item

    async def get_queue_item(self, item_id: str) -> Optional[QueueItem]:
        async with get_session() as db:
            row = await db.get(QueueItemRow, item_id)
            return QueueItem.model_validate(row.to_dict()) if row else None

    async def claim_queue_item(self, item_id: str) -> Optional[QueueItem]:
        async with get_session() as db:
            result = await db.execute(
                update(QueueItemRow)
                .where(and_(QueueItemRow.id == item_id, QueueItemRow.status == "pending"))
                .values(status="processing", updated_at=_utcnow())
            )
            if result.rowcount != 1:
                return None
            row = await db.get(QueueItemRow, item_id)
            return QueueItem.model_validate(row.to_dict())

    async def update_queue_item(self, item_id: str, expected_status: ExpectedStatus = None,
                                **fields) -> bool:
        return await self._cas_update(QueueItemRow, item_id, expected_status, fields)

    async def list_queue_items(self, queue_type: str = None, status: str = None,
                               limit: int = None,
                               updated_before: datetime = None) -> list[QueueItem]:
        stmt = select(QueueItemRow).order_by(QueueItemRow.priority.desc(), QueueItemRow.seq)
        if queue_type:
            stmt = stmt.where(QueueItemRow.type == queue_type)
        if status:
            stmt = stmt.where(QueueItemRow.status == status)
        if updated_before is not None:
            stmt = stmt.where(QueueItemRow.updated_at < updated_before)
        if limit:
            stmt = stmt.limit(limit)
        async with get_session() as db:
            result = await db.execute(stmt)
            return [QueueItem.model_validate(r.to_dict()) for r in result.scalars()]

    async def count_queue_items(self, queue_type: str = None) -> dict[str, int]:
        conditions = [QueueItemRow.type == queue_type] if queue_type else []
        async with get_session() as db:
            return await self._status_counts(db, QueueItemRow, _QUEUE_STATUSES, *conditions)

    async def delete_queue_items(self, status: str, processed_before: datetime) -> int:
        stmt = delete(QueueItemRow).where(and_(
            QueueItemRow.status == status,
            or_(
                and_(QueueItemRow.processed_at.is_not(None),
                     QueueItemRow.processed_at < processed_before),
                and_(QueueItemRow.processed_at.is_(None),
                     QueueItemRow.updated_at < processed_before),
            ),
        ))
        async with get_session() as db:
            result = await db.execute(stmt)
            return result.rowcount or 0

    # ── Communication logs ─────────────────────────────────

    async def create_log(self, log: CommunicationLog) -> CommunicationLog:
        async with get_session() as db:
            db.add(CommunicationLogRow(**_row_values(log)))
        return log

    async def get_log(self, log_id: str) -> Optional[CommunicationLog]:
        async with get_session() as db:
            row = await db.get(CommunicationLogRow, log_id)
            return CommunicationLog.model_validate(row.to_dict()) if row else None

    async def update_log(self, log_id: str, expected_status: ExpectedStatus = None,
                         **fields) -> bool:
        return await self._cas_update(CommunicationLogRow, log_id, expected_status, fields)

    async def list_logs(self, campaign_id: str = None, status: str = None,
                        offset: int = 0, limit: int = None) -> list[CommunicationLog]:
        stmt = select(CommunicationLogRow).order_by(CommunicationLogRow.created_at.desc())
        if campaign_id:
            stmt = stmt.where(CommunicationLogRow.campaign_id == campaign_id)
        if status:
            stmt = stmt.where(CommunicationLogRow.status == status)
        if offset:
            stmt = stmt.offset(offset)
        if limit:
            stmt = stmt.limit(limit)
        async with get_session() as db:
            result = await db.execute(stmt)
            return [CommunicationLog.model_validate(r.to_dict()) for r in result.scalars()]

    async def count_logs(self, campaign_id: str = None) -> dict[str, int]:
        conditions = [CommunicationLogRow.campaign_id == campaign_id] if campaign_id else []
        async with get_session() as db:
            return await self._status_counts(db, CommunicationLogRow, _LOG_STATUSES, *conditions)

    async def apply_receipts(self, receipts: list[Receipt]) -> int:
        """One transaction: any failed check or lost race rolls back every write."""
        now = _utcnow()
        seen: set[str] = set()
        async with get_session() as db:
            for receipt in receipts:
                if receipt.log_id in seen:
                    raise ReceiptApplyError(f"Duplicate receipt for log {receipt.log_id}",
                                            receipt.log_id)
                seen.add(receipt.log_id)
                row = await db.get(CommunicationLogRow, receipt.log_id)
                log = CommunicationLog.model_validate(row.to_dict()) if row else None
                check_receipt(log, receipt)

                result = await db.execute(
                    update(CommunicationLogRow)
                    .where(and_(CommunicationLogRow.id == receipt.log_id,
                                CommunicationLogRow.status == "sent"))
                    .values(**_column_values(receipt_fields(receipt, now)))
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise ReceiptApplyError(f"Log {receipt.log_id} changed concurrently",
                                            receipt.log_id)
        return len(receipts)

    # ── Campaigns ──────────────────────────────────────────

    async def create_campaign(self, campaign: Campaign) -> Campaign:
        async with get_session() as db:
            db.add(CampaignRow(**_row_values(campaign)))
        return campaign

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        async with get_session() as db:
            row = await db.get(CampaignRow, campaign_id)
            return Campaign.model_validate(row.to_dict()) if row else None

    async def update_campaign(self, campaign_id: str, expected_status: ExpectedStatus = None,
                              **fields) -> bool:
        return await self._cas_update(CampaignRow, campaign_id, expected_status, fields)

    # ── Customers & Orders ─────────────────────────────────

    async def get_customer(self, customer_id: str) -> Optional[Customer]:
        async with get_session() as db:
            row = await db.get(CustomerRow, customer_id)
            return Customer.model_validate(row.to_dict()) if row else None

    async def upsert_customer(self, customer: Customer) -> Customer:
        async with get_session() as db:
            existing = await db.get(CustomerRow, customer.id)
            if existing:
                existing.name = customer.name
                existing.email = customer.email
                existing.phone = customer.phone
                existing.attributes = customer.attributes
                existing.updated_at = _utcnow()
            else:
                db.add(CustomerRow(**_row_values(customer)))
        return customer

    async def delete_customer(self, customer_id: str) -> bool:
        async with get_session() as db:
            await db.execute(delete(OrderRow).where(OrderRow.customer_id == customer_id))
            result = await db.execute(delete(CustomerRow).where(CustomerRow.id == customer_id))
            return result.rowcount == 1

    async def get_order(self, order_id: str) -> Optional[Order]:
        async with get_session() as db:
            row = await db.get(OrderRow, order_id)
            return Order.model_validate(row.to_dict()) if row else None

    async def upsert_order(self, order: Order) -> Order:
        async with get_session() as db:
            existing = await db.get(OrderRow, order.id)
            if existing:
                existing.customer_id = order.customer_id
                existing.amount = order.amount
                existing.status = order.status
                existing.items = order.items
                existing.order_date = order.order_date
                existing.updated_at = _utcnow()
            else:
                db.add(OrderRow(**_row_values(order)))
        return order

    async def delete_order(self, order_id: str) -> bool:
        async with get_session() as db:
            result = await db.execute(delete(OrderRow).where(OrderRow.id == order_id))
            return result.rowcount == 1
