"""
Ingest Service — Ingest Worker handler for customer and order mutations.

Bulk imports land on the customer_ingest / order_ingest queues through the
API; this handler applies each one to the collaborator store. Mutations on
records that do not exist are permanent failures and are not retried.
"""
from __future__ import annotations

import structlog
from typing import Any, Union

from pydantic import ValidationError

from core.errors import PermanentJobError
from database.store_base import BaseDeliveryStore
from models.schemas import (
    Customer, CustomerIngestPayload, IngestAction, Order, OrderIngestPayload,
)

logger = structlog.get_logger()

_SYSTEM_FIELDS = ("created_at", "updated_at")


def _clean(data: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if k not in _SYSTEM_FIELDS}


class IngestService:

    def __init__(self, store: BaseDeliveryStore):
        self.store = store

    async def handle(self, payload: Union[CustomerIngestPayload, OrderIngestPayload]) -> None:
        if isinstance(payload, CustomerIngestPayload):
            await self.ingest_customer(payload)
        elif isinstance(payload, OrderIngestPayload):
            await self.ingest_order(payload)
        else:
            raise PermanentJobError(f"Unsupported ingest payload: {type(payload).__name__}")

    # ── Customers ─────────────────────────────────────────────

    async def ingest_customer(self, payload: CustomerIngestPayload) -> None:
        data = _clean(payload.data)

        if payload.action == IngestAction.DELETE:
            if not await self.store.delete_customer(data["id"]):
                raise PermanentJobError(f"Customer not found: {data['id']}")
            logger.info("customer_deleted", customer_id=data["id"])
            return

        if payload.action == IngestAction.UPDATE:
            existing = await self.store.get_customer(data["id"])
            if existing is None:
                raise PermanentJobError(f"Customer not found: {data['id']}")
            data = {**existing.model_dump(), **data}

        try:
            customer = Customer.model_validate(data)
        except ValidationError as e:
            raise PermanentJobError(f"Invalid customer record: {e.error_count()} errors")

        await self.store.upsert_customer(customer)
        logger.info("customer_ingested", customer_id=customer.id, action=payload.action.value)

    # ── Orders ────────────────────────────────────────────────

    async def ingest_order(self, payload: OrderIngestPayload) -> None:
        data = _clean(payload.data)

        if payload.action == IngestAction.DELETE:
            if not await self.store.delete_order(data["id"]):
                raise PermanentJobError(f"Order not found: {data['id']}")
            logger.info("order_deleted", order_id=data["id"])
            return

        if payload.action == IngestAction.UPDATE:
            existing = await self.store.get_order(data["id"])
            if existing is None:
                raise PermanentJobError(f"Order not found: {data['id']}")
            data = {**existing.model_dump(), **data}

        try:
            order = Order.model_validate(data)
        except ValidationError as e:
            raise PermanentJobError(f"Invalid order record: {e.error_count()} errors")

        if await self.store.get_customer(order.customer_id) is None:
            raise PermanentJobError(f"Customer not found for order: {order.customer_id}")

        await self.store.upsert_order(order)
        logger.info("order_ingested", order_id=order.id, customer_id=order.customer_id,
                    action=payload.action.value)
