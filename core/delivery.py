"""
Delivery Service — Delivery Worker handler and receipt application.

Log state per (campaign, customer):

    pending ──deliver──▶ sent ──receipt──▶ delivered
                          │  └──receipt──▶ failed
                          └──reject/timeout──▶ failed

Every transition is a compare-and-swap on the log status, so a duplicate
queue delivery or a late receipt can never move a log backwards.
"""
from __future__ import annotations

import math
import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from channels.base import DeliveryGateway
from core.errors import ConflictError, NotFoundError, PermanentJobError
from database.store_base import BaseDeliveryStore, receipt_fields
from job_queue.queue_store import QueueStore
from models.schemas import (
    CommunicationLog, DeliverySendPayload, LogStatus, QueueType, Receipt,
    ReceiptProcessPayload, ReceiptStatus, VendorRequest,
)

logger = structlog.get_logger()

_TERMINAL = (LogStatus.DELIVERED, LogStatus.FAILED)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _rate(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole > 0 else 0.0


class DeliveryService:

    def __init__(self, store: BaseDeliveryStore, queue: QueueStore, gateway: DeliveryGateway):
        self.store = store
        self.queue = queue
        self.gateway = gateway

    # ── Producer ──────────────────────────────────────────────

    async def send_message(self, campaign_id: str, customer_id: str, message: str,
                           user_id: Optional[str] = None) -> CommunicationLog:
        """Create a pending log and enqueue its delivery."""
        log = await self.store.create_log(CommunicationLog(
            campaign_id=campaign_id, customer_id=customer_id,
            user_id=user_id, message=message,
        ))
        await self.queue.enqueue(QueueType.DELIVERY_SEND, DeliverySendPayload(
            log_id=log.id, campaign_id=campaign_id, customer_id=customer_id,
            message=message, user_id=user_id,
        ))
        return log

    # ── Delivery Worker handler ───────────────────────────────

    async def process_delivery(self, payload: DeliverySendPayload) -> None:
        log_id = payload.log_id
        log = await self.store.get_log(log_id)
        if log is None:
            raise PermanentJobError(f"Communication log not found: {log_id}")

        if log.status != LogStatus.PENDING:
            logger.warning("delivery_skipped_not_pending", log_id=log_id, status=log.status.value)
            return

        if not await self.store.update_log(log_id, expected_status=LogStatus.PENDING,
                                           status=LogStatus.SENT, sent_at=_utcnow()):
            logger.warning("delivery_skipped_lost_race", log_id=log_id)
            return

        try:
            customer = await self.store.get_customer(log.customer_id)
            response = await self.gateway.send(VendorRequest(
                log_id=log_id,
                campaign_id=log.campaign_id,
                customer_id=log.customer_id,
                customer_name=customer.name if customer else "",
                customer_email=customer.email if customer else None,
                message=log.message,
            ))

            if response.accepted:
                await self.store.update_log(log_id, expected_status=LogStatus.SENT,
                                            vendor_id=response.vendor_id)
                # The simulated vendor's asynchronous outcome; real vendors
                # call the receipt endpoint instead.
                await self.queue.enqueue(QueueType.RECEIPT_PROCESS, ReceiptProcessPayload(
                    log_id=log_id, vendor_id=response.vendor_id,
                    status=ReceiptStatus.DELIVERED,
                ))
                logger.info("delivery_sent", log_id=log_id, vendor_id=response.vendor_id)
            else:
                await self.store.update_log(
                    log_id, expected_status=LogStatus.SENT,
                    status=LogStatus.FAILED, failed_at=_utcnow(),
                    failure_reason=response.error or "Vendor API error",
                )
                logger.warning("delivery_rejected", log_id=log_id, error=response.error)
        except Exception as e:
            await self.store.update_log(
                log_id, expected_status=LogStatus.SENT,
                status=LogStatus.FAILED, failed_at=_utcnow(),
                failure_reason=str(e) or type(e).__name__,
            )
            logger.error("delivery_error", log_id=log_id, error=str(e))
            raise

    # ── Receipts ──────────────────────────────────────────────

    async def apply_receipt_batch(self, receipts: list[Receipt]) -> int:
        """All-or-nothing application; raises ReceiptApplyError on any bad record."""
        applied = await self.store.apply_receipts(receipts)
        logger.info("receipt_batch_applied", count=applied)
        return applied

    async def process_receipt(self, receipt: Receipt) -> bool:
        """
        Apply one receipt. Returns False when it was skipped.

        Only logs in ``sent`` accept a receipt. Receipts for terminal logs are
        duplicates or arrived out of order and are skipped; a vendor id that
        contradicts the recorded one is an error.
        """
        log = await self.store.get_log(receipt.log_id)
        if log is None:
            raise NotFoundError(f"Communication log not found: {receipt.log_id}",
                                {"log_id": receipt.log_id})

        if log.vendor_id and log.vendor_id != receipt.vendor_id:
            raise ConflictError(
                f"Vendor id mismatch for log {log.id}",
                {"log_id": log.id, "recorded": log.vendor_id, "received": receipt.vendor_id},
            )

        if log.status != LogStatus.SENT:
            event = "receipt_duplicate" if log.status in _TERMINAL else "receipt_before_send"
            logger.warning(event, log_id=log.id, status=log.status.value,
                           receipt_status=receipt.status.value)
            return False

        applied = await self.store.update_log(log.id, expected_status=LogStatus.SENT,
                                              **receipt_fields(receipt, _utcnow()))
        if applied:
            logger.info("receipt_applied", log_id=log.id, vendor_id=receipt.vendor_id,
                        status=receipt.status.value)
        else:
            logger.warning("receipt_lost_race", log_id=log.id)
        return applied

    # ── Operator actions ──────────────────────────────────────

    async def retry_failed_delivery(self, log_id: str) -> CommunicationLog:
        """Reset a failed log to pending and enqueue a fresh delivery attempt."""
        log = await self.store.get_log(log_id)
        if log is None:
            raise NotFoundError(f"Communication log not found: {log_id}", {"log_id": log_id})
        if log.status != LogStatus.FAILED:
            raise ConflictError(f"Only failed deliveries can be retried; log is {log.status.value}",
                                {"log_id": log_id})

        if not await self.store.update_log(
            log_id, expected_status=LogStatus.FAILED,
            status=LogStatus.PENDING, vendor_id=None, sent_at=None,
            failed_at=None, failure_reason=None,
        ):
            raise ConflictError(f"Log {log_id} changed while being reset", {"log_id": log_id})

        await self.queue.enqueue(QueueType.DELIVERY_SEND, DeliverySendPayload(
            log_id=log_id, campaign_id=log.campaign_id, customer_id=log.customer_id,
            message=log.message, user_id=log.user_id,
        ))
        logger.info("delivery_retry_enqueued", log_id=log_id)
        return await self.store.get_log(log_id)

    # ── Reporting ─────────────────────────────────────────────

    async def get_delivery_stats(self, campaign_id: str = None) -> dict[str, Any]:
        counts = await self.store.count_logs(campaign_id)
        processed = counts["sent"] + counts["delivered"] + counts["failed"]
        return {
            "total_sent": counts["sent"],
            "total_delivered": counts["delivered"],
            "total_failed": counts["failed"],
            "total_pending": counts["pending"],
            "delivery_rate": _rate(counts["delivered"], processed),
            "failure_rate": _rate(counts["failed"], processed),
        }

    async def get_delivery_logs(self, campaign_id: str = None, status: str = None,
                                page: int = 1, limit: int = 10) -> dict[str, Any]:
        page = max(page, 1)
        counts = await self.store.count_logs(campaign_id)
        total = counts.get(status, 0) if status else sum(counts.values())
        logs = await self.store.list_logs(campaign_id=campaign_id, status=status,
                                          offset=(page - 1) * limit, limit=limit)
        return {
            "logs": [log.model_dump(mode="json") for log in logs],
            "total": total,
            "page": page,
            "limit": limit,
            "pages": math.ceil(total / limit) if limit else 1,
        }
