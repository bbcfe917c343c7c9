"""
Campaign Orchestrator — Launch producer and fan-out handler.

Architecture:
  Launch:   start_campaign() → resolve audience (caller list or segment)
            → enqueue one campaign_process item

  Fan-out:  Campaign Worker → process_campaign()
            → campaign running → one pending log + one delivery_send
              item per distinct customer → campaign completed

  Delivery progress after fan-out is reported by get_campaign_stats();
  ``completed`` means the fan-out finished, not that every message landed.

Fan-out is not transactional. A crash part-way leaves the logs created so
far; the retried item then fails permanently because the campaign is no
longer launchable.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from backend.segments import SegmentResolver
from core.delivery import DeliveryService
from core.errors import BadRequestError, ConflictError, NotFoundError, PermanentJobError
from database.store_base import BaseDeliveryStore
from job_queue.queue_store import QueueStore
from models.schemas import (
    LAUNCHABLE_STATUSES, Campaign, CampaignProcessPayload, CampaignStatus, QueueType,
)

logger = structlog.get_logger()

_CANCELLABLE = (
    CampaignStatus.DRAFT, CampaignStatus.SCHEDULED,
    CampaignStatus.RUNNING, CampaignStatus.PAUSED,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _rate(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole > 0 else 0.0


class CampaignOrchestrator:
    """
    Owns the campaign state machine:

        draft/scheduled ──launch──▶ running ──fan-out done──▶ completed
                                     │  ▲          └──raised──▶ failed
                               pause │  │ resume
                                     ▼  │
                                    paused
        any state before completed ──cancel──▶ cancelled
    """

    def __init__(
        self,
        store: BaseDeliveryStore,
        queue: QueueStore,
        delivery: DeliveryService,
        segments: Optional[SegmentResolver] = None,
    ):
        self.store = store
        self.queue = queue
        self.delivery = delivery
        self.segments = segments

    # ── CRUD ──────────────────────────────────────────────────

    async def create_campaign(
        self,
        name: str,
        message: str,
        segment_id: str = None,
        user_id: str = None,
        scheduled_at: datetime = None,
    ) -> Campaign:
        status = CampaignStatus.SCHEDULED if scheduled_at else CampaignStatus.DRAFT
        campaign = await self.store.create_campaign(Campaign(
            name=name, message=message, segment_id=segment_id,
            user_id=user_id, scheduled_at=scheduled_at, status=status,
        ))
        logger.info("campaign_created", campaign_id=campaign.id, status=status.value)
        return campaign

    async def get_campaign(self, campaign_id: str) -> Campaign:
        campaign = await self.store.get_campaign(campaign_id)
        if campaign is None:
            raise NotFoundError(f"Campaign not found: {campaign_id}",
                                {"campaign_id": campaign_id})
        return campaign

    # ── Launch (producer) ─────────────────────────────────────

    async def start_campaign(self, campaign_id: str,
                             customer_ids: list[str] = None) -> str:
        """Validate the campaign and enqueue its fan-out. Returns the queue item id."""
        campaign = await self.get_campaign(campaign_id)
        if campaign.status not in LAUNCHABLE_STATUSES:
            raise BadRequestError(
                f"Campaign cannot be started from {campaign.status.value}",
                {"campaign_id": campaign_id, "status": campaign.status.value},
            )

        if customer_ids is None:
            if not campaign.segment_id:
                raise BadRequestError("Campaign has no segment and no customer list",
                                      {"campaign_id": campaign_id})
            if self.segments is None:
                raise BadRequestError("No segment resolver configured",
                                      {"campaign_id": campaign_id})
            customer_ids = await self.segments.resolve(campaign.segment_id)

        item_id = await self.queue.enqueue(QueueType.CAMPAIGN_PROCESS, CampaignProcessPayload(
            campaign_id=campaign.id,
            customer_ids=customer_ids,
            message=campaign.message,
            user_id=campaign.user_id,
            segment_id=campaign.segment_id,
        ))
        logger.info("campaign_launch_enqueued", campaign_id=campaign.id,
                    customers=len(customer_ids), item_id=item_id)
        return item_id

    # ── Fan-out (Campaign Worker handler) ─────────────────────

    async def process_campaign(self, payload: CampaignProcessPayload) -> int:
        campaign_id = payload.campaign_id
        campaign = await self.store.get_campaign(campaign_id)
        if campaign is None:
            raise PermanentJobError(f"Campaign not found: {campaign_id}")
        if campaign.status not in LAUNCHABLE_STATUSES:
            raise PermanentJobError(
                f"Campaign {campaign_id} is {campaign.status.value}, not launchable"
            )

        customer_ids = list(dict.fromkeys(payload.customer_ids))
        if not await self.store.update_campaign(
            campaign_id, expected_status=LAUNCHABLE_STATUSES,
            status=CampaignStatus.RUNNING, started_at=_utcnow(),
            audience_size=len(customer_ids),
        ):
            raise PermanentJobError(f"Campaign {campaign_id} changed state during launch")

        logger.info("campaign_fanout_started", campaign_id=campaign_id,
                    customers=len(customer_ids))
        try:
            for customer_id in customer_ids:
                await self.delivery.send_message(
                    campaign_id, customer_id, payload.message, user_id=payload.user_id,
                )
        except Exception as e:
            await self.store.update_campaign(
                campaign_id, expected_status=(CampaignStatus.RUNNING, CampaignStatus.PAUSED),
                status=CampaignStatus.FAILED,
            )
            logger.error("campaign_fanout_failed", campaign_id=campaign_id, error=str(e))
            raise

        # A paused campaign still finishes its fan-out; a cancelled one stays cancelled.
        if not await self.store.update_campaign(
            campaign_id, expected_status=(CampaignStatus.RUNNING, CampaignStatus.PAUSED),
            status=CampaignStatus.COMPLETED, completed_at=_utcnow(),
        ):
            logger.warning("campaign_not_completed", campaign_id=campaign_id,
                           reason="status changed during fan-out")
        else:
            logger.info("campaign_fanout_completed", campaign_id=campaign_id,
                        customers=len(customer_ids))
        return len(customer_ids)

    # ── Operator transitions ──────────────────────────────────

    async def _transition(self, campaign_id: str, allowed: tuple, target: CampaignStatus,
                          action: str) -> Campaign:
        campaign = await self.get_campaign(campaign_id)
        if campaign.status not in allowed:
            raise BadRequestError(
                f"Cannot {action} a campaign that is {campaign.status.value}",
                {"campaign_id": campaign_id, "status": campaign.status.value},
            )
        if not await self.store.update_campaign(campaign_id, expected_status=allowed,
                                                status=target):
            raise ConflictError(f"Campaign {campaign_id} changed state concurrently",
                                {"campaign_id": campaign_id})
        logger.info("campaign_status_changed", campaign_id=campaign_id,
                    previous=campaign.status.value, status=target.value)
        return await self.get_campaign(campaign_id)

    async def pause_campaign(self, campaign_id: str) -> Campaign:
        return await self._transition(campaign_id, (CampaignStatus.RUNNING,),
                                      CampaignStatus.PAUSED, "pause")

    async def resume_campaign(self, campaign_id: str) -> Campaign:
        return await self._transition(campaign_id, (CampaignStatus.PAUSED,),
                                      CampaignStatus.RUNNING, "resume")

    async def cancel_campaign(self, campaign_id: str) -> Campaign:
        return await self._transition(campaign_id, _CANCELLABLE,
                                      CampaignStatus.CANCELLED, "cancel")

    # ── Reporting ─────────────────────────────────────────────

    async def get_campaign_stats(self, campaign_id: str) -> dict[str, Any]:
        campaign = await self.get_campaign(campaign_id)
        counts = await self.store.count_logs(campaign_id)
        total = sum(counts.values())
        return {
            "campaign_id": campaign.id,
            "status": campaign.status.value,
            "audience_size": campaign.audience_size,
            "total_sent": total,
            "pending": counts.get("pending", 0),
            "in_flight": counts.get("sent", 0),
            "delivered": counts.get("delivered", 0),
            "failed": counts.get("failed", 0),
            "delivery_rate": _rate(counts.get("delivered", 0), total),
            "failure_rate": _rate(counts.get("failed", 0), total),
            "settled": counts.get("pending", 0) == 0 and counts.get("sent", 0) == 0,
        }
