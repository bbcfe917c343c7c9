"""
FastAPI Application — Producer-facing REST API for the delivery pipeline.

Provides:
- Ingest endpoints queueing customer/order mutations (202 Accepted)
- Campaign creation, launch and status transitions
- Delivery receipt intake, delivery stats and log listing
- Queue diagnostics and operator actions (retry failed, clear completed)
- Worker status

The pipeline is built and started in the lifespan unless one was passed to
create_app(), in which case the caller owns its lifecycle.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before anything reads os.environ
from dotenv import load_dotenv
load_dotenv()

from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from api.error_handlers import register_exception_handlers
from config.settings import get_settings
from core.errors import BadRequestError
from core.pipeline import DeliveryPipeline
from models.schemas import (
    IngestAction, LogStatus, QueueType, ReceiptProcessPayload, ReceiptStatus, decode_payload,
)
from utils.logging import configure_logging

logger = structlog.get_logger()

MAX_INGEST_BATCH = 1000
MAX_RECEIPT_BATCH = 100


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class IngestRequest(BaseModel):
    action: IngestAction = IngestAction.CREATE
    data: dict[str, Any]


class CustomerBatchRequest(BaseModel):
    action: IngestAction = IngestAction.CREATE
    customers: list[dict[str, Any]]


class OrderBatchRequest(BaseModel):
    action: IngestAction = IngestAction.CREATE
    orders: list[dict[str, Any]]


class CampaignCreateRequest(BaseModel):
    name: str
    message: str
    segment_id: Optional[str] = None
    user_id: Optional[str] = None
    scheduled_at: Optional[datetime] = None


class CampaignStartRequest(BaseModel):
    customer_ids: Optional[list[str]] = None


class ReceiptRequest(BaseModel):
    # Vendors post camelCase (logId, vendorId, failureReason)
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    log_id: str
    vendor_id: str
    status: ReceiptStatus
    failure_reason: Optional[str] = None


class ReceiptBatchRequest(BaseModel):
    receipts: list[ReceiptRequest]


def _pipeline(request: Request) -> DeliveryPipeline:
    return request.app.state.pipeline


def _check_batch(items: list, limit: int, noun: str) -> None:
    if not items:
        raise BadRequestError(f"{noun.capitalize()} array is required and must not be empty")
    if len(items) > limit:
        raise BadRequestError(f"Maximum {limit} {noun} allowed per batch",
                              {"received": len(items), "limit": limit})


router = APIRouter()


# ══════════════════════════════════════════════════════════════
#  HEALTH & DIAGNOSTICS
# ══════════════════════════════════════════════════════════════

@router.get("/health")
async def health(request: Request):
    pipeline = _pipeline(request)
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "workers": {w.name: w.running for w in pipeline.workers},
    }


@router.get("/api/v1/workers/status")
async def workers_status(request: Request):
    return await _pipeline(request).status()


# ══════════════════════════════════════════════════════════════
#  QUEUE
# ══════════════════════════════════════════════════════════════

@router.get("/api/v1/queue/stats")
async def queue_stats(request: Request, type: Optional[QueueType] = None):
    return await _pipeline(request).queue.stats(type)


@router.get("/api/v1/queue/failed")
async def queue_failed(
    request: Request,
    type: Optional[QueueType] = None,
    limit: int = Query(100, ge=1, le=1000),
):
    items = await _pipeline(request).queue.get_failed(type, limit=limit)
    return {"items": [i.model_dump(mode="json") for i in items], "count": len(items)}


@router.post("/api/v1/queue/items/{item_id}/retry")
async def queue_retry_item(request: Request, item_id: str):
    item = await _pipeline(request).queue.retry_failed(item_id)
    return item.model_dump(mode="json")


@router.post("/api/v1/queue/clear-completed")
async def queue_clear_completed(request: Request,
                                older_than_hours: float = Query(24, ge=0)):
    removed = await _pipeline(request).queue.clear_completed(older_than_hours)
    return {"removed": removed}


# ══════════════════════════════════════════════════════════════
#  INGEST
# ══════════════════════════════════════════════════════════════

async def _enqueue_ingest(pipeline: DeliveryPipeline, queue_type: QueueType,
                          action: IngestAction, records: list[dict[str, Any]]) -> list[str]:
    # Validate every record before enqueueing any so a bad batch queues nothing
    payloads = [{"action": action.value, "data": r} for r in records]
    for p in payloads:
        decode_payload(queue_type, p)
    return [await pipeline.queue.enqueue(queue_type, p) for p in payloads]


@router.post("/api/v1/ingest/customers", status_code=202)
async def ingest_customer(request: Request, req: IngestRequest):
    ids = await _enqueue_ingest(_pipeline(request), QueueType.CUSTOMER_INGEST,
                                req.action, [req.data])
    return {"message": "Customer ingestion queued", "item_id": ids[0]}


@router.post("/api/v1/ingest/customers/batch", status_code=202)
async def ingest_customers_batch(request: Request, req: CustomerBatchRequest):
    _check_batch(req.customers, MAX_INGEST_BATCH, "customers")
    ids = await _enqueue_ingest(_pipeline(request), QueueType.CUSTOMER_INGEST,
                                req.action, req.customers)
    return {"message": "Customer batch queued", "queued": len(ids), "item_ids": ids}


@router.post("/api/v1/ingest/orders", status_code=202)
async def ingest_order(request: Request, req: IngestRequest):
    ids = await _enqueue_ingest(_pipeline(request), QueueType.ORDER_INGEST,
                                req.action, [req.data])
    return {"message": "Order ingestion queued", "item_id": ids[0]}


@router.post("/api/v1/ingest/orders/batch", status_code=202)
async def ingest_orders_batch(request: Request, req: OrderBatchRequest):
    _check_batch(req.orders, MAX_INGEST_BATCH, "orders")
    ids = await _enqueue_ingest(_pipeline(request), QueueType.ORDER_INGEST,
                                req.action, req.orders)
    return {"message": "Order batch queued", "queued": len(ids), "item_ids": ids}


# ══════════════════════════════════════════════════════════════
#  CAMPAIGNS
# ══════════════════════════════════════════════════════════════

@router.post("/api/v1/campaigns", status_code=201)
async def create_campaign(request: Request, req: CampaignCreateRequest):
    campaign = await _pipeline(request).orchestrator.create_campaign(
        name=req.name, message=req.message, segment_id=req.segment_id,
        user_id=req.user_id, scheduled_at=req.scheduled_at,
    )
    return campaign.model_dump(mode="json")


@router.get("/api/v1/campaigns/{campaign_id}")
async def get_campaign(request: Request, campaign_id: str):
    campaign = await _pipeline(request).orchestrator.get_campaign(campaign_id)
    return campaign.model_dump(mode="json")


@router.get("/api/v1/campaigns/{campaign_id}/stats")
async def get_campaign_stats(request: Request, campaign_id: str):
    return await _pipeline(request).orchestrator.get_campaign_stats(campaign_id)


@router.post("/api/v1/campaigns/{campaign_id}/start", status_code=202)
async def start_campaign(request: Request, campaign_id: str,
                         req: Optional[CampaignStartRequest] = None):
    customer_ids = req.customer_ids if req else None
    item_id = await _pipeline(request).orchestrator.start_campaign(campaign_id, customer_ids)
    return {"message": "Campaign launch queued", "campaign_id": campaign_id, "item_id": item_id}


@router.post("/api/v1/campaigns/{campaign_id}/pause")
async def pause_campaign(request: Request, campaign_id: str):
    campaign = await _pipeline(request).orchestrator.pause_campaign(campaign_id)
    return campaign.model_dump(mode="json")


@router.post("/api/v1/campaigns/{campaign_id}/resume")
async def resume_campaign(request: Request, campaign_id: str):
    campaign = await _pipeline(request).orchestrator.resume_campaign(campaign_id)
    return campaign.model_dump(mode="json")


@router.post("/api/v1/campaigns/{campaign_id}/cancel")
async def cancel_campaign(request: Request, campaign_id: str):
    campaign = await _pipeline(request).orchestrator.cancel_campaign(campaign_id)
    return campaign.model_dump(mode="json")


# ══════════════════════════════════════════════════════════════
#  DELIVERY
# ══════════════════════════════════════════════════════════════

@router.post("/api/v1/delivery/receipts", status_code=202)
async def receive_receipt(request: Request, req: ReceiptRequest):
    item_id = await _pipeline(request).queue.enqueue(
        QueueType.RECEIPT_PROCESS, ReceiptProcessPayload(**req.model_dump()),
    )
    return {"message": "Delivery receipt queued", "item_id": item_id}


@router.post("/api/v1/delivery/receipts/batch", status_code=202)
async def receive_receipt_batch(request: Request, req: ReceiptBatchRequest):
    _check_batch(req.receipts, MAX_RECEIPT_BATCH, "receipts")
    queue = _pipeline(request).queue
    ids = [
        await queue.enqueue(QueueType.RECEIPT_PROCESS, ReceiptProcessPayload(**r.model_dump()))
        for r in req.receipts
    ]
    return {"message": "Delivery receipts queued", "queued": len(ids), "item_ids": ids}


@router.get("/api/v1/delivery/stats")
async def delivery_stats(request: Request, campaign_id: Optional[str] = None):
    return await _pipeline(request).delivery.get_delivery_stats(campaign_id)


@router.get("/api/v1/delivery/logs")
async def delivery_logs(
    request: Request,
    campaign_id: Optional[str] = None,
    status: Optional[LogStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
):
    return await _pipeline(request).delivery.get_delivery_logs(
        campaign_id=campaign_id,
        status=status.value if status else None,
        page=page, limit=limit,
    )


@router.post("/api/v1/delivery/logs/{log_id}/retry", status_code=202)
async def retry_delivery(request: Request, log_id: str):
    log = await _pipeline(request).delivery.retry_failed_delivery(log_id)
    return log.model_dump(mode="json")


# ══════════════════════════════════════════════════════════════
#  App
# ══════════════════════════════════════════════════════════════

def create_app(pipeline: Optional[DeliveryPipeline] = None) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.pipeline is None
        if owned:
            settings = get_settings()
            configure_logging(settings.logging)
            app.state.pipeline = DeliveryPipeline(settings)
            await app.state.pipeline.start()
        logger.info("campaign_pipeline_api_started", owned_pipeline=owned)
        yield
        if owned:
            await app.state.pipeline.stop()
            app.state.pipeline = None
        logger.info("campaign_pipeline_api_stopped")

    app = FastAPI(
        title="Campaign Pipeline API",
        description="Asynchronous campaign delivery pipeline",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.pipeline = pipeline

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)
    app.include_router(router)
    return app


app = create_app()


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
