"""
Core data models for the campaign delivery pipeline.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from core.errors import InvalidPayloadError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class QueueType(str, Enum):
    CUSTOMER_INGEST = "customer_ingest"
    ORDER_INGEST = "order_ingest"
    CAMPAIGN_PROCESS = "campaign_process"
    DELIVERY_SEND = "delivery_send"
    RECEIPT_PROCESS = "receipt_process"


class QueueItemStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class LogStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"


class CampaignStatus(str, Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class IngestAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ReceiptStatus(str, Enum):
    DELIVERED = "delivered"
    FAILED = "failed"


LAUNCHABLE_STATUSES = (CampaignStatus.DRAFT, CampaignStatus.SCHEDULED)


class _Record(BaseModel):
    """Persisted record. Naive datetimes read back from SQLite are UTC."""

    @field_validator("*", mode="after")
    @classmethod
    def _attach_utc(cls, value: Any) -> Any:
        if isinstance(value, datetime) and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


# ──────────────────────────────────────────────────────────────
#  Queue Item — one unit of deferred work
# ──────────────────────────────────────────────────────────────

class QueueItem(_Record):
    id: str = Field(default_factory=_new_id)
    type: QueueType
    payload: dict[str, Any] = {}
    priority: int = 0                          # higher is dequeued first
    seq: int = 0                               # arrival order within a priority
    status: QueueItemStatus = QueueItemStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    last_error: Optional[str] = None
    available_at: Optional[datetime] = None    # not claimable before this time
    processed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Communication Log — one per (campaign, customer) delivery
# ──────────────────────────────────────────────────────────────

class CommunicationLog(_Record):
    id: str = Field(default_factory=_new_id)
    campaign_id: str
    customer_id: str
    user_id: Optional[str] = None
    message: str
    status: LogStatus = LogStatus.PENDING
    vendor_id: Optional[str] = None
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Campaign
# ──────────────────────────────────────────────────────────────

class Campaign(_Record):
    id: str = Field(default_factory=_new_id)
    name: str
    message: str
    segment_id: Optional[str] = None
    user_id: Optional[str] = None
    status: CampaignStatus = CampaignStatus.DRAFT
    audience_size: int = 0
    scheduled_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Customer / Order — records owned by the CRM, written by ingest
# ──────────────────────────────────────────────────────────────

class Customer(_Record):
    id: str = Field(default_factory=_new_id)
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    attributes: dict[str, Any] = {}
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class Order(_Record):
    id: str = Field(default_factory=_new_id)
    customer_id: str
    amount: float = 0.0
    status: str = "pending"
    items: list[dict[str, Any]] = []
    order_date: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Vendor wire types
# ──────────────────────────────────────────────────────────────

class VendorRequest(BaseModel):
    """What the Delivery Gateway sends to the vendor for one log entry."""
    log_id: str
    campaign_id: str
    customer_id: str
    customer_name: str = ""
    customer_email: Optional[str] = None
    message: str


class VendorResponse(BaseModel):
    """Synchronous acknowledgement from the vendor."""
    accepted: bool
    vendor_id: Optional[str] = None
    error: Optional[str] = None


class Receipt(BaseModel):
    """Asynchronous delivery outcome, correlated to a log by log_id."""
    log_id: str
    vendor_id: str
    status: ReceiptStatus
    failure_reason: Optional[str] = None


# ──────────────────────────────────────────────────────────────
#  Queue payloads — one concrete shape per queue type
# ──────────────────────────────────────────────────────────────

class _IngestPayload(BaseModel):
    action: IngestAction
    data: dict[str, Any]

    @model_validator(mode="after")
    def _id_required_for_mutation(self):
        if self.action in (IngestAction.UPDATE, IngestAction.DELETE) and not self.data.get("id"):
            raise ValueError(f"data.id is required for {self.action.value}")
        return self


class CustomerIngestPayload(_IngestPayload):
    pass


class OrderIngestPayload(_IngestPayload):
    pass


class CampaignProcessPayload(BaseModel):
    campaign_id: str
    customer_ids: list[str]
    message: str
    user_id: Optional[str] = None
    segment_id: Optional[str] = None


class DeliverySendPayload(BaseModel):
    log_id: str
    campaign_id: str
    customer_id: str
    message: str
    user_id: Optional[str] = None


class ReceiptProcessPayload(Receipt):
    pass


QueuePayload = Union[
    CustomerIngestPayload, OrderIngestPayload, CampaignProcessPayload,
    DeliverySendPayload, ReceiptProcessPayload,
]

PAYLOAD_MODELS: dict[QueueType, type[BaseModel]] = {
    QueueType.CUSTOMER_INGEST: CustomerIngestPayload,
    QueueType.ORDER_INGEST: OrderIngestPayload,
    QueueType.CAMPAIGN_PROCESS: CampaignProcessPayload,
    QueueType.DELIVERY_SEND: DeliverySendPayload,
    QueueType.RECEIPT_PROCESS: ReceiptProcessPayload,
}


def decode_payload(queue_type: Union[QueueType, str], data: Any) -> QueuePayload:
    """Validate raw payload data against the shape registered for queue_type."""
    try:
        qtype = QueueType(queue_type)
    except ValueError:
        raise InvalidPayloadError(f"Unknown queue type: {queue_type}")

    model = PAYLOAD_MODELS[qtype]
    if isinstance(data, model):
        return data
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise InvalidPayloadError(
            f"Invalid payload for {qtype.value}",
            details={"errors": e.errors(include_url=False, include_context=False)},
        )
