"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB; on PG the dialect maps
    JSON to jsonb automatically; on MySQL it uses native JSON; on SQLite
    it serializes to TEXT.
  - String primary keys (uuid hex), no database-specific sequences.
  - queue_items.seq is a BigInteger arrival stamp, not an autoincrement,
    so FIFO order survives across backends and restarts.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    BigInteger, String, Integer, Float, DateTime, Text, ForeignKey,
    Index, JSON,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Queue Items
# ──────────────────────────────────────────────────────────────

class QueueItemRow(Base):
    __tablename__ = "queue_items"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    payload: Mapped[Any] = mapped_column(JSON, default=dict)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    seq: Mapped[int] = mapped_column(BigInteger, default=0)
    status: Mapped[str] = mapped_column(String(16), default="pending")

    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    available_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_queue_items_type_status", "type", "status"),
        Index("ix_queue_items_order", "type", "priority", "seq"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id, "type": self.type, "payload": self.payload,
            "priority": self.priority, "seq": self.seq, "status": self.status,
            "attempts": self.attempts, "max_attempts": self.max_attempts,
            "last_error": self.last_error, "available_at": self.available_at,
            "processed_at": self.processed_at,
            "created_at": self.created_at, "updated_at": self.updated_at,
        }


# ──────────────────────────────────────────────────────────────
#  Campaigns
# ──────────────────────────────────────────────────────────────

class CampaignRow(Base):
    __tablename__ = "campaigns"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    segment_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="draft")
    audience_size: Mapped[int] = mapped_column(Integer, default=0)

    scheduled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_campaigns_status", "status"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id, "name": self.name, "message": self.message,
            "segment_id": self.segment_id, "user_id": self.user_id,
            "status": self.status, "audience_size": self.audience_size,
            "scheduled_at": self.scheduled_at, "started_at": self.started_at,
            "completed_at": self.completed_at,
            "created_at": self.created_at, "updated_at": self.updated_at,
        }


# ──────────────────────────────────────────────────────────────
#  Communication Logs
# ──────────────────────────────────────────────────────────────

class CommunicationLogRow(Base):
    __tablename__ = "communication_logs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    campaign_id: Mapped[str] = mapped_column(String(64), ForeignKey("campaigns.id"), nullable=False)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="pending")

    vendor_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_logs_campaign_status", "campaign_id", "status"),
        Index("ix_logs_vendor", "vendor_id"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id, "campaign_id": self.campaign_id,
            "customer_id": self.customer_id, "user_id": self.user_id,
            "message": self.message, "status": self.status,
            "vendor_id": self.vendor_id, "sent_at": self.sent_at,
            "delivered_at": self.delivered_at, "failed_at": self.failed_at,
            "failure_reason": self.failure_reason,
            "created_at": self.created_at, "updated_at": self.updated_at,
        }


# ──────────────────────────────────────────────────────────────
#  Customers & Orders (written by the ingest worker)
# ──────────────────────────────────────────────────────────────

class CustomerRow(Base):
    __tablename__ = "customers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(256), index=True, nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    attributes: Mapped[Any] = mapped_column(JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id, "name": self.name, "email": self.email,
            "phone": self.phone, "attributes": self.attributes,
            "created_at": self.created_at, "updated_at": self.updated_at,
        }


class OrderRow(Base):
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    customer_id: Mapped[str] = mapped_column(String(64), ForeignKey("customers.id"), nullable=False)
    amount: Mapped[float] = mapped_column(Float, default=0.0)
    status: Mapped[str] = mapped_column(String(32), default="pending")
    items: Mapped[Any] = mapped_column(JSON, default=list)
    order_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_orders_customer", "customer_id"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id, "customer_id": self.customer_id, "amount": self.amount,
            "status": self.status, "items": self.items, "order_date": self.order_date,
            "created_at": self.created_at, "updated_at": self.updated_at,
        }
