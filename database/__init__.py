"""
Database layer — Multi-backend persistence for the delivery pipeline.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)
  - File (JSON files on disk, for small deployments)

Quick start:
  from database import create_store
  store = create_store({"store_backend": "memory"})
  log = await store.get_log("abc123")
"""
from database.models import (
    Base, QueueItemRow, CampaignRow, CommunicationLogRow, CustomerRow, OrderRow,
)
from database.session import get_engine, get_session, init_db, close_db
from database.store_base import BaseDeliveryStore, ReceiptApplyError
from database.store import SqlDeliveryStore
from database.store_memory import InMemoryDeliveryStore
from database.store_file import FileDeliveryStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "QueueItemRow", "CampaignRow", "CommunicationLogRow",
    "CustomerRow", "OrderRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db",
    # Store interface
    "BaseDeliveryStore", "ReceiptApplyError",
    # Store backends
    "SqlDeliveryStore", "InMemoryDeliveryStore", "FileDeliveryStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
