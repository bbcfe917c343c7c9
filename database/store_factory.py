"""
Picks the DeliveryStore backend named by ``database.store_backend``.

    sql     SqlDeliveryStore over database.url (needs ``await init_db()``)
    file    FileDeliveryStore, JSON snapshots under database.store_file_dir
    memory  InMemoryDeliveryStore, lost on restart

The first store built becomes the process-wide instance; later
create_store() calls return it until reset_store().
"""
from __future__ import annotations

import structlog
from typing import Callable, Optional

from database.store_base import BaseDeliveryStore

logger = structlog.get_logger()

_instance: Optional[BaseDeliveryStore] = None


def _sql_store(config: dict) -> BaseDeliveryStore:
    from database.store import SqlDeliveryStore
    return SqlDeliveryStore()


def _file_store(config: dict) -> BaseDeliveryStore:
    from database.store_file import FileDeliveryStore
    return FileDeliveryStore(data_dir=config.get("store_file_dir", "./data"))


def _memory_store(config: dict) -> BaseDeliveryStore:
    from database.store_memory import InMemoryDeliveryStore
    return InMemoryDeliveryStore()


_BACKENDS: dict[str, Callable[[dict], BaseDeliveryStore]] = {
    "sql": _sql_store,
    "file": _file_store,
    "memory": _memory_store,
}


def create_store(config: dict = None) -> BaseDeliveryStore:
    """Build the store from ``{"store_backend", "store_file_dir"}``, or reuse the existing one."""
    global _instance
    if _instance is not None:
        return _instance

    config = config or {}
    backend = config.get("store_backend", "memory")
    build = _BACKENDS.get(backend)
    if build is None:
        logger.warning("unknown_store_backend", backend=backend, using="memory")
        backend, build = "memory", _memory_store

    _instance = build(config)
    logger.info("store_created", backend=backend,
                data_dir=config.get("store_file_dir") if backend == "file" else None)
    return _instance


def get_store() -> BaseDeliveryStore:
    return _instance if _instance is not None else create_store()


def reset_store() -> None:
    global _instance
    _instance = None
