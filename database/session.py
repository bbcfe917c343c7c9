"""
Engine and session lifecycle for the sql delivery store.

DeliveryPipeline.start() calls init_db() when database.store_backend is
"sql"; SqlDeliveryStore opens one get_session() scope per store call; and
DeliveryPipeline.stop() disposes the engine with close_db(). The URL in
settings may name a sync driver; get_engine() swaps in the async one.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

# URL scheme → async driver
_ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "mysql": "mysql+aiomysql",
    "mysql+pymysql": "mysql+aiomysql",
    "sqlite": "sqlite+aiosqlite",
}

# Four workers, the maintenance loop and API handlers share one pool
_POOL_OPTIONS = {
    "pool_size": 10,
    "max_overflow": 20,
    "pool_timeout": 30,
    "pool_recycle": 1800,
    "pool_pre_ping": True,
}

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _to_async_url(db_url: str) -> str:
    scheme, sep, rest = db_url.partition("://")
    driver = _ASYNC_DRIVERS.get(scheme)
    if not sep or driver is None:
        return db_url
    return f"{driver}://{rest}"


def _redact(url: str) -> str:
    """Host/database part only, for logs."""
    return url.rpartition("@")[2]


def get_engine(db_url: Optional[str] = None) -> AsyncEngine:
    global _engine
    if _engine is not None:
        return _engine

    url = _to_async_url(db_url or get_settings().database.url)
    options = {"echo": get_settings().debug}
    if url.startswith("sqlite"):
        options["connect_args"] = {"check_same_thread": False}
    else:
        options.update(_POOL_OPTIONS)

    _engine = create_async_engine(url, **options)
    logger.info("database_engine_created", dialect=_engine.dialect.name,
                url=_redact(str(_engine.url)))
    return _engine


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """One unit of work: commits on success, rolls back and re-raises on error."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(), expire_on_commit=False)

    async with _session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(db_url: Optional[str] = None) -> None:
    """Create the queue, log, campaign, customer and order tables if missing."""
    engine = get_engine(db_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized", dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _session_factory = None
    logger.info("database_closed")
