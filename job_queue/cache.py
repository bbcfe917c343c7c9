"""
Queue Cache — Fast-access ordering index in front of the durable queue records.

The durable record (database store) is the source of truth for an item's
status; the cache only answers "which item id should be tried next for this
queue type". A popped id is then claimed with a compare-and-swap on the
durable record, so a stale or duplicated cache entry is harmless.

Key topology (Redis):
  {prefix}:ready:{queue_type}    — sorted set, score = -priority,
                                   member = "{seq:020d}|{item_id}"
                                   (equal scores sort by member → FIFO)
  {prefix}:delayed:{queue_type}  — sorted set, score = ready-at epoch,
                                   member = "{priority}|{seq:020d}|{item_id}"

In-memory: one heap of (-priority, seq, item_id) per type plus a delayed list.
"""
from __future__ import annotations

import heapq
import time
import structlog
from abc import ABC, abstractmethod
from typing import Any, Optional

logger = structlog.get_logger()


def _ready_member(seq: int, item_id: str) -> str:
    return f"{seq:020d}|{item_id}"


def _delayed_member(priority: int, seq: int, item_id: str) -> str:
    return f"{priority}|{seq:020d}|{item_id}"


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class QueueCache(ABC):
    """Abstract ordering index keyed by queue type."""

    @abstractmethod
    async def connect(self):
        """Establish connection to the cache backend."""
        ...

    @abstractmethod
    async def close(self):
        """Gracefully shut down."""
        ...

    @abstractmethod
    async def push(self, queue_type: str, item_id: str, priority: int, seq: int):
        """Make an item immediately eligible for pop()."""
        ...

    @abstractmethod
    async def push_delayed(self, queue_type: str, item_id: str, priority: int, seq: int,
                           ready_at: float):
        """Make an item eligible for pop() once time.time() >= ready_at."""
        ...

    @abstractmethod
    async def pop(self, queue_type: str) -> Optional[str]:
        """Remove and return the next item id, promoting due delayed entries first."""
        ...

    @abstractmethod
    async def size(self, queue_type: str) -> dict[str, int]:
        """Return {"ready": n, "delayed": m}."""
        ...

    @abstractmethod
    async def clear(self, queue_type: str):
        """Drop every entry for a queue type (used before a rebuild)."""
        ...


# ──────────────────────────────────────────────────────────────
#  Redis Implementation
# ──────────────────────────────────────────────────────────────

class RedisQueueCache(QueueCache):
    """
    Production cache backed by Redis sorted sets.

    - Ready entries are claimed with ZPOPMIN (atomic across processes)
    - Delayed entries use ZRANGEBYSCORE + pipeline for promotion
    """

    def __init__(self, redis_url: str = "redis://localhost:6379", key_prefix: str = "campaign_queue"):
        self._redis_url = redis_url
        self._prefix = key_prefix
        self._redis = None

    def _ready_key(self, queue_type: str) -> str:
        return f"{self._prefix}:ready:{queue_type}"

    def _delayed_key(self, queue_type: str) -> str:
        return f"{self._prefix}:delayed:{queue_type}"

    async def connect(self):
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(
            self._redis_url,
            decode_responses=True,
            max_connections=20,
        )
        await self._redis.ping()
        logger.info("redis_queue_cache_connected", url=self._redis_url)

    async def close(self):
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def push(self, queue_type: str, item_id: str, priority: int, seq: int):
        await self._redis.zadd(self._ready_key(queue_type),
                               {_ready_member(seq, item_id): -priority})

    async def push_delayed(self, queue_type: str, item_id: str, priority: int, seq: int,
                           ready_at: float):
        await self._redis.zadd(self._delayed_key(queue_type),
                               {_delayed_member(priority, seq, item_id): ready_at})

    async def _promote_delayed(self, queue_type: str) -> int:
        """Move delayed entries whose ready-at has passed into the ready set."""
        delayed_key = self._delayed_key(queue_type)
        due = await self._redis.zrangebyscore(delayed_key, "-inf", time.time())
        if not due:
            return 0

        pipe = self._redis.pipeline()
        for member in due:
            priority, seq, item_id = member.split("|", 2)
            pipe.zadd(self._ready_key(queue_type), {_ready_member(int(seq), item_id): -int(priority)})
            pipe.zrem(delayed_key, member)
        await pipe.execute()
        logger.debug("delayed_items_promoted", queue_type=queue_type, count=len(due))
        return len(due)

    async def pop(self, queue_type: str) -> Optional[str]:
        await self._promote_delayed(queue_type)
        popped = await self._redis.zpopmin(self._ready_key(queue_type), 1)
        if not popped:
            return None
        member, _score = popped[0]
        return member.split("|", 1)[1]

    async def size(self, queue_type: str) -> dict[str, int]:
        return {
            "ready": await self._redis.zcard(self._ready_key(queue_type)),
            "delayed": await self._redis.zcard(self._delayed_key(queue_type)),
        }

    async def clear(self, queue_type: str):
        await self._redis.delete(self._ready_key(queue_type), self._delayed_key(queue_type))


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class InMemoryQueueCache(QueueCache):
    """
    Development/test cache backed by heapq.
    Single-process only — no persistence; rebuilt from the store on startup.
    """

    def __init__(self):
        self._ready: dict[str, list[tuple[int, int, str]]] = {}
        self._delayed: dict[str, list[tuple[float, int, int, str]]] = {}

    async def connect(self):
        logger.info("inmemory_queue_cache_connected")

    async def close(self):
        self._ready.clear()
        self._delayed.clear()

    async def push(self, queue_type: str, item_id: str, priority: int, seq: int):
        heapq.heappush(self._ready.setdefault(queue_type, []), (-priority, seq, item_id))

    async def push_delayed(self, queue_type: str, item_id: str, priority: int, seq: int,
                           ready_at: float):
        heapq.heappush(self._delayed.setdefault(queue_type, []), (ready_at, priority, seq, item_id))

    def _promote_delayed(self, queue_type: str) -> int:
        delayed = self._delayed.get(queue_type)
        now = time.time()
        promoted = 0
        while delayed and delayed[0][0] <= now:
            _, priority, seq, item_id = heapq.heappop(delayed)
            heapq.heappush(self._ready.setdefault(queue_type, []), (-priority, seq, item_id))
            promoted += 1
        return promoted

    async def pop(self, queue_type: str) -> Optional[str]:
        self._promote_delayed(queue_type)
        ready = self._ready.get(queue_type)
        if not ready:
            return None
        return heapq.heappop(ready)[2]

    async def size(self, queue_type: str) -> dict[str, int]:
        return {
            "ready": len(self._ready.get(queue_type, [])),
            "delayed": len(self._delayed.get(queue_type, [])),
        }

    async def clear(self, queue_type: str):
        self._ready.pop(queue_type, None)
        self._delayed.pop(queue_type, None)


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

_instance: Optional[QueueCache] = None


def create_queue_cache(cache_config: dict[str, Any] = None) -> QueueCache:
    """Factory: create the appropriate cache backend."""
    global _instance
    if _instance:
        return _instance

    config = cache_config or {}
    backend = config.get("cache_backend", "memory")

    if backend == "redis":
        _instance = RedisQueueCache(
            redis_url=config.get("redis_url", "redis://localhost:6379"),
            key_prefix=config.get("key_prefix", "campaign_queue"),
        )
    else:
        _instance = InMemoryQueueCache()

    logger.info("queue_cache_created", backend=backend)
    return _instance


def get_queue_cache() -> QueueCache:
    """Return the singleton cache instance."""
    global _instance
    if _instance is None:
        _instance = create_queue_cache()
    return _instance


def reset_queue_cache() -> None:
    """Reset the singleton (for testing)."""
    global _instance
    _instance = None
