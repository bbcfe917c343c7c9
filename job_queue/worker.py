"""
Worker Loop — Single-flight poller that drains one or more queue types.

Per tick, for each configured queue type in order:
  1. dequeue_next(type); nothing available → next type
  2. decode the payload and await the handler
  3. success          → mark_completed
     PermanentJobError → mark_failed(permanent=True)
     any Exception    → mark_failed (retried by the Queue Store)

The next tick is scheduled only after the current one settles, so a loop
never has more than one handler outstanding. Handler exceptions stop here;
they never reach the event loop.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Awaitable, Callable, Optional, Sequence, Union

from core.errors import InvalidPayloadError, PermanentJobError
from job_queue.queue_store import QueueStore
from models.schemas import QueueItem, QueuePayload, QueueType, decode_payload

logger = structlog.get_logger()

JobHandler = Callable[[QueuePayload], Awaitable[Any]]


class WorkerLoop:
    """
    Usage:
        loop = WorkerLoop("delivery", [QueueType.DELIVERY_SEND], handler, queue, interval_s=3)
        await loop.start()        # returns immediately, runs as task
        await loop.run_once()     # drive a single tick manually (tests, scripts)
        await loop.stop()         # waits for the in-flight handler
    """

    def __init__(
        self,
        name: str,
        queue_types: Sequence[Union[QueueType, str]],
        handler: JobHandler,
        queue: QueueStore,
        interval_s: float,
        on_stop: Optional[Callable[[], Awaitable[Any]]] = None,
    ):
        self.name = name
        self.queue_types = [QueueType(q) for q in queue_types]
        self.handler = handler
        self.queue = queue
        self.interval_s = interval_s
        self.on_stop = on_stop
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._busy = False
        self.ticks = 0
        self.processed = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def busy(self) -> bool:
        return self._busy

    async def start(self) -> None:
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name=f"worker:{self.name}")
        logger.info("worker_started", worker=self.name,
                    queues=[q.value for q in self.queue_types],
                    interval_s=self.interval_s)

    async def stop(self) -> None:
        if not self.running:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        if self.on_stop is not None:
            await self.on_stop()
        logger.info("worker_stopped", worker=self.name,
                    ticks=self.ticks, processed=self.processed, failed=self.failed)

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.error("worker_tick_error", worker=self.name, error=str(e), exc_info=True)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_s)
            except asyncio.TimeoutError:
                pass

    async def run_once(self) -> int:
        """Run one tick. Returns the number of items handled (0 if a tick is in flight)."""
        if self._busy:
            return 0
        self._busy = True
        handled = 0
        try:
            self.ticks += 1
            for qtype in self.queue_types:
                item = await self.queue.dequeue_next(qtype)
                if item is None:
                    continue
                await self._process(item)
                handled += 1
        finally:
            self._busy = False
        return handled

    async def _process(self, item: QueueItem) -> None:
        log = logger.bind(worker=self.name, item_id=item.id, queue_type=item.type.value,
                          attempt=item.attempts + 1)
        try:
            payload = decode_payload(item.type, item.payload)
            await self.handler(payload)
        except (PermanentJobError, InvalidPayloadError) as e:
            self.failed += 1
            log.warning("job_permanently_failed", error=str(e))
            await self.queue.mark_failed(item.id, str(e), permanent=True)
        except Exception as e:
            self.failed += 1
            log.error("job_handler_error", error=str(e))
            await self.queue.mark_failed(item.id, str(e) or type(e).__name__)
        else:
            self.processed += 1
            await self.queue.mark_completed(item.id)
            log.debug("job_completed")

    def status(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "queues": [q.value for q in self.queue_types],
            "running": self.running,
            "busy": self._busy,
            "interval_s": self.interval_s,
            "ticks": self.ticks,
            "processed": self.processed,
            "failed": self.failed,
        }
