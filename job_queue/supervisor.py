"""
Worker Supervisor — Owns the four worker loops and queue housekeeping.

Topology:
  ┌──────────────┐  campaign_process  ┌─────────────────┐
  │ Orchestrator │───────────────────▶│ Campaign worker │──┐ fan-out
  └──────────────┘                    └─────────────────┘  │
                                                           ▼
  ┌──────────────┐  *_ingest          ┌─────────────────┐  delivery_send
  │ Ingest API   │───────────────────▶│ Ingest worker   │  │
  └──────────────┘                    └─────────────────┘  ▼
                                      ┌─────────────────┐
                                      │ Delivery worker │──▶ Delivery Gateway
                                      └────────┬────────┘
                        receipt_process        │ accepted
  ┌──────────────┐  ◀──────────────────────────┘
  │ Receipt API  │───────────────────▶┌─────────────────┐
  └──────────────┘                    │ Receipt worker  │──▶ Receipt Reconciler
                                      └─────────────────┘

The maintenance task returns items stuck in processing to pending and
prunes old completed items.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Optional

from job_queue.queue_store import QueueStore
from job_queue.worker import WorkerLoop

logger = structlog.get_logger()


class QueueMaintenance:
    """
    Background task that periodically reclaims stale processing items and
    clears completed items past their retention.
    """

    def __init__(
        self,
        queue: QueueStore,
        interval_s: float = 60.0,
        processing_timeout_s: float = 300.0,
        completed_retention_hours: float = 24,
    ):
        self.queue = queue
        self.interval = interval_s
        self.processing_timeout_s = processing_timeout_s
        self.completed_retention_hours = completed_retention_hours
        self._task: Optional[asyncio.Task] = None

    async def start_background(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def run_once(self) -> dict[str, int]:
        reclaimed = await self.queue.reclaim_stale(self.processing_timeout_s)
        cleared = await self.queue.clear_completed(self.completed_retention_hours)
        return {"reclaimed": reclaimed, "cleared": cleared}

    async def _run(self):
        logger.info("queue_maintenance_started", interval=self.interval)
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("queue_maintenance_error", error=str(e))
            await asyncio.sleep(self.interval)


class WorkerSupervisor:
    """
    Usage:
        supervisor = WorkerSupervisor(queue, [ingest, campaign, delivery, receipt])
        await supervisor.start_all()
        supervisor.status()
        await supervisor.stop_all()     # receipt worker flushes its batch
    """

    def __init__(
        self,
        queue: QueueStore,
        workers: list[WorkerLoop],
        maintenance: Optional[QueueMaintenance] = None,
        batcher=None,  # ReceiptBatcher, reported in status()
    ):
        self.queue = queue
        self.workers = {w.name: w for w in workers}
        self.maintenance = maintenance
        self.batcher = batcher

    def get(self, name: str) -> Optional[WorkerLoop]:
        return self.workers.get(name)

    async def start_all(self) -> None:
        for worker in self.workers.values():
            await worker.start()
        if self.maintenance:
            await self.maintenance.start_background()
        logger.info("workers_started", workers=list(self.workers))

    async def stop_all(self) -> None:
        if self.maintenance:
            await self.maintenance.stop()
        await asyncio.gather(*(w.stop() for w in self.workers.values()))
        logger.info("workers_stopped", workers=list(self.workers))

    async def status(self) -> dict[str, Any]:
        workers = {}
        for name, worker in self.workers.items():
            info = worker.status()
            info["queue_stats"] = {
                q.value: await self.queue.stats(q) for q in worker.queue_types
            }
            workers[name] = info
        result: dict[str, Any] = {"workers": workers}
        if self.batcher is not None:
            result["receipt_batch"] = self.batcher.status()
        return result
