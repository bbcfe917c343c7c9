"""
Delivery Pipeline — Builds and wires every component from settings.

Provides:
- One object owning the store, queue, gateway, services and the four
  worker loops (ingest, campaign, delivery, receipt)
- start()/stop() for the API lifespan and scripts
- drain() to run the loops by hand until no work is left (tests, scripts)

Usage:
    pipeline = DeliveryPipeline(get_settings())
    await pipeline.start()
    ...
    await pipeline.stop()
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from backend.segments import SegmentResolver, create_segment_resolver
from channels.base import DeliveryGateway
from channels.vendor_adapter import create_gateway
from config.settings import Settings, get_settings
from core.delivery import DeliveryService
from core.ingest import IngestService
from core.orchestrator import CampaignOrchestrator
from core.receipts import ReceiptBatcher
from database.session import close_db, init_db
from database.store_base import BaseDeliveryStore
from database.store_factory import create_store
from job_queue.cache import QueueCache, create_queue_cache
from job_queue.queue_store import QueueStore
from job_queue.supervisor import QueueMaintenance, WorkerSupervisor
from job_queue.worker import WorkerLoop
from models.schemas import QueueType

logger = structlog.get_logger()


class DeliveryPipeline:

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[BaseDeliveryStore] = None,
        cache: Optional[QueueCache] = None,
        gateway: Optional[DeliveryGateway] = None,
        segments: Optional[SegmentResolver] = None,
    ):
        self.settings = settings or get_settings()
        s = self.settings

        self.store = store or create_store({
            "store_backend": s.database.store_backend,
            "store_file_dir": s.database.store_file_dir,
        })
        self.cache = cache or create_queue_cache({
            "cache_backend": s.queue.cache_backend,
            "redis_url": s.queue.redis_url,
            "key_prefix": s.queue.key_prefix,
        })
        self.gateway = gateway or create_gateway(s.vendor)
        self.segments = segments or create_segment_resolver(s.segments)

        self.queue = QueueStore(
            self.store, self.cache,
            max_attempts=s.queue.max_attempts,
            retry_delay_s=s.queue.retry_delay_s,
        )
        self.delivery = DeliveryService(self.store, self.queue, self.gateway)
        self.orchestrator = CampaignOrchestrator(self.store, self.queue, self.delivery,
                                                 self.segments)
        self.ingest = IngestService(self.store)
        self.batcher = ReceiptBatcher(
            self.delivery.apply_receipt_batch,
            self.delivery.process_receipt,
            batch_size=s.receipts.batch_size,
            batch_timeout_s=s.receipts.batch_timeout_s,
        )

        w = s.workers
        self.ingest_worker = WorkerLoop(
            "ingest", [QueueType.CUSTOMER_INGEST, QueueType.ORDER_INGEST],
            self.ingest.handle, self.queue, w.ingest_interval_s,
        )
        self.campaign_worker = WorkerLoop(
            "campaign", [QueueType.CAMPAIGN_PROCESS],
            self.orchestrator.process_campaign, self.queue, w.campaign_interval_s,
        )
        self.delivery_worker = WorkerLoop(
            "delivery", [QueueType.DELIVERY_SEND],
            self.delivery.process_delivery, self.queue, w.delivery_interval_s,
        )
        self.receipt_worker = WorkerLoop(
            "receipt", [QueueType.RECEIPT_PROCESS],
            self.batcher.add, self.queue, w.receipt_interval_s,
            on_stop=self.batcher.flush,
        )
        self.workers = [self.ingest_worker, self.campaign_worker,
                        self.delivery_worker, self.receipt_worker]

        self.maintenance = QueueMaintenance(
            self.queue,
            interval_s=s.queue.maintenance_interval_s,
            processing_timeout_s=s.queue.processing_timeout_s,
            completed_retention_hours=s.queue.completed_retention_hours,
        )
        self.supervisor = WorkerSupervisor(self.queue, self.workers,
                                           maintenance=self.maintenance,
                                           batcher=self.batcher)

    @property
    def _uses_sql(self) -> bool:
        return self.settings.database.store_backend == "sql"

    async def start(self, run_workers: bool = None) -> None:
        if self._uses_sql:
            await init_db(self.settings.database.url)
        await self.cache.connect()
        await self.queue.recover()

        if run_workers is None:
            run_workers = self.settings.workers.enabled
        if run_workers:
            await self.supervisor.start_all()

        logger.info("pipeline_started",
                    store=type(self.store).__name__,
                    cache=type(self.cache).__name__,
                    gateway=self.gateway.channel_name,
                    workers_running=run_workers)

    async def stop(self) -> None:
        await self.supervisor.stop_all()
        await self.batcher.stop()
        await self.gateway.shutdown()
        await self.segments.close()
        await self.cache.close()
        await self.store.close()
        if self._uses_sql:
            await close_db()
        logger.info("pipeline_stopped")

    async def drain(self, max_rounds: int = 100) -> int:
        """
        Tick every worker in pipeline order until a full round handles nothing,
        then flush the receipt batch. Items waiting out a retry delay are left.
        Returns the number of items handled.
        """
        total = 0
        for _ in range(max_rounds):
            handled = 0
            for worker in self.workers:
                handled += await worker.run_once()
            if handled == 0:
                if self.batcher.pending == 0:
                    break
                await self.batcher.flush()
            total += handled
        return total

    async def status(self) -> dict[str, Any]:
        result = await self.supervisor.status()
        result["gateway"] = await self.gateway.health_check()
        return result
