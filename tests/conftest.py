"""Shared test fixtures for the campaign delivery pipeline."""
import asyncio
import itertools
from typing import Union

import pytest
import pytest_asyncio

from channels.base import DeliveryGateway
from config.settings import Settings
from models.schemas import Customer, VendorRequest, VendorResponse


# ──────────────────────────────────────────────────────────────
#  Scripted vendor
# ──────────────────────────────────────────────────────────────

class ScriptedGateway(DeliveryGateway):
    """
    Test gateway whose outcome per customer is set up front.

    outcomes[customer_id] may be a VendorResponse, an Exception instance to
    raise, or missing (accept with a generated vendor id).
    """

    channel_name = "scripted_vendor"

    def __init__(self, outcomes: dict[str, Union[VendorResponse, Exception]] = None,
                 delay_s: float = 0, timeout_s: float = 30.0):
        super().__init__(timeout_s=timeout_s)
        self.outcomes = dict(outcomes or {})
        self.delay_s = delay_s
        self.requests: list[VendorRequest] = []
        self._ids = itertools.count(1)

    async def _do_send(self, request: VendorRequest) -> VendorResponse:
        self.requests.append(request)
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        outcome = self.outcomes.get(request.customer_id)
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is not None:
            return outcome
        return VendorResponse(accepted=True, vendor_id=f"vendor_{next(self._ids):04d}")


# ──────────────────────────────────────────────────────────────
#  Fixtures
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def test_settings() -> Settings:
    """Defaults with workers off and no retry delay, for driving loops by hand."""
    settings = Settings()
    settings.workers.enabled = False
    settings.queue.retry_delay_s = 0
    settings.receipts.batch_timeout_s = 0.05
    return settings


@pytest.fixture
def store():
    from database.store_memory import InMemoryDeliveryStore
    return InMemoryDeliveryStore()


@pytest_asyncio.fixture
async def cache():
    from job_queue.cache import InMemoryQueueCache
    c = InMemoryQueueCache()
    await c.connect()
    yield c
    await c.close()


@pytest.fixture
def queue(store, cache):
    from job_queue.queue_store import QueueStore
    return QueueStore(store, cache, max_attempts=3, retry_delay_s=0)


@pytest.fixture
def gateway():
    return ScriptedGateway()


@pytest.fixture
def delivery(store, queue, gateway):
    from core.delivery import DeliveryService
    return DeliveryService(store, queue, gateway)


@pytest.fixture
def segments():
    from backend.segments import StaticSegmentResolver
    return StaticSegmentResolver({"vip": ["cust_a", "cust_b", "cust_c"]})


@pytest.fixture
def orchestrator(store, queue, delivery, segments):
    from core.orchestrator import CampaignOrchestrator
    return CampaignOrchestrator(store, queue, delivery, segments)


@pytest_asyncio.fixture
async def customers(store):
    """Three customers in the collaborator store."""
    created = []
    for cid, name in [("cust_a", "Asha Rao"), ("cust_b", "Bilal Khan"), ("cust_c", "Chen Wei")]:
        created.append(await store.upsert_customer(
            Customer(id=cid, name=name, email=f"{cid}@example.com")
        ))
    return created


@pytest_asyncio.fixture
async def pipeline(test_settings, store, cache, gateway, segments):
    from core.pipeline import DeliveryPipeline
    p = DeliveryPipeline(test_settings, store=store, cache=cache,
                         gateway=gateway, segments=segments)
    await p.start()
    yield p
    await p.stop()
