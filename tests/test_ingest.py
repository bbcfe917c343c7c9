"""Tests for the ingest handler."""
import pytest

from core.errors import PermanentJobError
from core.ingest import IngestService
from models.schemas import CustomerIngestPayload, OrderIngestPayload


@pytest.fixture
def ingest(store):
    return IngestService(store)


def _customer(action, **data):
    return CustomerIngestPayload(action=action, data=data)


def _order(action, **data):
    return OrderIngestPayload(action=action, data=data)


class TestCustomers:
    @pytest.mark.asyncio
    async def test_create(self, ingest, store):
        await ingest.handle(_customer("create", id="c1", name="Asha", email="asha@example.com"))
        customer = await store.get_customer("c1")
        assert customer.name == "Asha"
        assert customer.email == "asha@example.com"

    @pytest.mark.asyncio
    async def test_create_generates_id(self, ingest, store):
        await ingest.handle(_customer("create", name="No Id"))
        assert store.stats()["customers"] == 1

    @pytest.mark.asyncio
    async def test_update_merges_fields(self, ingest, store):
        await ingest.handle(_customer("create", id="c1", name="Asha", email="a@example.com"))
        await ingest.handle(_customer("update", id="c1", phone="+15550100"))
        customer = await store.get_customer("c1")
        assert customer.name == "Asha"
        assert customer.phone == "+15550100"

    @pytest.mark.asyncio
    async def test_client_timestamps_ignored(self, ingest, store):
        await ingest.handle(_customer("create", id="c1", name="Asha",
                                      created_at="2001-01-01T00:00:00Z"))
        assert (await store.get_customer("c1")).created_at.year != 2001

    @pytest.mark.asyncio
    async def test_update_missing_is_permanent(self, ingest):
        with pytest.raises(PermanentJobError):
            await ingest.handle(_customer("update", id="ghost", name="X"))

    @pytest.mark.asyncio
    async def test_delete(self, ingest, store):
        await ingest.handle(_customer("create", id="c1", name="Asha"))
        await ingest.handle(_customer("delete", id="c1"))
        assert await store.get_customer("c1") is None
        with pytest.raises(PermanentJobError):
            await ingest.handle(_customer("delete", id="c1"))

    @pytest.mark.asyncio
    async def test_invalid_record_is_permanent(self, ingest):
        with pytest.raises(PermanentJobError, match="Invalid customer"):
            await ingest.handle(_customer("create", id="c1"))


class TestOrders:
    @pytest.mark.asyncio
    async def test_create_requires_customer(self, ingest, store):
        with pytest.raises(PermanentJobError, match="Customer not found"):
            await ingest.handle(_order("create", id="o1", customer_id="nobody", amount=10))

        await ingest.handle(_customer("create", id="c1", name="Asha"))
        await ingest.handle(_order("create", id="o1", customer_id="c1", amount=10,
                                   items=[{"sku": "TEA-01", "qty": 2}]))
        order = await store.get_order("o1")
        assert order.amount == 10
        assert order.items == [{"sku": "TEA-01", "qty": 2}]

    @pytest.mark.asyncio
    async def test_update_and_delete(self, ingest, store):
        await ingest.handle(_customer("create", id="c1", name="Asha"))
        await ingest.handle(_order("create", id="o1", customer_id="c1", amount=10))
        await ingest.handle(_order("update", id="o1", status="shipped"))
        order = await store.get_order("o1")
        assert order.status == "shipped"
        assert order.amount == 10

        await ingest.handle(_order("delete", id="o1"))
        assert await store.get_order("o1") is None

    @pytest.mark.asyncio
    async def test_deleting_customer_removes_orders(self, ingest, store):
        await ingest.handle(_customer("create", id="c1", name="Asha"))
        await ingest.handle(_order("create", id="o1", customer_id="c1"))
        await ingest.handle(_customer("delete", id="c1"))
        assert await store.get_order("o1") is None


class TestThroughWorker:
    @pytest.mark.asyncio
    async def test_bad_ingest_item_fails_without_retry(self, pipeline, store):
        from models.schemas import QueueItemStatus, QueueType
        item_id = await pipeline.queue.enqueue(
            QueueType.ORDER_INGEST,
            {"action": "create", "data": {"id": "o1", "customer_id": "nobody"}},
        )
        await pipeline.ingest_worker.run_once()
        item = await pipeline.queue.get_item(item_id)
        assert item.status == QueueItemStatus.FAILED
        assert "Customer not found" in item.last_error
