"""
Tests for all delivery store backends.

Covers:
  - InMemoryDeliveryStore
  - FileDeliveryStore (JSON file persistence)
  - SqlDeliveryStore (via SQLite for test portability)
  - Store factory
  - URL translation and ORM portability
"""
import os
import shutil
import tempfile
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from database.store_base import ReceiptApplyError
from models.schemas import (
    Campaign, CampaignStatus, CommunicationLog, Customer, LogStatus, Order,
    QueueItem, QueueItemStatus, QueueType, Receipt,
)


def _utcnow():
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Fixtures
# ──────────────────────────────────────────────────────────────

@pytest_asyncio.fixture(params=["memory", "file", "sqlite"])
async def any_store(request):
    """Every backend behind the same interface."""
    if request.param == "memory":
        from database.store_memory import InMemoryDeliveryStore
        yield InMemoryDeliveryStore()
        return

    tmpdir = tempfile.mkdtemp(prefix=f"pipeline_{request.param}_")
    try:
        if request.param == "file":
            from database.store_file import FileDeliveryStore
            store = FileDeliveryStore(data_dir=tmpdir)
            yield store
            await store.close()
        else:
            from database.session import close_db, init_db
            from database.store import SqlDeliveryStore
            await close_db()
            await init_db(f"sqlite:///{os.path.join(tmpdir, 'pipeline.db')}")
            yield SqlDeliveryStore()
            await close_db()
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


def _item(seq: int, priority: int = 0, qtype: QueueType = QueueType.DELIVERY_SEND) -> QueueItem:
    return QueueItem(type=qtype, payload={"n": seq}, priority=priority, seq=seq)


async def _sent_log(store, log_id: str, vendor_id: str = None, campaign_id: str = "cmp_1"):
    return await store.create_log(CommunicationLog(
        id=log_id, campaign_id=campaign_id, customer_id=f"cust_{log_id}", message="Hello",
        status=LogStatus.SENT, vendor_id=vendor_id, sent_at=_utcnow(),
    ))


# ──────────────────────────────────────────────────────────────
#  Shared behaviour
# ──────────────────────────────────────────────────────────────

class TestQueueItems:
    @pytest.mark.asyncio
    async def test_create_and_get(self, any_store):
        item = await any_store.create_queue_item(_item(1, priority=2))
        loaded = await any_store.get_queue_item(item.id)
        assert loaded is not None
        assert loaded.type == QueueType.DELIVERY_SEND
        assert loaded.payload == {"n": 1}
        assert loaded.priority == 2
        assert loaded.status == QueueItemStatus.PENDING

    @pytest.mark.asyncio
    async def test_get_missing(self, any_store):
        assert await any_store.get_queue_item("nope") is None

    @pytest.mark.asyncio
    async def test_claim_is_exclusive(self, any_store):
        item = await any_store.create_queue_item(_item(1))
        first = await any_store.claim_queue_item(item.id)
        second = await any_store.claim_queue_item(item.id)
        assert first is not None
        assert first.status == QueueItemStatus.PROCESSING
        assert second is None

    @pytest.mark.asyncio
    async def test_update_with_expected_status(self, any_store):
        item = await any_store.create_queue_item(_item(1))
        assert not await any_store.update_queue_item(
            item.id, expected_status="processing", status="completed",
        )
        assert await any_store.update_queue_item(
            item.id, expected_status=["pending", "processing"], attempts=2,
        )
        loaded = await any_store.get_queue_item(item.id)
        assert loaded.attempts == 2
        assert loaded.status == QueueItemStatus.PENDING

    @pytest.mark.asyncio
    async def test_update_missing_returns_false(self, any_store):
        assert not await any_store.update_queue_item("nope", status="failed")

    @pytest.mark.asyncio
    async def test_list_orders_by_priority_then_seq(self, any_store):
        for seq, priority in [(1, 0), (2, 5), (3, 0), (4, 5)]:
            await any_store.create_queue_item(_item(seq, priority))
        items = await any_store.list_queue_items(QueueType.DELIVERY_SEND.value)
        assert [i.seq for i in items] == [2, 4, 1, 3]

    @pytest.mark.asyncio
    async def test_list_filters(self, any_store):
        await any_store.create_queue_item(_item(1))
        other = await any_store.create_queue_item(_item(2, qtype=QueueType.RECEIPT_PROCESS))
        await any_store.claim_queue_item(other.id)

        assert len(await any_store.list_queue_items(status="processing")) == 1
        assert len(await any_store.list_queue_items(QueueType.RECEIPT_PROCESS.value)) == 1
        assert len(await any_store.list_queue_items(limit=1)) == 1

    @pytest.mark.asyncio
    async def test_list_updated_before(self, any_store):
        item = await any_store.create_queue_item(_item(1))
        await any_store.update_queue_item(item.id, updated_at=_utcnow() - timedelta(hours=1))
        await any_store.create_queue_item(_item(2))
        stale = await any_store.list_queue_items(
            updated_before=_utcnow() - timedelta(minutes=30),
        )
        assert [i.id for i in stale] == [item.id]

    @pytest.mark.asyncio
    async def test_counts_per_status(self, any_store):
        a = await any_store.create_queue_item(_item(1))
        await any_store.create_queue_item(_item(2))
        await any_store.create_queue_item(_item(3, qtype=QueueType.CUSTOMER_INGEST))
        await any_store.claim_queue_item(a.id)

        counts = await any_store.count_queue_items(QueueType.DELIVERY_SEND.value)
        assert counts == {"pending": 1, "processing": 1, "completed": 0, "failed": 0}
        everything = await any_store.count_queue_items()
        assert sum(everything.values()) == 3

    @pytest.mark.asyncio
    async def test_delete_old_completed(self, any_store):
        old = await any_store.create_queue_item(_item(1))
        fresh = await any_store.create_queue_item(_item(2))
        await any_store.update_queue_item(old.id, status="completed",
                                          processed_at=_utcnow() - timedelta(days=2))
        await any_store.update_queue_item(fresh.id, status="completed",
                                          processed_at=_utcnow())

        removed = await any_store.delete_queue_items("completed", _utcnow() - timedelta(hours=24))
        assert removed == 1
        assert await any_store.get_queue_item(old.id) is None
        assert await any_store.get_queue_item(fresh.id) is not None


class TestCommunicationLogs:
    @pytest.mark.asyncio
    async def test_create_get_update(self, any_store):
        log = await any_store.create_log(CommunicationLog(
            campaign_id="cmp_1", customer_id="cust_a", message="Hi",
        ))
        assert await any_store.update_log(log.id, expected_status=LogStatus.PENDING,
                                          status=LogStatus.SENT, sent_at=_utcnow())
        assert not await any_store.update_log(log.id, expected_status=LogStatus.PENDING,
                                              status=LogStatus.FAILED)
        loaded = await any_store.get_log(log.id)
        assert loaded.status == LogStatus.SENT
        assert loaded.sent_at is not None

    @pytest.mark.asyncio
    async def test_list_newest_first_with_paging(self, any_store):
        base = _utcnow() - timedelta(minutes=10)
        for i in range(5):
            await any_store.create_log(CommunicationLog(
                id=f"log_{i}", campaign_id="cmp_1", customer_id=f"c{i}", message="m",
                created_at=base + timedelta(minutes=i),
            ))
        await any_store.create_log(CommunicationLog(
            id="other", campaign_id="cmp_2", customer_id="x", message="m",
        ))

        page = await any_store.list_logs(campaign_id="cmp_1", offset=1, limit=2)
        assert [l.id for l in page] == ["log_3", "log_2"]
        assert len(await any_store.list_logs(status="pending")) == 6

    @pytest.mark.asyncio
    async def test_count_logs_per_campaign(self, any_store):
        await _sent_log(any_store, "l1")
        await _sent_log(any_store, "l2")
        await _sent_log(any_store, "l3", campaign_id="cmp_other")
        counts = await any_store.count_logs("cmp_1")
        assert counts == {"pending": 0, "sent": 2, "delivered": 0, "failed": 0}


class TestApplyReceipts:
    @pytest.mark.asyncio
    async def test_applies_batch(self, any_store):
        await _sent_log(any_store, "l1", vendor_id="v1")
        await _sent_log(any_store, "l2")

        applied = await any_store.apply_receipts([
            Receipt(log_id="l1", vendor_id="v1", status="delivered"),
            Receipt(log_id="l2", vendor_id="v2", status="failed", failure_reason="Bounced"),
        ])
        assert applied == 2

        l1 = await any_store.get_log("l1")
        assert l1.status == LogStatus.DELIVERED
        assert l1.delivered_at is not None
        assert l1.failed_at is None

        l2 = await any_store.get_log("l2")
        assert l2.status == LogStatus.FAILED
        assert l2.vendor_id == "v2"
        assert l2.failure_reason == "Bounced"
        assert l2.delivered_at is None

    @pytest.mark.asyncio
    async def test_failed_receipt_default_reason(self, any_store):
        await _sent_log(any_store, "l1")
        await any_store.apply_receipts([Receipt(log_id="l1", vendor_id="v1", status="failed")])
        assert (await any_store.get_log("l1")).failure_reason == "Delivery failed"

    @pytest.mark.asyncio
    async def test_all_or_nothing_on_terminal_log(self, any_store):
        await _sent_log(any_store, "l1")
        await _sent_log(any_store, "l2")
        await any_store.update_log("l2", status=LogStatus.DELIVERED)

        with pytest.raises(ReceiptApplyError) as exc:
            await any_store.apply_receipts([
                Receipt(log_id="l1", vendor_id="v1", status="delivered"),
                Receipt(log_id="l2", vendor_id="v2", status="failed"),
            ])
        assert exc.value.log_id == "l2"
        assert (await any_store.get_log("l1")).status == LogStatus.SENT

    @pytest.mark.asyncio
    async def test_rejects_vendor_mismatch(self, any_store):
        await _sent_log(any_store, "l1", vendor_id="v1")
        with pytest.raises(ReceiptApplyError, match="mismatch"):
            await any_store.apply_receipts([Receipt(log_id="l1", vendor_id="v9", status="delivered")])

    @pytest.mark.asyncio
    async def test_rejects_missing_log(self, any_store):
        with pytest.raises(ReceiptApplyError, match="not found"):
            await any_store.apply_receipts([Receipt(log_id="ghost", vendor_id="v", status="delivered")])

    @pytest.mark.asyncio
    async def test_rejects_duplicate_in_batch(self, any_store):
        await _sent_log(any_store, "l1")
        with pytest.raises(ReceiptApplyError, match="Duplicate"):
            await any_store.apply_receipts([
                Receipt(log_id="l1", vendor_id="v1", status="delivered"),
                Receipt(log_id="l1", vendor_id="v1", status="failed"),
            ])
        assert (await any_store.get_log("l1")).status == LogStatus.SENT


class TestCampaignsAndCustomers:
    @pytest.mark.asyncio
    async def test_campaign_cas(self, any_store):
        campaign = await any_store.create_campaign(Campaign(name="Spring", message="Hi"))
        assert await any_store.update_campaign(
            campaign.id, expected_status=(CampaignStatus.DRAFT, CampaignStatus.SCHEDULED),
            status=CampaignStatus.RUNNING, audience_size=4,
        )
        assert not await any_store.update_campaign(
            campaign.id, expected_status=CampaignStatus.DRAFT, status=CampaignStatus.CANCELLED,
        )
        loaded = await any_store.get_campaign(campaign.id)
        assert loaded.status == CampaignStatus.RUNNING
        assert loaded.audience_size == 4

    @pytest.mark.asyncio
    async def test_customer_upsert_and_delete_cascades(self, any_store):
        await any_store.upsert_customer(Customer(id="c1", name="Asha"))
        await any_store.upsert_customer(Customer(id="c1", name="Asha Rao", email="a@x.io"))
        await any_store.upsert_order(Order(id="o1", customer_id="c1", amount=120.5))

        customer = await any_store.get_customer("c1")
        assert customer.name == "Asha Rao"
        assert customer.email == "a@x.io"
        assert (await any_store.get_order("o1")).amount == 120.5

        assert await any_store.delete_customer("c1")
        assert await any_store.get_customer("c1") is None
        assert await any_store.get_order("o1") is None
        assert not await any_store.delete_customer("c1")

    @pytest.mark.asyncio
    async def test_order_delete(self, any_store):
        await any_store.upsert_customer(Customer(id="c1", name="Asha"))
        await any_store.upsert_order(Order(id="o1", customer_id="c1"))
        assert await any_store.delete_order("o1")
        assert not await any_store.delete_order("o1")


# ──────────────────────────────────────────────────────────────
#  FileDeliveryStore specifics
# ──────────────────────────────────────────────────────────────

class TestFileDeliveryStore:
    @pytest.fixture
    def tmpdir(self):
        d = tempfile.mkdtemp(prefix="pipeline_file_")
        yield d
        shutil.rmtree(d, ignore_errors=True)

    @pytest.mark.asyncio
    async def test_write_creates_file(self, tmpdir):
        from database.store_file import FileDeliveryStore
        store = FileDeliveryStore(data_dir=tmpdir)
        await store.create_queue_item(_item(1))
        assert os.path.exists(os.path.join(tmpdir, "queue_items.json"))

    @pytest.mark.asyncio
    async def test_persistence_across_reload(self, tmpdir):
        from database.store_file import FileDeliveryStore
        store = FileDeliveryStore(data_dir=tmpdir)
        item = await store.create_queue_item(_item(7, priority=3))
        await _sent_log(store, "l1", vendor_id="v1")

        reloaded = FileDeliveryStore(data_dir=tmpdir)
        loaded = await reloaded.get_queue_item(item.id)
        assert loaded.priority == 3
        assert loaded.seq == 7
        assert (await reloaded.get_log("l1")).vendor_id == "v1"

    @pytest.mark.asyncio
    async def test_corrupt_file_is_skipped(self, tmpdir):
        from database.store_file import FileDeliveryStore
        with open(os.path.join(tmpdir, "campaigns.json"), "w") as f:
            f.write("{not json")
        store = FileDeliveryStore(data_dir=tmpdir)
        assert store.stats()["campaigns"] == 0

    @pytest.mark.asyncio
    async def test_deferred_flush_on_close(self, tmpdir):
        from database.store_file import FileDeliveryStore
        store = FileDeliveryStore(data_dir=tmpdir, flush_interval_s=60)
        await store.create_campaign(Campaign(id="cmp_1", name="N", message="M"))
        assert not os.path.exists(os.path.join(tmpdir, "campaigns.json"))
        await store.close()

        reloaded = FileDeliveryStore(data_dir=tmpdir)
        assert (await reloaded.get_campaign("cmp_1")).name == "N"


# ──────────────────────────────────────────────────────────────
#  Factory, URLs, ORM portability
# ──────────────────────────────────────────────────────────────

class TestStoreFactory:
    def setup_method(self):
        from database.store_factory import reset_store
        reset_store()

    def teardown_method(self):
        from database.store_factory import reset_store
        reset_store()

    def test_default_is_memory(self):
        from database.store_factory import create_store
        from database.store_memory import InMemoryDeliveryStore
        assert isinstance(create_store(), InMemoryDeliveryStore)

    def test_file_backend(self):
        from database.store_factory import create_store
        from database.store_file import FileDeliveryStore
        tmpdir = tempfile.mkdtemp(prefix="pipeline_factory_")
        try:
            store = create_store({"store_backend": "file", "store_file_dir": tmpdir})
            assert isinstance(store, FileDeliveryStore)
        finally:
            shutil.rmtree(tmpdir, ignore_errors=True)

    def test_sql_backend(self):
        from database.store_factory import create_store
        from database.store import SqlDeliveryStore
        assert isinstance(create_store({"store_backend": "sql"}), SqlDeliveryStore)

    def test_singleton(self):
        from database.store_factory import create_store, get_store
        s1 = create_store({"store_backend": "memory"})
        assert get_store() is s1

    def test_unknown_backend_falls_back_to_memory(self):
        from database.store_factory import create_store
        from database.store_memory import InMemoryDeliveryStore
        assert isinstance(create_store({"store_backend": "mongo"}), InMemoryDeliveryStore)


class TestDatabaseUrlTranslation:
    def test_sqlite_url(self):
        from database.session import _to_async_url
        assert _to_async_url("sqlite:///./test.db") == "sqlite+aiosqlite:///./test.db"

    def test_postgres_urls(self):
        from database.session import _to_async_url
        assert _to_async_url("postgresql://u:p@h/db") == "postgresql+asyncpg://u:p@h/db"
        assert _to_async_url("postgres://u:p@h/db") == "postgresql+asyncpg://u:p@h/db"

    def test_mysql_url(self):
        from database.session import _to_async_url
        assert _to_async_url("mysql://u:p@h/db") == "mysql+aiomysql://u:p@h/db"

    def test_async_url_unchanged(self):
        from database.session import _to_async_url
        url = "postgresql+asyncpg://u:p@h/db"
        assert _to_async_url(url) == url
        assert _to_async_url("oracle://u:p@h/db") == "oracle://u:p@h/db"

    def test_redact_hides_credentials(self):
        from database.session import _redact
        assert _redact("postgresql+asyncpg://user:secret@db:5432/x") == "db:5432/x"


class TestModelCompatibility:
    """ORM models use cross-database-safe types only."""

    def test_no_jsonb(self):
        import inspect
        from database import models
        source = inspect.getsource(models)
        assert "from sqlalchemy.dialects.postgresql import JSONB" not in source
        assert "mapped_column(JSONB" not in source

    def test_json_columns_used(self):
        from sqlalchemy import JSON
        from database.models import CustomerRow, QueueItemRow
        assert isinstance(QueueItemRow.__table__.columns["payload"].type, JSON)
        assert isinstance(CustomerRow.__table__.columns["attributes"].type, JSON)

    def test_all_tables_defined(self):
        from database.models import Base
        assert set(Base.metadata.tables) == {
            "queue_items", "communication_logs", "campaigns", "customers", "orders",
        }
