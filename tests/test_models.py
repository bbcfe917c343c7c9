"""Tests for data models and payload decoding."""
from datetime import datetime, timezone

import pytest

from core.errors import BadRequestError, InvalidPayloadError
from models.schemas import (
    CampaignProcessPayload, CommunicationLog, CustomerIngestPayload,
    DeliverySendPayload, LogStatus, OrderIngestPayload, QueueItem, QueueItemStatus,
    QueueType, ReceiptProcessPayload, ReceiptStatus, decode_payload,
)


class TestDecodePayload:
    def test_decodes_each_queue_type(self):
        assert isinstance(
            decode_payload("customer_ingest", {"action": "create", "data": {"name": "A"}}),
            CustomerIngestPayload,
        )
        assert isinstance(
            decode_payload(QueueType.ORDER_INGEST,
                           {"action": "create", "data": {"customer_id": "c1"}}),
            OrderIngestPayload,
        )
        assert isinstance(
            decode_payload(QueueType.CAMPAIGN_PROCESS,
                           {"campaign_id": "cmp1", "customer_ids": ["a"], "message": "Hi"}),
            CampaignProcessPayload,
        )
        assert isinstance(
            decode_payload(QueueType.DELIVERY_SEND,
                           {"log_id": "l1", "campaign_id": "cmp1",
                            "customer_id": "a", "message": "Hi"}),
            DeliverySendPayload,
        )
        receipt = decode_payload(QueueType.RECEIPT_PROCESS,
                                 {"log_id": "l1", "vendor_id": "v1", "status": "delivered"})
        assert isinstance(receipt, ReceiptProcessPayload)
        assert receipt.status == ReceiptStatus.DELIVERED

    def test_unknown_queue_type(self):
        with pytest.raises(InvalidPayloadError, match="Unknown queue type"):
            decode_payload("sms_blast", {})

    def test_missing_fields_reported(self):
        with pytest.raises(InvalidPayloadError) as exc:
            decode_payload(QueueType.DELIVERY_SEND, {"log_id": "l1"})
        fields = {e["loc"][0] for e in exc.value.details["errors"]}
        assert {"campaign_id", "customer_id", "message"} <= fields

    def test_invalid_payload_is_bad_request(self):
        with pytest.raises(BadRequestError):
            decode_payload(QueueType.RECEIPT_PROCESS,
                           {"log_id": "l1", "vendor_id": "v1", "status": "bounced"})

    @pytest.mark.parametrize("action", ["update", "delete"])
    def test_mutation_requires_id(self, action):
        with pytest.raises(InvalidPayloadError):
            decode_payload(QueueType.CUSTOMER_INGEST, {"action": action, "data": {"name": "A"}})

    def test_create_without_id_is_fine(self):
        payload = decode_payload(QueueType.CUSTOMER_INGEST,
                                 {"action": "create", "data": {"name": "A"}})
        assert payload.data == {"name": "A"}

    def test_model_instance_passes_through(self):
        payload = DeliverySendPayload(log_id="l1", campaign_id="c", customer_id="a", message="m")
        assert decode_payload(QueueType.DELIVERY_SEND, payload) is payload

    def test_other_model_is_revalidated(self):
        receipt = ReceiptProcessPayload(log_id="l1", vendor_id="v1", status="failed")
        with pytest.raises(InvalidPayloadError):
            decode_payload(QueueType.DELIVERY_SEND, receipt)


class TestRecords:
    def test_queue_item_defaults(self):
        item = QueueItem(type=QueueType.DELIVERY_SEND)
        assert item.status == QueueItemStatus.PENDING
        assert item.attempts == 0
        assert item.max_attempts == 3
        assert len(item.id) == 16

    def test_naive_datetimes_become_utc(self):
        log = CommunicationLog(
            campaign_id="c", customer_id="a", message="m",
            sent_at=datetime(2025, 3, 1, 12, 0, 0),
        )
        assert log.sent_at.tzinfo == timezone.utc
        assert log.created_at.tzinfo is not None

    def test_json_round_trip_keeps_status(self):
        log = CommunicationLog(campaign_id="c", customer_id="a", message="m",
                               status=LogStatus.SENT, vendor_id="v1")
        restored = CommunicationLog.model_validate(log.model_dump(mode="json"))
        assert restored.status == LogStatus.SENT
        assert restored.vendor_id == "v1"
        assert restored.created_at == log.created_at
