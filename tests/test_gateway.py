"""Tests for the delivery gateways, circuit breaker and gateway factory."""
import asyncio
import json
import random
import time

import httpx
import pytest

from channels.base import CircuitBreaker, DeliveryGateway, VendorTransportError
from channels.vendor_adapter import HttpVendorGateway, SimulatedVendorGateway, create_gateway
from config.settings import VendorConfig
from models.schemas import VendorRequest, VendorResponse


def _request(log_id: str = "log_1") -> VendorRequest:
    return VendorRequest(log_id=log_id, campaign_id="cmp_1", customer_id="cust_a",
                         customer_name="Asha Rao", customer_email="asha@example.com",
                         message="20% off today")


class FlakyGateway(DeliveryGateway):
    channel_name = "flaky"

    def __init__(self, fail_times: int, **kwargs):
        super().__init__(**kwargs)
        self.fail_times = fail_times
        self.calls = 0

    async def _do_send(self, request):
        self.calls += 1
        if self.calls <= self.fail_times:
            raise VendorTransportError("connection reset", self.channel_name)
        return VendorResponse(accepted=True, vendor_id=f"v{self.calls}")


class TestCircuitBreaker:
    def test_opens_after_threshold(self):
        breaker = CircuitBreaker(failure_threshold=3, recovery_timeout=60)
        for _ in range(2):
            breaker.record_failure()
        assert breaker.state == "closed"
        breaker.record_failure()
        assert breaker.is_open

    def test_half_open_after_timeout(self):
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=0.01)
        breaker.record_failure()
        assert breaker.is_open
        time.sleep(0.02)
        assert breaker.state == "half_open"
        breaker.record_success()
        assert breaker.state == "closed"
        assert breaker.stats["failure_count"] == 0


class TestDeliveryGatewayBase:
    @pytest.mark.asyncio
    async def test_transport_error_becomes_rejection(self):
        gateway = FlakyGateway(fail_times=1)
        response = await gateway.send(_request())
        assert response.accepted is False
        assert "connection reset" in response.error

        response = await gateway.send(_request())
        assert response.accepted is True

    @pytest.mark.asyncio
    async def test_open_breaker_short_circuits(self):
        gateway = FlakyGateway(fail_times=10,
                               breaker=CircuitBreaker(failure_threshold=2, recovery_timeout=60))
        await gateway.send(_request())
        await gateway.send(_request())
        response = await gateway.send(_request())

        assert response.error == "Vendor circuit open"
        assert gateway.calls == 2

    @pytest.mark.asyncio
    async def test_vendor_rejection_does_not_trip_breaker(self):
        class RejectingGateway(DeliveryGateway):
            async def _do_send(self, request):
                return VendorResponse(accepted=False, error="Invalid recipient address")

        gateway = RejectingGateway(breaker=CircuitBreaker(failure_threshold=1))
        for _ in range(3):
            assert (await gateway.send(_request())).error == "Invalid recipient address"
        health = await gateway.health_check()
        assert health["circuit_breaker"]["state"] == "closed"
        assert health["metrics"]["rejected"] == 3

    @pytest.mark.asyncio
    async def test_timeout(self):
        class SlowGateway(DeliveryGateway):
            async def _do_send(self, request):
                await asyncio.sleep(1)
                return VendorResponse(accepted=True, vendor_id="late")

        gateway = SlowGateway(timeout_s=0.01)
        response = await gateway.send(_request())
        assert response.accepted is False
        assert "timeout" in response.error
        assert (await gateway.health_check())["metrics"]["timeouts"] == 1


class TestSimulatedVendorGateway:
    @pytest.mark.asyncio
    async def test_always_accepts_at_full_rate(self):
        gateway = SimulatedVendorGateway(success_rate=1.0, rng=random.Random(7))
        responses = [await gateway.send(_request(f"log_{n}")) for n in range(20)]
        assert all(r.accepted for r in responses)
        assert len({r.vendor_id for r in responses}) == 20

    @pytest.mark.asyncio
    async def test_always_rejects_at_zero_rate(self):
        gateway = SimulatedVendorGateway(success_rate=0.0, rng=random.Random(7))
        response = await gateway.send(_request())
        assert response.accepted is False
        assert response.error

    @pytest.mark.asyncio
    async def test_seeded_outcomes_are_reproducible(self):
        async def outcomes(seed):
            gateway = SimulatedVendorGateway(success_rate=0.5, rng=random.Random(seed))
            return [(await gateway.send(_request())).accepted for _ in range(30)]

        first = await outcomes(42)
        assert first == await outcomes(42)
        assert True in first and False in first


class TestHttpVendorGateway:
    def _gateway(self, handler) -> HttpVendorGateway:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler),
                                   base_url="https://vendor.test")
        return HttpVendorGateway("https://vendor.test", timeout_s=5, client=client)

    @pytest.mark.asyncio
    async def test_successful_send(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"success": True, "vendorId": "vnd_123"})

        gateway = self._gateway(handler)
        response = await gateway.send(_request())
        await gateway.shutdown()

        assert response == VendorResponse(accepted=True, vendor_id="vnd_123")
        assert seen["path"] == "/vendor/send"
        assert seen["body"] == {
            "customerId": "cust_a", "customerName": "Asha Rao",
            "customerEmail": "asha@example.com", "message": "20% off today",
            "campaignId": "cmp_1", "logId": "log_1",
        }

    @pytest.mark.asyncio
    async def test_vendor_id_nested_under_data(self):
        gateway = self._gateway(lambda r: httpx.Response(
            200, json={"success": True, "data": {"vendorId": "vnd_456", "status": "sent"}}))
        response = await gateway.send(_request())
        await gateway.shutdown()
        assert response == VendorResponse(accepted=True, vendor_id="vnd_456")

    @pytest.mark.asyncio
    async def test_vendor_reported_failure(self):
        gateway = self._gateway(
            lambda r: httpx.Response(200, json={"success": False, "error": "Blocked number"}))
        response = await gateway.send(_request())
        assert response.accepted is False
        assert response.error == "Blocked number"

    @pytest.mark.asyncio
    async def test_failure_without_error_text(self):
        gateway = self._gateway(lambda r: httpx.Response(200, json={"success": False}))
        assert (await gateway.send(_request())).error == "Vendor API error"

    @pytest.mark.asyncio
    async def test_server_error_is_rejection(self):
        gateway = self._gateway(lambda r: httpx.Response(503, text="unavailable"))
        response = await gateway.send(_request())
        assert response.accepted is False
        assert "503" in response.error

    @pytest.mark.asyncio
    async def test_invalid_json_is_rejection(self):
        gateway = self._gateway(lambda r: httpx.Response(200, text="<html>"))
        response = await gateway.send(_request())
        assert response.accepted is False
        assert "invalid JSON" in response.error

    @pytest.mark.asyncio
    async def test_connection_error_is_rejection(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        response = await self._gateway(handler).send(_request())
        assert response.accepted is False
        assert "Vendor request failed" in response.error


class TestCreateGateway:
    def test_simulated_by_default(self):
        assert isinstance(create_gateway(), SimulatedVendorGateway)

    def test_http_with_base_url(self):
        gateway = create_gateway(VendorConfig(mode="http", base_url="https://vendor.test"))
        assert isinstance(gateway, HttpVendorGateway)
        assert gateway.base_url == "https://vendor.test"

    def test_http_without_base_url_falls_back(self):
        assert isinstance(create_gateway(VendorConfig(mode="http")), SimulatedVendorGateway)
