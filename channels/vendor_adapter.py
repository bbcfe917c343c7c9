"""
Vendor Gateways — Concrete delivery channels.

- SimulatedVendorGateway: in-process vendor that accepts a configurable share
  of sends and assigns vendor ids (development, demos, tests)
- HttpVendorGateway: posts to ``{base_url}/vendor/send`` over httpx
"""
from __future__ import annotations

import asyncio
import random
import uuid
import structlog
from typing import Optional

import httpx

from channels.base import CircuitBreaker, DeliveryGateway, VendorTransportError
from config.settings import VendorConfig
from models.schemas import VendorRequest, VendorResponse

logger = structlog.get_logger()

_SIMULATED_ERRORS = [
    "Recipient mailbox unavailable",
    "Invalid recipient address",
    "Message rejected by carrier",
]


class SimulatedVendorGateway(DeliveryGateway):
    """
    Accepts each send with probability ``success_rate``.

    Pass ``rng=random.Random(seed)`` for reproducible outcomes.
    """

    channel_name = "simulated_vendor"

    def __init__(
        self,
        success_rate: float = 0.9,
        min_latency_ms: int = 0,
        max_latency_ms: int = 0,
        timeout_s: float = 30.0,
        rng: Optional[random.Random] = None,
    ):
        super().__init__(timeout_s=timeout_s)
        self.success_rate = success_rate
        self.min_latency_ms = min_latency_ms
        self.max_latency_ms = max(max_latency_ms, min_latency_ms)
        self._rng = rng or random.Random()

    async def _do_send(self, request: VendorRequest) -> VendorResponse:
        if self.max_latency_ms > 0:
            delay_ms = self._rng.uniform(self.min_latency_ms, self.max_latency_ms)
            await asyncio.sleep(delay_ms / 1000)

        if self._rng.random() < self.success_rate:
            return VendorResponse(accepted=True, vendor_id=f"vendor_{uuid.uuid4().hex[:12]}")
        return VendorResponse(accepted=False, error=self._rng.choice(_SIMULATED_ERRORS))


class HttpVendorGateway(DeliveryGateway):
    """
    REST vendor client.

    Request body:  {customerId, customerName, customerEmail, message, campaignId, logId}
    Response body: {success: bool, vendorId: str, error?: str}
    """

    channel_name = "http_vendor"

    def __init__(
        self,
        base_url: str,
        timeout_s: float = 30.0,
        user_agent: str = "Campaign-Pipeline/1.0",
        client: Optional[httpx.AsyncClient] = None,
        breaker: CircuitBreaker = None,
    ):
        super().__init__(timeout_s=timeout_s, breaker=breaker)
        self.base_url = base_url.rstrip("/")
        self.user_agent = user_agent
        self.client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={"Content-Type": "application/json", "User-Agent": self.user_agent},
                timeout=self.timeout_s,
            )
        return self.client

    async def _do_send(self, request: VendorRequest) -> VendorResponse:
        client = await self._get_client()
        body = {
            "customerId": request.customer_id,
            "customerName": request.customer_name,
            "customerEmail": request.customer_email,
            "message": request.message,
            "campaignId": request.campaign_id,
            "logId": request.log_id,
        }
        try:
            response = await client.post("/vendor/send", json=body)
        except httpx.HTTPError as e:
            raise VendorTransportError(f"Vendor request failed: {e}", self.channel_name)

        if response.status_code >= 400:
            raise VendorTransportError(
                f"Vendor API returned {response.status_code}",
                self.channel_name, status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError:
            raise VendorTransportError("Vendor API returned invalid JSON", self.channel_name)

        # Accepted sends nest the id: {"success": true, "data": {"vendorId": ...}}
        nested = data.get("data") if isinstance(data.get("data"), dict) else {}
        vendor_id = (nested.get("vendorId") or data.get("vendorId")
                     or data.get("vendor_id"))
        if data.get("success", True) and vendor_id:
            return VendorResponse(accepted=True, vendor_id=str(vendor_id))
        return VendorResponse(accepted=False, error=data.get("error") or "Vendor API error")

    async def shutdown(self) -> None:
        if self.client:
            await self.client.aclose()


def create_gateway(config: VendorConfig = None) -> DeliveryGateway:
    """Factory function to create the configured delivery gateway."""
    config = config or VendorConfig()
    if config.mode == "http" and config.base_url:
        logger.info("gateway_created", mode="http", base_url=config.base_url)
        return HttpVendorGateway(
            base_url=config.base_url,
            timeout_s=config.timeout_s,
            user_agent=config.user_agent,
        )
    if config.mode == "http":
        logger.warning("using_simulated_vendor", reason="vendor.base_url is empty")
    logger.info("gateway_created", mode="simulated", success_rate=config.success_rate)
    return SimulatedVendorGateway(
        success_rate=config.success_rate,
        min_latency_ms=config.min_latency_ms,
        max_latency_ms=config.max_latency_ms,
        timeout_s=config.timeout_s,
    )
