"""
Delivery Gateway — Base infrastructure for vendor delivery channels.

Provides:
- ChannelError: structured error hierarchy
- CircuitBreaker: failure-counting breaker with half-open probe
- GatewayMetrics: accept/reject/latency tracking
- DeliveryGateway: abstract base wrapping every vendor call with a timeout,
  the breaker and metrics

A gateway call never raises for a vendor-side problem: rejections, transport
errors and timeouts all come back as ``VendorResponse(accepted=False, error=...)``.
Only programming errors propagate.
"""
from __future__ import annotations

import abc
import asyncio
import time
import structlog
from typing import Any

from models.schemas import VendorRequest, VendorResponse

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all channel operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class VendorTransportError(ChannelError):
    """The vendor could not be reached or answered with a non-2xx status."""

    def __init__(self, message: str, channel: str = "", status_code: int = 0):
        self.status_code = status_code
        super().__init__(message, channel, retryable=True)


# ══════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    Synchronous circuit breaker with failure counting.

    closed → open (after threshold failures) → half_open (after timeout) →
    closed (on success) or open (on failure).
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = "closed"
        self._failure_count = 0
        self._opened_at: float = 0.0

    @property
    def state(self) -> str:
        if self._state == "open" and time.monotonic() - self._opened_at >= self.recovery_timeout:
            return "half_open"
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == "open"

    def record_failure(self):
        self._failure_count += 1
        if self.state == "half_open" or self._failure_count >= self.failure_threshold:
            self._state = "open"
            self._opened_at = time.monotonic()
            logger.warning("circuit_opened", failures=self._failure_count)

    def record_success(self):
        self._state = "closed"
        self._failure_count = 0

    @property
    def stats(self) -> dict[str, Any]:
        return {"state": self.state, "failure_count": self._failure_count}


# ══════════════════════════════════════════════════════════════
#  GATEWAY METRICS
# ══════════════════════════════════════════════════════════════

class GatewayMetrics:
    """Tracks accepted/rejected sends and vendor latency."""

    def __init__(self, channel: str):
        self.channel = channel
        self.accepted: int = 0
        self.rejected: int = 0
        self.timeouts: int = 0
        self._latencies: list[float] = []
        self._errors: list[str] = []

    def record_accept(self, latency_ms: float):
        self.accepted += 1
        self._latencies.append(latency_ms)

    def record_reject(self, error: str = "", timeout: bool = False):
        self.rejected += 1
        if timeout:
            self.timeouts += 1
        if error:
            self._errors.append(error)

    @property
    def avg_latency_ms(self) -> float:
        return sum(self._latencies) / len(self._latencies) if self._latencies else 0.0

    @property
    def reject_rate(self) -> float:
        total = self.accepted + self.rejected
        return self.rejected / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "accepted": self.accepted,
            "rejected": self.rejected,
            "timeouts": self.timeouts,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "reject_rate": round(self.reject_rate, 4),
            "recent_errors": self._errors[-10:],
        }


# ══════════════════════════════════════════════════════════════
#  DELIVERY GATEWAY BASE
# ══════════════════════════════════════════════════════════════

class DeliveryGateway(abc.ABC):
    """
    Turns one communication intent into one vendor call.

    Subclasses implement ``_do_send`` and may raise ChannelError for
    transport problems; ``send`` converts those (and timeouts) to rejections.
    """

    channel_name: str = "vendor"

    def __init__(self, timeout_s: float = 30.0, breaker: CircuitBreaker = None):
        self.timeout_s = timeout_s
        self._breaker = breaker or CircuitBreaker()
        self._metrics = GatewayMetrics(self.channel_name)

    @abc.abstractmethod
    async def _do_send(self, request: VendorRequest) -> VendorResponse:
        ...

    async def send(self, request: VendorRequest) -> VendorResponse:
        if self._breaker.is_open:
            self._metrics.record_reject("circuit_open")
            return VendorResponse(accepted=False, error="Vendor circuit open")

        start = time.monotonic()
        try:
            response = await asyncio.wait_for(self._do_send(request), timeout=self.timeout_s)
        except asyncio.TimeoutError:
            error = f"Vendor timeout after {self.timeout_s}s"
            self._breaker.record_failure()
            self._metrics.record_reject(error, timeout=True)
            logger.warning("vendor_send_timeout", log_id=request.log_id, timeout_s=self.timeout_s)
            return VendorResponse(accepted=False, error=error)
        except ChannelError as e:
            self._breaker.record_failure()
            self._metrics.record_reject(str(e))
            logger.warning("vendor_send_error", log_id=request.log_id, error=str(e))
            return VendorResponse(accepted=False, error=str(e))

        latency = (time.monotonic() - start) * 1000
        self._breaker.record_success()
        if response.accepted:
            self._metrics.record_accept(latency)
        else:
            self._metrics.record_reject(response.error or "")
        logger.debug("vendor_send_result",
                     log_id=request.log_id, accepted=response.accepted,
                     vendor_id=response.vendor_id, latency_ms=round(latency, 1))
        return response

    async def health_check(self) -> dict[str, Any]:
        return {
            "channel": self.channel_name,
            "circuit_breaker": self._breaker.stats,
            "metrics": self._metrics.to_dict(),
        }

    async def shutdown(self) -> None:
        pass
