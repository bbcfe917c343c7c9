"""Delivery gateways to third-party messaging vendors."""
from channels.base import (
    ChannelError,
    VendorTransportError,
    CircuitBreaker,
    GatewayMetrics,
    DeliveryGateway,
)
from channels.vendor_adapter import HttpVendorGateway, SimulatedVendorGateway, create_gateway

__all__ = [
    "ChannelError", "VendorTransportError", "CircuitBreaker", "GatewayMetrics",
    "DeliveryGateway", "HttpVendorGateway", "SimulatedVendorGateway", "create_gateway",
]
