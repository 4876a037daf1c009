"""Messaging gateway: provider clients and the resilience wrapper around them."""
from channels.base import (
    GatewayError,
    TransientGatewayError,
    PermanentGatewayError,
    MessagingGateway,
    ResilientGateway,
    TokenBucketRateLimiter,
    CircuitBreaker,
    GatewayMetrics,
    normalize_gateway_error,
)
from channels.whatsapp_adapter import WhatsAppCloudGateway

__all__ = [
    "GatewayError", "TransientGatewayError", "PermanentGatewayError",
    "MessagingGateway", "ResilientGateway",
    "TokenBucketRateLimiter", "CircuitBreaker", "GatewayMetrics",
    "normalize_gateway_error", "WhatsAppCloudGateway",
]
