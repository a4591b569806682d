"""Messaging transport: the channel base and the WhatsApp Cloud API adapter."""
from channels.base import (
    MessagingChannel,
    ChannelError,
    RateLimitedError,
    CircuitOpenError,
    TokenBucketRateLimiter,
    CircuitBreaker,
    ChannelMetrics,
)
from channels.whatsapp_adapter import WhatsAppAdapter

__all__ = [
    "MessagingChannel", "ChannelError", "RateLimitedError", "CircuitOpenError",
    "TokenBucketRateLimiter", "CircuitBreaker", "ChannelMetrics",
    "WhatsAppAdapter",
]
