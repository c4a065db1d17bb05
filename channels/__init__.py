"""Delivery channels for rendered notifications."""
from channels.base import (
    ChannelAdapter,
    ChannelError,
    CircuitBreaker,
    CircuitOpenError,
    DeliveryStatus,
)
from channels.messaging_adapter import MessagingAdapter

__all__ = [
    "ChannelAdapter", "ChannelError", "CircuitBreaker", "CircuitOpenError",
    "DeliveryStatus", "MessagingAdapter",
]
