"""Outbound message delivery for the flow engine."""
from channels.base import (
    MessageDelivery,
    DeliveryError,
    CircuitOpenError,
    CircuitBreaker,
    DeliveryMetrics,
)
from channels.whatsapp_adapter import WhatsAppCloudDelivery
from channels.outbox_adapter import OutboxDelivery, SentMessage

__all__ = [
    "MessageDelivery", "DeliveryError", "CircuitOpenError",
    "CircuitBreaker", "DeliveryMetrics",
    "WhatsAppCloudDelivery", "OutboxDelivery", "SentMessage",
]
