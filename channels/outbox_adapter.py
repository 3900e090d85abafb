"""
Outbox delivery: records every outbound payload instead of sending it.

Used in development and tests. Failures can be scripted with ``fail_next`` to
exercise the engine's retry path.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from channels.base import DeliveryError, MessageDelivery


@dataclass
class SentMessage:
    contact: str
    kind: str                                # "text" | "button" | "list"
    payload: dict[str, Any]
    message_id: str
    sent_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def text(self) -> str:
        """Text body, or the interactive body for button/list messages."""
        if self.kind == "text":
            return self.payload["text"]["body"]
        return self.payload["interactive"]["body"]["text"]

    @property
    def option_ids(self) -> list[str]:
        interactive = self.payload.get("interactive", {})
        action = interactive.get("action", {})
        if self.kind == "button":
            return [b["reply"]["id"] for b in action.get("buttons", [])]
        if self.kind == "list":
            return [r["id"] for s in action.get("sections", []) for r in s.get("rows", [])]
        return []


class OutboxDelivery(MessageDelivery):
    channel_type = "outbox"

    def __init__(self):
        # never trip the breaker; tests script failures explicitly
        super().__init__(failure_threshold=1_000_000)
        self.sent: list[SentMessage] = []
        self._failures: list[DeliveryError] = []

    def fail_next(self, count: int = 1, retryable: bool = True, message: str = "simulated outage"):
        for _ in range(count):
            self._failures.append(DeliveryError(message, self.channel_type, retryable=retryable))

    def messages_for(self, contact: str) -> list[SentMessage]:
        return [m for m in self.sent if m.contact == contact]

    def clear(self):
        self.sent.clear()
        self._failures.clear()

    async def _deliver(self, contact: str, payload: dict[str, Any]) -> str:
        if self._failures:
            raise self._failures.pop(0)
        kind = payload["interactive"]["type"] if payload.get("type") == "interactive" else payload["type"]
        message_id = f"wamid.{uuid.uuid4().hex[:20]}"
        self.sent.append(SentMessage(contact=contact, kind=kind, payload=payload, message_id=message_id))
        return message_id
