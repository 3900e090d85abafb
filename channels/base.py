"""
Message delivery base infrastructure.

Provides:
- DeliveryError / CircuitOpenError: structured delivery failures
- CircuitBreaker: failure-counting breaker with half-open trial call
- DeliveryMetrics: send/fail/latency tracking
- MessageDelivery: abstract base that validates interactive limits, builds the
  Cloud API payload and wraps every send with the breaker and metrics
"""
from __future__ import annotations

import abc
import time
from collections import deque
from typing import Any

import structlog

from channels.interactive import (
    button_errors, buttons_payload, list_errors, list_payload, text_payload,
)
from core.errors import CollaboratorError
from models.schemas import ListSection, ReplyButton

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class DeliveryError(CollaboratorError):
    """A message could not be handed to the messaging platform."""

    def __init__(self, message: str, channel: str = "whatsapp", retryable: bool = True,
                 status_code: int = None):
        self.channel = channel
        super().__init__(message, retryable=retryable, status_code=status_code)


class CircuitOpenError(DeliveryError):
    def __init__(self, channel: str = "whatsapp"):
        super().__init__(f"Circuit breaker open for {channel}", channel, retryable=True)


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
        if self._state == "open":
            if time.monotonic() - self._opened_at >= self.recovery_timeout:
                return "half_open"
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == "open"

    def record_failure(self):
        self._failure_count += 1
        if self.state == "half_open" or self._failure_count >= self.failure_threshold:
            self._open()

    def record_success(self):
        self._state = "closed"
        self._failure_count = 0

    def _open(self):
        self._state = "open"
        self._opened_at = time.monotonic()
        logger.warning("circuit_opened", failures=self._failure_count)

    @property
    def stats(self) -> dict[str, Any]:
        return {"state": self.state, "failure_count": self._failure_count}


# ══════════════════════════════════════════════════════════════
#  METRICS
# ══════════════════════════════════════════════════════════════

LATENCY_WINDOW = 500
RECENT_ERRORS = 10


class DeliveryMetrics:
    """Tracks send, failure and latency counts for one delivery channel."""

    def __init__(self):
        self.messages_sent: int = 0
        self.messages_failed: int = 0
        self._latencies: deque[float] = deque(maxlen=LATENCY_WINDOW)
        self._errors: deque[str] = deque(maxlen=RECENT_ERRORS)

    def record_send(self, latency_ms: float = 0.0):
        self.messages_sent += 1
        if latency_ms > 0:
            self._latencies.append(latency_ms)

    def record_failure(self, error: str = ""):
        self.messages_failed += 1
        if error:
            self._errors.append(error)

    @property
    def avg_latency_ms(self) -> float:
        return sum(self._latencies) / len(self._latencies) if self._latencies else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "sent": self.messages_sent,
            "failed": self.messages_failed,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "recent_errors": list(self._errors),
        }


# ══════════════════════════════════════════════════════════════
#  MESSAGE DELIVERY: Abstract Base
# ══════════════════════════════════════════════════════════════

class MessageDelivery(abc.ABC):
    """
    Base class for outbound messaging.

    Subclasses implement _deliver, which transports one Cloud API payload and
    returns the platform message id. Interactive limits are checked here, so an
    oversized message fails with a non-retryable DeliveryError before any I/O.
    """

    channel_type: str = "whatsapp"

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self._breaker = CircuitBreaker(failure_threshold, recovery_timeout)
        self._metrics = DeliveryMetrics()

    # ── Abstract hooks ────────────────────────────────────────

    @abc.abstractmethod
    async def _deliver(self, contact: str, payload: dict[str, Any]) -> str:
        ...

    # ── Public send ───────────────────────────────────────────

    async def send_text(self, contact: str, text: str) -> str:
        if not text or not text.strip():
            raise DeliveryError("Text message is empty", self.channel_type, retryable=False)
        return await self._send(contact, text_payload(contact, text))

    async def send_buttons(self, contact: str, body: str, buttons: list[ReplyButton],
                           footer: str = "") -> str:
        errors = button_errors(body, buttons, footer)
        if errors:
            raise DeliveryError("; ".join(errors), self.channel_type, retryable=False)
        return await self._send(contact, buttons_payload(contact, body, buttons, footer))

    async def send_list(self, contact: str, body: str, sections: list[ListSection],
                        button_text: str, header: str = "", footer: str = "") -> str:
        errors = list_errors(body, sections, button_text, header, footer)
        if errors:
            raise DeliveryError("; ".join(errors), self.channel_type, retryable=False)
        return await self._send(
            contact, list_payload(contact, body, sections, button_text, header, footer)
        )

    async def _send(self, contact: str, payload: dict[str, Any]) -> str:
        if self._breaker.is_open:
            self._metrics.record_failure("circuit_open")
            raise CircuitOpenError(self.channel_type)

        start = time.monotonic()
        try:
            message_id = await self._deliver(contact, payload)
        except DeliveryError as e:
            if e.retryable:
                self._breaker.record_failure()
            self._metrics.record_failure(str(e))
            logger.warning("message_delivery_failed", channel=self.channel_type,
                           contact=contact, kind=payload.get("type"), error=str(e),
                           retryable=e.retryable)
            raise

        latency = (time.monotonic() - start) * 1000
        self._breaker.record_success()
        self._metrics.record_send(latency)
        logger.debug("message_delivered", channel=self.channel_type, contact=contact,
                     kind=payload.get("type"), message_id=message_id)
        return message_id

    # ── Health ────────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        return {
            "channel": self.channel_type,
            "circuit_breaker": self._breaker.stats,
            "metrics": self._metrics.to_dict(),
        }

    async def shutdown(self) -> None:
        pass
