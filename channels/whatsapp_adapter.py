"""
WhatsApp Cloud API delivery.

Sends text, reply-button and list messages through
POST {base_url}/{api_version}/{phone_number_id}/messages and returns the
platform message id (``messages[0].id``). Transport errors are retried with
tenacity; HTTP errors are mapped to DeliveryError, retryable for 429 and 5xx.
"""
from __future__ import annotations

import re
from typing import Any, Optional

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from channels.base import DeliveryError, MessageDelivery
from config.settings import WhatsAppConfig

logger = structlog.get_logger()


def normalize_phone(phone: str) -> str:
    """Normalize phone to digits only, stripping +, spaces, dashes."""
    return re.sub(r"[^\d]", "", phone)


class WhatsAppCloudDelivery(MessageDelivery):
    """WhatsApp Business Cloud API adapter."""

    channel_type = "whatsapp"

    def __init__(self, config: WhatsAppConfig, client: Optional[httpx.AsyncClient] = None):
        super().__init__()
        self.config = config
        self.client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                base_url=f"{self.config.base_url.rstrip('/')}/{self.config.api_version}",
                headers={"Authorization": f"Bearer {self.config.access_token}"},
                timeout=self.config.timeout_seconds,
            )
        return self.client

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, max=5),
        reraise=True,
    )
    async def _post(self, payload: dict[str, Any]) -> httpx.Response:
        client = await self._get_client()
        return await client.post(f"/{self.config.phone_number_id}/messages", json=payload)

    async def _deliver(self, contact: str, payload: dict[str, Any]) -> str:
        payload = {**payload, "to": normalize_phone(contact)}
        try:
            response = await self._post(payload)
        except httpx.TransportError as e:
            raise DeliveryError(f"WhatsApp API unreachable: {e}", self.channel_type,
                                retryable=True) from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code >= 400:
            message = (data.get("error") or {}).get("message") or response.text or response.reason_phrase
            retryable = response.status_code == 429 or response.status_code >= 500
            raise DeliveryError(
                f"WhatsApp API error {response.status_code}: {message}",
                self.channel_type, retryable=retryable, status_code=response.status_code,
            )

        messages = data.get("messages") or []
        message_id = messages[0].get("id") if messages and isinstance(messages[0], dict) else None
        if not message_id:
            raise DeliveryError("No message ID returned from WhatsApp API", self.channel_type,
                                retryable=False)

        logger.info("whatsapp_message_sent", to=payload["to"], kind=payload.get("type"),
                    msg_id=message_id)
        return message_id

    async def shutdown(self) -> None:
        if self.client is not None and not self.client.is_closed:
            await self.client.aclose()
