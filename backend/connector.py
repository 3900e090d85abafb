"""
CRM Connector: the contact-management side of a conversation.

The engine asks the CRM to switch who is servicing a contact (bot, human
agent or flow), to tag contacts, to alert an agent and to have the AI
assistant answer right after an AI hand-off. Endpoints are configured via
settings.yaml as named path templates.
"""
from __future__ import annotations

import abc
from typing import Any, Optional
from urllib.parse import quote

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import CRMConfig
from core.errors import CollaboratorError
from models.schemas import ServicingMode

logger = structlog.get_logger()


DEFAULT_ENDPOINTS = {
    "set_mode": "/tenants/{tenant_id}/contacts/{contact}/status",
    "add_tag": "/tenants/{tenant_id}/contacts/{contact}/tags",
    "remove_tag": "/tenants/{tenant_id}/contacts/{contact}/tags/{tag}",
    "notify_agent": "/tenants/{tenant_id}/handoffs",
    "bot_reply": "/tenants/{tenant_id}/contacts/{contact}/bot-reply",
}


class CRMError(CollaboratorError):
    pass


class CRMConnector(abc.ABC):
    """Abstract base for CRM connectors."""

    @abc.abstractmethod
    async def set_servicing_mode(self, tenant_id: str, contact: str, mode: ServicingMode) -> None:
        """Switch who answers the contact."""
        ...

    @abc.abstractmethod
    async def add_tag(self, tenant_id: str, contact: str, tag: str) -> None:
        ...

    @abc.abstractmethod
    async def remove_tag(self, tenant_id: str, contact: str, tag: str) -> None:
        ...

    @abc.abstractmethod
    async def notify_agent(self, tenant_id: str, contact: str, context: str = "") -> None:
        """Alert the human team that a contact is waiting."""
        ...

    @abc.abstractmethod
    async def request_bot_reply(self, tenant_id: str, contact: str, last_message: str,
                                flow_context: str = "") -> None:
        """
        Ask the AI assistant to answer the contact now.
        ``flow_context`` is a plain-text account of the path the contact took.
        """
        ...

    async def close(self):
        pass


class RESTCRMConnector(CRMConnector):
    """REST API CRM connector."""

    def __init__(self, config: CRMConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.auth_type == "bearer":
                token = self.config.auth_credentials.get("token", "")
                headers["Authorization"] = f"Bearer {token}"
            elif self.config.auth_type == "api_key":
                key_name = self.config.auth_credentials.get("header_name", "X-API-Key")
                headers[key_name] = self.config.auth_credentials.get("api_key", "")

            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=30.0,
            )
        return self.client

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, max=5),
        reraise=True,
    )
    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        client = await self._get_client()
        return await client.request(method, url, **kwargs)

    async def _request(self, method: str, endpoint: str, **kwargs) -> dict[str, Any]:
        url = self.config.endpoints.get(endpoint) or DEFAULT_ENDPOINTS.get(endpoint, endpoint)
        # Replace path parameters
        for k, v in kwargs.pop("path_params", {}).items():
            url = url.replace(f"{{{k}}}", quote(str(v), safe=""))

        try:
            response = await self._send(method, url, **kwargs)
        except httpx.TransportError as e:
            raise CRMError(f"CRM unreachable: {e}", retryable=True) from e

        if response.status_code >= 400:
            retryable = response.status_code == 429 or response.status_code >= 500
            raise CRMError(
                f"CRM {endpoint} failed with {response.status_code}: {response.text}",
                retryable=retryable, status_code=response.status_code,
            )
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {}

    async def set_servicing_mode(self, tenant_id: str, contact: str, mode: ServicingMode) -> None:
        await self._request(
            "PUT", "set_mode",
            path_params={"tenant_id": tenant_id, "contact": contact},
            json={"status": ServicingMode(mode).value},
        )

    async def add_tag(self, tenant_id: str, contact: str, tag: str) -> None:
        await self._request(
            "POST", "add_tag",
            path_params={"tenant_id": tenant_id, "contact": contact},
            json={"tag": tag},
        )

    async def remove_tag(self, tenant_id: str, contact: str, tag: str) -> None:
        await self._request(
            "DELETE", "remove_tag",
            path_params={"tenant_id": tenant_id, "contact": contact, "tag": tag},
        )

    async def notify_agent(self, tenant_id: str, contact: str, context: str = "") -> None:
        await self._request(
            "POST", "notify_agent",
            path_params={"tenant_id": tenant_id},
            json={"contact": contact, "reason": "flow_transfer", "context": context},
        )

    async def request_bot_reply(self, tenant_id: str, contact: str, last_message: str,
                                flow_context: str = "") -> None:
        await self._request(
            "POST", "bot_reply",
            path_params={"tenant_id": tenant_id, "contact": contact},
            json={"message": last_message, "flow_context": flow_context},
        )

    async def close(self):
        if self.client:
            await self.client.aclose()


class InMemoryCRMConnector(CRMConnector):
    """
    In-process CRM for development and testing.
    Records modes, tags, agent notifications and bot-reply requests.
    """

    def __init__(self):
        self.modes: dict[tuple[str, str], ServicingMode] = {}
        self.tags: dict[tuple[str, str], set[str]] = {}
        self.agent_notifications: list[dict[str, Any]] = []
        self.bot_requests: list[dict[str, Any]] = []
        self._failing: dict[str, int] = {}

    def fail(self, operation: str, times: int = 1):
        """Make the next ``times`` calls of ``operation`` raise CRMError."""
        self._failing[operation] = times

    def _maybe_fail(self, operation: str):
        remaining = self._failing.get(operation, 0)
        if remaining > 0:
            self._failing[operation] = remaining - 1
            raise CRMError(f"simulated {operation} failure", retryable=True)

    def mode_of(self, tenant_id: str, contact: str) -> Optional[ServicingMode]:
        return self.modes.get((tenant_id, contact))

    def tags_of(self, tenant_id: str, contact: str) -> set[str]:
        return set(self.tags.get((tenant_id, contact), set()))

    async def set_servicing_mode(self, tenant_id: str, contact: str, mode: ServicingMode) -> None:
        self._maybe_fail("set_servicing_mode")
        self.modes[(tenant_id, contact)] = ServicingMode(mode)
        logger.info("crm_mode_set", tenant_id=tenant_id, contact=contact, mode=ServicingMode(mode).value)

    async def add_tag(self, tenant_id: str, contact: str, tag: str) -> None:
        self._maybe_fail("add_tag")
        self.tags.setdefault((tenant_id, contact), set()).add(tag)

    async def remove_tag(self, tenant_id: str, contact: str, tag: str) -> None:
        self._maybe_fail("remove_tag")
        self.tags.setdefault((tenant_id, contact), set()).discard(tag)

    async def notify_agent(self, tenant_id: str, contact: str, context: str = "") -> None:
        self._maybe_fail("notify_agent")
        self.agent_notifications.append({"tenant_id": tenant_id, "contact": contact, "context": context})

    async def request_bot_reply(self, tenant_id: str, contact: str, last_message: str,
                                flow_context: str = "") -> None:
        self._maybe_fail("request_bot_reply")
        self.bot_requests.append({
            "tenant_id": tenant_id, "contact": contact,
            "last_message": last_message, "flow_context": flow_context,
        })


def create_crm_connector(config: CRMConfig) -> CRMConnector:
    """Factory function to create the appropriate CRM connector."""
    if config.base_url:
        return RESTCRMConnector(config)
    logger.warning("using_in_memory_crm", reason="crm base_url empty")
    return InMemoryCRMConnector()
