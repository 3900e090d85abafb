"""Tests for CRM connectors."""
import json

import httpx
import pytest

from backend.connector import (
    CRMError, InMemoryCRMConnector, RESTCRMConnector, create_crm_connector,
)
from config.settings import CRMConfig
from models.schemas import ServicingMode


def _rest(handler, **config):
    config.setdefault("base_url", "https://crm.test/api")
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=config["base_url"])
    return RESTCRMConnector(CRMConfig(**config), client=client)


class TestRESTCRMConnector:
    @pytest.mark.asyncio
    async def test_set_servicing_mode(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(204)

        crm = _rest(handler)
        await crm.set_servicing_mode("t1", "+5511999990000", ServicingMode.HUMAN)

        request = requests[0]
        assert request.method == "PUT"
        assert request.url.raw_path.decode() == "/api/tenants/t1/contacts/%2B5511999990000/status"
        assert json.loads(request.content) == {"status": "human"}
        await crm.close()

    @pytest.mark.asyncio
    async def test_custom_endpoint_template(self):
        paths = []

        def handler(request):
            paths.append(request.url.path)
            return httpx.Response(200, json={"ok": True})

        crm = _rest(handler, endpoints={"add_tag": "/v2/{tenant_id}/tag/{contact}"})
        await crm.add_tag("t1", "555", "vip")
        assert paths == ["/api/v2/t1/tag/555"]

    @pytest.mark.asyncio
    async def test_remove_tag_quotes_tag(self):
        paths = []

        def handler(request):
            paths.append(request.url.raw_path.decode())
            return httpx.Response(200)

        await _rest(handler).remove_tag("t1", "555", "big spender")
        assert paths == ["/api/tenants/t1/contacts/555/tags/big%20spender"]

    @pytest.mark.asyncio
    async def test_bot_reply_carries_context(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200)

        await _rest(handler).request_bot_reply("t1", "555", "Laptops", flow_context="[FLOW CONTEXT]")
        assert bodies == [{"message": "Laptops", "flow_context": "[FLOW CONTEXT]"}]

    @pytest.mark.asyncio
    async def test_client_error_not_retryable(self):
        crm = _rest(lambda request: httpx.Response(404, text="no such contact"))
        with pytest.raises(CRMError) as exc:
            await crm.notify_agent("t1", "555")
        assert exc.value.retryable is False
        assert exc.value.status_code == 404

    @pytest.mark.asyncio
    async def test_server_error_retryable(self):
        crm = _rest(lambda request: httpx.Response(502))
        with pytest.raises(CRMError) as exc:
            await crm.set_servicing_mode("t1", "555", ServicingMode.BOT)
        assert exc.value.retryable is True


class TestInMemoryCRMConnector:
    @pytest.mark.asyncio
    async def test_records_calls(self):
        crm = InMemoryCRMConnector()
        await crm.set_servicing_mode("t1", "555", ServicingMode.FLOW)
        await crm.add_tag("t1", "555", "vip")
        await crm.add_tag("t1", "555", "lead")
        await crm.remove_tag("t1", "555", "lead")
        await crm.notify_agent("t1", "555", "context")

        assert crm.mode_of("t1", "555") == ServicingMode.FLOW
        assert crm.tags_of("t1", "555") == {"vip"}
        assert crm.agent_notifications == [{"tenant_id": "t1", "contact": "555", "context": "context"}]

    @pytest.mark.asyncio
    async def test_scripted_failures(self):
        crm = InMemoryCRMConnector()
        crm.fail("add_tag", times=2)
        for _ in range(2):
            with pytest.raises(CRMError):
                await crm.add_tag("t1", "555", "vip")
        await crm.add_tag("t1", "555", "vip")
        assert crm.tags_of("t1", "555") == {"vip"}


class TestFactory:
    def test_in_memory_without_base_url(self):
        assert isinstance(create_crm_connector(CRMConfig()), InMemoryCRMConnector)

    def test_rest_with_base_url(self):
        assert isinstance(create_crm_connector(CRMConfig(base_url="https://crm.test")), RESTCRMConnector)
