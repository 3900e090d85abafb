"""Tests for outbound delivery: interactive limits, WhatsApp Cloud API, outbox."""
import json

import httpx
import pytest

from channels.base import (
    RECENT_ERRORS, CircuitBreaker, CircuitOpenError, DeliveryError, DeliveryMetrics,
)
from channels.interactive import (
    MAX_TOTAL_ROWS, button_errors, buttons_payload, list_errors, list_payload, text_payload,
)
from channels.outbox_adapter import OutboxDelivery
from channels.whatsapp_adapter import WhatsAppCloudDelivery, normalize_phone
from config.settings import WhatsAppConfig
from models.schemas import ListRow, ListSection, ReplyButton


def _buttons(*titles):
    return [ReplyButton(id=f"b{i}", title=t) for i, t in enumerate(titles)]


def _section(n, prefix="r", title="Items"):
    return ListSection(title=title, rows=[ListRow(id=f"{prefix}{i}", title=f"Item {i}") for i in range(n)])


class TestInteractiveLimits:
    def test_valid_buttons(self):
        assert button_errors("Pick one", _buttons("Yes", "No")) == []

    def test_too_many_buttons(self):
        assert "maximum 3 buttons allowed (got 4)" in button_errors("Pick", _buttons("a", "b", "c", "d"))

    def test_button_title_bytes(self):
        errors = button_errors("Pick", _buttons("ü" * 11))
        assert errors and "22 bytes, max 20" in errors[0]

    def test_body_required(self):
        assert "body text is required" in button_errors("  ", _buttons("a"))

    def test_list_rows_per_section(self):
        errors = list_errors("Choose", [_section(11)], "Open")
        assert any("maximum 10 rows per section" in e for e in errors)

    def test_list_total_rows(self):
        sections = [_section(10, prefix=f"s{i}-", title=f"S{i}") for i in range(11)]
        errors = list_errors("Choose", sections, "Open")
        assert "maximum 10 sections allowed (got 11)" in errors
        assert f"maximum {MAX_TOTAL_ROWS} total rows allowed (got 110)" in errors

    def test_list_row_ids_unique_across_sections(self):
        errors = list_errors("Choose", [_section(2), _section(2)], "Open")
        assert "row ids must be unique across all sections" in errors

    def test_list_button_text(self):
        assert "list button text is required" in list_errors("Choose", [_section(1)], "")
        assert any("button text too long" in e for e in list_errors("Choose", [_section(1)], "x" * 21))


class TestPayloads:
    def test_text(self):
        payload = text_payload("5511", "Hi")
        assert payload["type"] == "text"
        assert payload["text"] == {"preview_url": False, "body": "Hi"}

    def test_buttons(self):
        payload = buttons_payload("5511", "Pick", _buttons("Yes"), footer="Thanks")
        interactive = payload["interactive"]
        assert interactive["type"] == "button"
        assert interactive["action"]["buttons"] == [{"type": "reply", "reply": {"id": "b0", "title": "Yes"}}]
        assert interactive["footer"] == {"text": "Thanks"}

    def test_list_omits_empty_fields(self):
        sections = [ListSection(rows=[ListRow(id="r1", title="One")])]
        interactive = list_payload("5511", "Choose", sections, "Open")["interactive"]
        assert "header" not in interactive
        assert interactive["action"] == {"button": "Open", "sections": [{"rows": [{"id": "r1", "title": "One"}]}]}

    def test_list_header_and_description(self):
        sections = [ListSection(title="Phones", rows=[ListRow(id="r1", title="One", description="Best")])]
        interactive = list_payload("5511", "Choose", sections, "Open", header="Store")["interactive"]
        assert interactive["header"] == {"type": "text", "text": "Store"}
        assert interactive["action"]["sections"][0]["title"] == "Phones"
        assert interactive["action"]["sections"][0]["rows"][0]["description"] == "Best"


def _whatsapp(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler),
                               base_url="https://graph.test/v18.0")
    config = WhatsAppConfig(phone_number_id="12345", access_token="token")
    return WhatsAppCloudDelivery(config, client=client)


class TestWhatsAppCloudDelivery:
    def test_normalize_phone(self):
        assert normalize_phone("+55 (11) 99999-0000") == "5511999990000"

    @pytest.mark.asyncio
    async def test_send_text_returns_message_id(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"messages": [{"id": "wamid.ABC"}]})

        delivery = _whatsapp(handler)
        assert await delivery.send_text("+5511999990000", "Hello") == "wamid.ABC"

        request = requests[0]
        assert request.url.path == "/v18.0/12345/messages"
        body = json.loads(request.content)
        assert body["to"] == "5511999990000"
        assert body["text"]["body"] == "Hello"
        await delivery.shutdown()

    @pytest.mark.asyncio
    async def test_send_buttons(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"messages": [{"id": "wamid.B"}]})

        delivery = _whatsapp(handler)
        await delivery.send_buttons("+5511999990000", "Pick", _buttons("Yes", "No"))
        assert bodies[0]["interactive"]["type"] == "button"
        await delivery.shutdown()

    @pytest.mark.asyncio
    async def test_client_error_not_retryable(self):
        delivery = _whatsapp(lambda request: httpx.Response(
            400, json={"error": {"message": "Invalid parameter"}}))
        with pytest.raises(DeliveryError) as exc:
            await delivery.send_text("+5511999990000", "Hello")
        assert exc.value.retryable is False
        assert exc.value.status_code == 400
        assert "Invalid parameter" in str(exc.value)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 500, 503])
    async def test_throttling_and_server_errors_retryable(self, status):
        delivery = _whatsapp(lambda request: httpx.Response(status, text="busy"))
        with pytest.raises(DeliveryError) as exc:
            await delivery.send_text("+5511999990000", "Hello")
        assert exc.value.retryable is True
        assert exc.value.status_code == status

    @pytest.mark.asyncio
    async def test_missing_message_id(self):
        delivery = _whatsapp(lambda request: httpx.Response(200, json={"messages": []}))
        with pytest.raises(DeliveryError) as exc:
            await delivery.send_text("+5511999990000", "Hello")
        assert exc.value.retryable is False

    @pytest.mark.asyncio
    async def test_oversized_message_rejected_before_io(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={"messages": [{"id": "x"}]})

        delivery = _whatsapp(handler)
        with pytest.raises(DeliveryError) as exc:
            await delivery.send_buttons("+5511999990000", "Pick", _buttons("a", "b", "c", "d"))
        assert exc.value.retryable is False
        assert calls == []

    @pytest.mark.asyncio
    async def test_health_check_reports_metrics(self):
        delivery = _whatsapp(lambda request: httpx.Response(200, json={"messages": [{"id": "m"}]}))
        await delivery.send_text("+5511999990000", "Hello")
        health = await delivery.health_check()
        assert health["metrics"]["sent"] == 1
        assert health["circuit_breaker"]["state"] == "closed"


class TestCircuitBreaker:
    def test_opens_after_threshold(self):
        breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=60)
        breaker.record_failure()
        assert not breaker.is_open
        breaker.record_failure()
        assert breaker.is_open

    def test_half_open_after_timeout(self):
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=0)
        breaker.record_failure()
        assert breaker.state == "half_open"
        breaker.record_success()
        assert breaker.state == "closed"

    @pytest.mark.asyncio
    async def test_open_breaker_rejects_sends(self):
        delivery = _whatsapp(lambda request: httpx.Response(503))
        delivery._breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=60)
        with pytest.raises(DeliveryError):
            await delivery.send_text("+5511999990000", "Hello")
        with pytest.raises(CircuitOpenError):
            await delivery.send_text("+5511999990000", "Hello")


class TestDeliveryMetrics:
    def test_averages_latency(self):
        metrics = DeliveryMetrics()
        metrics.record_send(10.0)
        metrics.record_send(30.0)
        metrics.record_send()
        assert metrics.to_dict()["sent"] == 3
        assert metrics.avg_latency_ms == 20.0

    def test_history_is_bounded(self):
        metrics = DeliveryMetrics()
        for i in range(5000):
            metrics.record_send(float(i + 1))
            metrics.record_failure(f"error {i}")

        stats = metrics.to_dict()
        assert stats["failed"] == 5000
        assert stats["recent_errors"] == [f"error {i}" for i in range(5000 - RECENT_ERRORS, 5000)]
        assert len(metrics._latencies) < 5000


class TestOutboxDelivery:
    @pytest.mark.asyncio
    async def test_records_messages(self):
        outbox = OutboxDelivery()
        await outbox.send_text("+1", "Hi")
        await outbox.send_buttons("+1", "Pick", _buttons("Yes", "No"))
        await outbox.send_list("+2", "Choose", [_section(2)], "Open")

        assert [m.kind for m in outbox.sent] == ["text", "button", "list"]
        assert outbox.sent[0].text == "Hi"
        assert outbox.sent[1].option_ids == ["b0", "b1"]
        assert [m.option_ids for m in outbox.messages_for("+2")] == [["r0", "r1"]]

    @pytest.mark.asyncio
    async def test_fail_next(self):
        outbox = OutboxDelivery()
        outbox.fail_next(retryable=False, message="blocked")
        with pytest.raises(DeliveryError) as exc:
            await outbox.send_text("+1", "Hi")
        assert exc.value.retryable is False
        assert outbox.sent == []
        await outbox.send_text("+1", "Hi")
        assert len(outbox.sent) == 1

    @pytest.mark.asyncio
    async def test_empty_text_rejected(self):
        with pytest.raises(DeliveryError):
            await OutboxDelivery().send_text("+1", " ")
