"""Shared test fixtures for FlowRunner."""
import asyncio
from typing import Any

import pytest

from backend.connector import InMemoryCRMConnector
from channels.outbox_adapter import OutboxDelivery
from config.settings import EngineConfig
from core.errors import StoreError
from core.executor import FlowExecutor
from core.triggers import TriggerResolver
from database.store_memory import InMemoryExecutionStore, InMemoryFlowStore
from models.schemas import InteractiveFlow

TENANT = "tenant-1"
CONTACT = "+5511999990000"


def make_flow(blocks: list[dict[str, Any]], edges: list[tuple], **fields) -> InteractiveFlow:
    """
    Build a flow from editor-style block dicts and edge tuples
    ``(source, target)`` or ``(source, target, source_handle)``.
    """
    data = {
        "id": fields.pop("id", "flow-1"),
        "tenantId": fields.pop("tenant_id", TENANT),
        "name": fields.pop("name", "Test flow"),
        "triggerType": fields.pop("trigger_type", "keyword"),
        "triggerKeywords": fields.pop("trigger_keywords", []),
        "startBlockId": fields.pop("start_block_id", "start"),
        "blocks": blocks,
        "edges": [
            {"id": f"e{i}", "source": e[0], "target": e[1],
             "sourceHandle": e[2] if len(e) > 2 else None}
            for i, e in enumerate(edges)
        ],
    }
    data.update(fields)
    return InteractiveFlow.model_validate(data)


def block(block_id: str, block_type: str, **data) -> dict[str, Any]:
    return {"id": block_id, "type": block_type, "position": {"x": 0, "y": 0}, "data": data}


def buttons_block(block_id: str, body: str, buttons: list[tuple[str, str]], **data) -> dict[str, Any]:
    return block(block_id, "interactive_buttons", buttonsBody=body,
                 buttons=[{"id": i, "title": t} for i, t in buttons], **data)


@pytest.fixture
def linear_menu_flow() -> InteractiveFlow:
    """start → message("Hi") → buttons([A, B]); A → end, B → human_handoff."""
    return make_flow(
        [
            block("start", "start"),
            block("hello", "message", messageText="Hi"),
            buttons_block("menu", "What would you like?", [("A", "Finish"), ("B", "Agent")]),
            block("done", "end"),
            block("human", "human_handoff", transitionMessage="Connecting you to an agent"),
        ],
        [
            ("start", "hello"),
            ("hello", "menu"),
            ("menu", "done", "A"),
            ("menu", "human", "B"),
        ],
        id="menu-flow",
        name="Main menu",
        trigger_keywords=["menu"],
    )


@pytest.fixture
def two_menu_flow() -> InteractiveFlow:
    """Two prompts in a row: first → (A) second → (X) end, (Y) ai_handoff."""
    return make_flow(
        [
            block("start", "start"),
            buttons_block("first", "Pick a department", [("A", "Sales"), ("B", "Support")]),
            buttons_block("second", "Pick a product", [("X", "Phones"), ("Y", "Laptops")]),
            block("done", "end"),
            block("bot", "ai_handoff", transitionMessage="Our assistant will help you"),
        ],
        [
            ("start", "first"),
            ("first", "second", "A"),
            ("first", "done", "B"),
            ("second", "done", "X"),
            ("second", "bot", "Y"),
        ],
        id="two-menus",
        name="Two menus",
    )


@pytest.fixture
def engine_config() -> EngineConfig:
    return EngineConfig(step_budget=50, lease_wait_seconds=0.5, lease_retry_interval=0.01,
                        max_delivery_failures=3, persist_retries=3)


@pytest.fixture
def flow_store() -> InMemoryFlowStore:
    return InMemoryFlowStore()


@pytest.fixture
def execution_store(engine_config) -> InMemoryExecutionStore:
    return InMemoryExecutionStore(
        lease_ttl_seconds=engine_config.lease_ttl_seconds,
        lease_wait_seconds=engine_config.lease_wait_seconds,
        lease_retry_interval=engine_config.lease_retry_interval,
    )


@pytest.fixture
def outbox() -> OutboxDelivery:
    return OutboxDelivery()


@pytest.fixture
def crm() -> InMemoryCRMConnector:
    return InMemoryCRMConnector()


@pytest.fixture
def executor(flow_store, execution_store, outbox, crm, engine_config) -> FlowExecutor:
    return FlowExecutor(flow_store, execution_store, outbox, crm, engine_config)


@pytest.fixture
def resolver(flow_store, execution_store) -> TriggerResolver:
    return TriggerResolver(flow_store, execution_store)


class SlowOutbox(OutboxDelivery):
    """Outbox that yields to the event loop on every send."""

    def __init__(self, delay: float = 0.01):
        super().__init__()
        self.delay = delay

    async def _deliver(self, contact, payload):
        await asyncio.sleep(self.delay)
        return await super()._deliver(contact, payload)


class FlakyExecutionStore(InMemoryExecutionStore):
    """Fails the next ``fail_saves`` saves with StoreError."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.fail_saves = 0

    async def save(self, execution):
        if self.fail_saves > 0:
            self.fail_saves -= 1
            raise StoreError("database unavailable")
        return await super().save(execution)


def malformed_flow_row(flow_id: str, **fields) -> dict[str, Any]:
    """Editor document with a buttons block whose ``buttons`` is null."""
    data = make_flow(
        [block("start", "start"), buttons_block("menu", "Pick one", [("A", "Yes")])],
        [("start", "menu")],
        id=flow_id, name=flow_id, **fields,
    ).model_dump(mode="json", by_alias=True)
    data["blocks"][1]["data"]["buttons"] = None
    return data
