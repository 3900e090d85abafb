"""Tests for the inbound message router."""
import pytest

from core.orchestrator import InteractiveFlowRouter
from core.triggers import TriggerResolver
from database.store_memory import InMemoryFlowStore
from models.schemas import DispositionKind, ServicingMode
from tests.conftest import CONTACT, TENANT


@pytest.fixture
def router(executor, resolver):
    return InteractiveFlowRouter(executor, resolver)


class ExplodingFlowStore(InMemoryFlowStore):
    async def list_active_flows(self, tenant_id, trigger_type=None):
        raise RuntimeError("boom")


class TestProcessMessage:
    @pytest.mark.asyncio
    async def test_decline_goes_to_ai(self, router, flow_store, linear_menu_flow, outbox):
        await flow_store.upsert_flow(linear_menu_flow)
        outcome = await router.process_message(TENANT, CONTACT, "good morning")
        assert outcome.should_continue_to_ai is True
        assert outcome.flow_executed is False
        assert outbox.sent == []

    @pytest.mark.asyncio
    async def test_keyword_starts_flow(self, router, flow_store, linear_menu_flow, outbox, crm):
        await flow_store.upsert_flow(linear_menu_flow)
        outcome = await router.process_message(TENANT, CONTACT, "show me the MENU", message_id="m1")

        assert outcome.should_continue_to_ai is False
        assert outcome.flow_started is True
        assert outcome.flow_name == "Main menu"
        assert outcome.disposition.kind == DispositionKind.SUSPENDED
        assert [m.kind for m in outbox.sent] == ["text", "button"]
        assert crm.mode_of(TENANT, CONTACT) == ServicingMode.FLOW

    @pytest.mark.asyncio
    async def test_reply_resumes_flow(self, router, flow_store, linear_menu_flow, crm):
        await flow_store.upsert_flow(linear_menu_flow)
        await router.process_message(TENANT, CONTACT, "menu", message_id="m1")

        outcome = await router.process_message(TENANT, CONTACT, "Agent", is_interactive_reply=True,
                                               interactive_response_id="B", message_id="m2")

        assert outcome.flow_executed is True
        assert outcome.flow_started is False
        assert outcome.disposition.kind == DispositionKind.TRANSFERRED
        assert outcome.should_continue_to_ai is False
        assert crm.mode_of(TENANT, CONTACT) == ServicingMode.HUMAN

    @pytest.mark.asyncio
    async def test_bot_transfer_goes_to_ai(self, router, flow_store, two_menu_flow, executor):
        await flow_store.upsert_flow(two_menu_flow)
        await executor.start_flow("two-menus", TENANT, CONTACT)
        await router.process_message(TENANT, CONTACT, "Sales", True, "A", "m1")
        outcome = await router.process_message(TENANT, CONTACT, "Laptops", True, "Y", "m2")

        assert outcome.disposition.mode == ServicingMode.BOT
        assert outcome.should_continue_to_ai is True

    @pytest.mark.asyncio
    async def test_completion_goes_to_ai(self, router, flow_store, linear_menu_flow):
        await flow_store.upsert_flow(linear_menu_flow)
        await router.process_message(TENANT, CONTACT, "menu")
        outcome = await router.process_message(TENANT, CONTACT, "Finish", True, "A")
        assert outcome.disposition.kind == DispositionKind.COMPLETED
        assert outcome.should_continue_to_ai is False

    @pytest.mark.asyncio
    async def test_button_after_flow_matches_keywords(self, router, flow_store, linear_menu_flow):
        await flow_store.upsert_flow(linear_menu_flow)
        await router.process_message(TENANT, CONTACT, "menu")
        await router.process_message(TENANT, CONTACT, "Finish", True, "A")

        outcome = await router.process_message(TENANT, CONTACT, "Menu", True, "menu-row")
        assert outcome.flow_started is True
        assert outcome.disposition.kind == DispositionKind.SUSPENDED
        assert outcome.should_continue_to_ai is False

    @pytest.mark.asyncio
    async def test_button_after_flow_without_keyword_goes_to_ai(self, router, flow_store,
                                                                linear_menu_flow):
        await flow_store.upsert_flow(linear_menu_flow)
        await router.process_message(TENANT, CONTACT, "menu")
        await router.process_message(TENANT, CONTACT, "Finish", True, "A")

        outcome = await router.process_message(TENANT, CONTACT, "Finish", True, "A")
        assert outcome.flow_executed is False
        assert outcome.should_continue_to_ai is True

    @pytest.mark.asyncio
    async def test_busy_contact_is_not_answered_twice(self, router, flow_store, linear_menu_flow,
                                                       execution_store):
        await flow_store.upsert_flow(linear_menu_flow)
        async with execution_store.lease(TENANT, CONTACT):
            outcome = await router.process_message(TENANT, CONTACT, "menu")
        assert outcome.disposition.reason == "busy"
        assert outcome.flow_started is False
        assert outcome.should_continue_to_ai is False

    @pytest.mark.asyncio
    async def test_unexpected_failure_falls_back_to_ai(self, executor, execution_store):
        router = InteractiveFlowRouter(executor, TriggerResolver(ExplodingFlowStore(), execution_store))
        outcome = await router.process_message(TENANT, CONTACT, "menu")
        assert outcome.should_continue_to_ai is True
        assert outcome.disposition is None

    @pytest.mark.asyncio
    async def test_outcome_serializes(self, router, flow_store, linear_menu_flow):
        await flow_store.upsert_flow(linear_menu_flow)
        data = (await router.process_message(TENANT, CONTACT, "menu")).to_dict()
        assert data["flow_started"] is True
        assert data["disposition"]["kind"] == "suspended"
        assert data["disposition"]["prompt"]["options"][1]["title"] == "Agent"
