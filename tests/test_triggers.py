"""Tests for trigger resolution order."""
from datetime import datetime, timedelta, timezone

import pytest

from core.triggers import match_keyword
from models.schemas import TriggerDecisionKind
from tests.conftest import CONTACT, TENANT, block, make_flow, malformed_flow_row

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def simple_flow(flow_id, trigger_type="keyword", keywords=(), created_offset=0, **fields):
    return make_flow(
        [block("start", "start"), block("hi", "message", messageText=f"Welcome to {flow_id}"),
         block("end", "end")],
        [("start", "hi"), ("hi", "end")],
        id=flow_id, name=flow_id, trigger_type=trigger_type, trigger_keywords=list(keywords),
        createdAt=(T0 + timedelta(minutes=created_offset)).isoformat(), **fields,
    )


class TestMatchKeyword:
    def test_case_insensitive_substring(self):
        flow = simple_flow("f", keywords=["Promo"])
        assert match_keyword(flow, "is there a PROMO today?") == "Promo"

    def test_keywords_are_stripped(self):
        flow = simple_flow("f", keywords=["  menu  ", ""])
        assert match_keyword(flow, "MENU") == "menu"

    def test_no_match(self):
        flow = simple_flow("f", keywords=["menu"])
        assert match_keyword(flow, "hello") is None
        assert match_keyword(flow, "") is None


class TestResolve:
    @pytest.mark.asyncio
    async def test_decline_when_nothing_matches(self, resolver, flow_store):
        await flow_store.upsert_flow(simple_flow("sales", keywords=["buy"]))
        decision = await resolver.resolve(TENANT, CONTACT, "hello there")
        assert decision.kind == TriggerDecisionKind.DECLINE

    @pytest.mark.asyncio
    async def test_keyword_starts_flow(self, resolver, flow_store):
        await flow_store.upsert_flow(simple_flow("sales", keywords=["buy"]))
        decision = await resolver.resolve(TENANT, CONTACT, "I want to BUY a phone")
        assert decision.kind == TriggerDecisionKind.START
        assert decision.flow_id == "sales"
        assert decision.matched_keyword == "buy"

    @pytest.mark.asyncio
    async def test_resume_beats_keyword(self, resolver, executor, flow_store, linear_menu_flow):
        await flow_store.upsert_flow(linear_menu_flow)
        await flow_store.upsert_flow(simple_flow("sales", keywords=["buy"]))
        started = await executor.start_flow("menu-flow", TENANT, CONTACT)

        decision = await resolver.resolve(TENANT, CONTACT, "buy")

        assert decision.kind == TriggerDecisionKind.RESUME
        assert decision.execution_id == started.execution_id
        assert decision.flow_id == "menu-flow"

    @pytest.mark.asyncio
    async def test_always_beats_keyword(self, resolver, flow_store):
        await flow_store.upsert_flow(simple_flow("sales", keywords=["buy"], created_offset=0))
        await flow_store.upsert_flow(simple_flow("welcome", trigger_type="always", created_offset=5))
        decision = await resolver.resolve(TENANT, CONTACT, "buy")
        assert decision.flow_id == "welcome"

    @pytest.mark.asyncio
    async def test_oldest_always_flow_wins(self, resolver, flow_store):
        await flow_store.upsert_flow(simple_flow("newer", trigger_type="always", created_offset=10))
        await flow_store.upsert_flow(simple_flow("older", trigger_type="always", created_offset=1))
        decision = await resolver.resolve(TENANT, CONTACT, "hi")
        assert decision.flow_id == "older"

    @pytest.mark.asyncio
    async def test_keyword_order_by_creation(self, resolver, flow_store):
        await flow_store.upsert_flow(simple_flow("b-flow", keywords=["help"], created_offset=2))
        await flow_store.upsert_flow(simple_flow("a-flow", keywords=["help"], created_offset=2))
        await flow_store.upsert_flow(simple_flow("first", keywords=["help"], created_offset=1))
        decision = await resolver.resolve(TENANT, CONTACT, "help")
        assert decision.flow_id == "first"

    @pytest.mark.asyncio
    async def test_same_creation_time_orders_by_id(self, resolver, flow_store):
        await flow_store.upsert_flow(simple_flow("b-flow", keywords=["help"], created_offset=2))
        await flow_store.upsert_flow(simple_flow("a-flow", keywords=["help"], created_offset=2))
        decision = await resolver.resolve(TENANT, CONTACT, "help")
        assert decision.flow_id == "a-flow"

    @pytest.mark.asyncio
    async def test_inactive_flows_ignored(self, resolver, flow_store):
        await flow_store.upsert_flow(simple_flow("sales", keywords=["buy"], isActive=False))
        decision = await resolver.resolve(TENANT, CONTACT, "buy")
        assert decision.kind == TriggerDecisionKind.DECLINE

    @pytest.mark.asyncio
    async def test_manual_flows_never_trigger(self, resolver, flow_store):
        await flow_store.upsert_flow(simple_flow("manual", trigger_type="manual", keywords=["buy"]))
        decision = await resolver.resolve(TENANT, CONTACT, "buy")
        assert decision.kind == TriggerDecisionKind.DECLINE

    @pytest.mark.asyncio
    async def test_other_tenant_flows_ignored(self, resolver, flow_store):
        await flow_store.upsert_flow(simple_flow("sales", keywords=["buy"], tenant_id="tenant-2"))
        decision = await resolver.resolve(TENANT, CONTACT, "buy")
        assert decision.kind == TriggerDecisionKind.DECLINE

    @pytest.mark.asyncio
    async def test_broken_flow_keeps_declining(self, resolver, flow_store):
        broken = make_flow([block("start", "start"), block("x", "delay")], [("start", "x")],
                           id="broken", trigger_type="always")
        await flow_store.upsert_flow(broken)
        for _ in range(3):
            decision = await resolver.resolve(TENANT, CONTACT, "anything")
            assert decision.kind == TriggerDecisionKind.DECLINE

    @pytest.mark.asyncio
    async def test_broken_flow_skipped_for_next(self, resolver, flow_store):
        broken = make_flow([block("start", "start"), block("x", "delay")], [("start", "x")],
                           id="broken", trigger_keywords=["help"])
        await flow_store.upsert_flow(broken)
        await flow_store.upsert_flow(simple_flow("good", keywords=["help"], created_offset=60))
        decision = await resolver.resolve(TENANT, CONTACT, "help")
        assert decision.flow_id == "good"

    @pytest.mark.asyncio
    async def test_interactive_reply_matches_keywords(self, resolver, flow_store):
        await flow_store.upsert_flow(simple_flow("sales", keywords=["buy"]))
        decision = await resolver.resolve(TENANT, CONTACT, "Buy now", is_interactive_reply=True)
        assert decision.kind == TriggerDecisionKind.START
        assert decision.flow_id == "sales"
        assert decision.matched_keyword == "buy"

    @pytest.mark.asyncio
    async def test_unparseable_flow_does_not_block_tenant(self, resolver, flow_store):
        flow_store._flows["raw"] = malformed_flow_row("raw", trigger_keywords=["menu"])
        await flow_store.upsert_flow(simple_flow("good", keywords=["menu"], created_offset=60))
        for _ in range(2):
            decision = await resolver.resolve(TENANT, CONTACT, "menu please")
            assert decision.kind == TriggerDecisionKind.START
            assert decision.flow_id == "good"

    @pytest.mark.asyncio
    async def test_only_unparseable_flows_decline(self, resolver, flow_store):
        flow_store._flows["raw"] = malformed_flow_row("raw", trigger_type="always")
        decision = await resolver.resolve(TENANT, CONTACT, "hello")
        assert decision.kind == TriggerDecisionKind.DECLINE
