"""
Trigger Resolver: decides what an inbound message does.

Priority, first match wins:
  1. the contact has an active execution        → RESUME
  2. an active flow with trigger_type "always"   → START (oldest flow)
  3. an active keyword flow whose keyword occurs
     in the message (case-insensitive substring) → START (oldest flow)
  4. otherwise                                   → DECLINE

Flows are tried in (created_at, id) order. Flows with definition errors are
skipped and logged, so a broken flow keeps declining instead of failing the
caller on every message.
"""
from __future__ import annotations

from typing import Optional

import structlog

from core.validator import validate_flow
from database.store_base import BaseExecutionStore, BaseFlowStore
from models.schemas import InteractiveFlow, TriggerDecision, TriggerDecisionKind, TriggerType

logger = structlog.get_logger()


def match_keyword(flow: InteractiveFlow, text: str) -> Optional[str]:
    """First of the flow's keywords contained in ``text``, ignoring case."""
    haystack = (text or "").casefold()
    if not haystack.strip():
        return None
    for keyword in flow.trigger_keywords:
        needle = keyword.strip().casefold()
        if needle and needle in haystack:
            return keyword.strip()
    return None


class TriggerResolver:

    def __init__(self, flows: BaseFlowStore, executions: BaseExecutionStore):
        self.flows = flows
        self.executions = executions

    async def resolve(self, tenant_id: str, contact: str, inbound_text: str,
                      is_interactive_reply: bool = False) -> TriggerDecision:
        log = logger.bind(tenant_id=tenant_id, contact=contact)

        active = await self.executions.get_active(tenant_id, contact)
        if active is not None:
            log.debug("trigger_resume", execution_id=active.id, flow_id=active.flow_id)
            return TriggerDecision(kind=TriggerDecisionKind.RESUME, flow_id=active.flow_id,
                                   execution_id=active.id)

        for flow in await self._startable(tenant_id, TriggerType.ALWAYS):
            log.info("trigger_start", flow_id=flow.id, trigger="always")
            return TriggerDecision(kind=TriggerDecisionKind.START, flow_id=flow.id,
                                   flow_name=flow.name)

        for flow in await self._startable(tenant_id, TriggerType.KEYWORD):
            keyword = match_keyword(flow, inbound_text)
            if keyword:
                log.info("trigger_start", flow_id=flow.id, trigger="keyword", keyword=keyword,
                         interactive_reply=is_interactive_reply)
                return TriggerDecision(kind=TriggerDecisionKind.START, flow_id=flow.id,
                                       flow_name=flow.name, matched_keyword=keyword)

        log.debug("trigger_decline")
        return TriggerDecision(kind=TriggerDecisionKind.DECLINE)

    async def _startable(self, tenant_id: str, trigger_type: TriggerType) -> list[InteractiveFlow]:
        startable = []
        for flow in await self.flows.list_active_flows(tenant_id, trigger_type):
            errors = validate_flow(flow)
            if errors:
                logger.warning("flow_definition_invalid", flow_id=flow.id, tenant_id=tenant_id,
                               block_id=errors[0].block_id, errors=[e.message for e in errors])
                continue
            startable.append(flow)
        return startable
