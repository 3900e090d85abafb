"""
Orchestrator: routes inbound messages into interactive flows.

  Inbound:  webhook → process_message()
            → TriggerResolver: resume | start | decline
            → FlowExecutor.continue_flow / start_flow
            → RoutingOutcome back to the webhook handler

The router is fail-safe. A declined trigger, an error or aborted disposition,
a transfer to the bot, and any unexpected failure all come back with
``should_continue_to_ai=True``, so the caller's normal AI path answers and the
contact is never left without a reply.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import structlog

from core.errors import AlreadyActiveError, FlowEngineError, NoActiveExecutionError
from core.executor import FlowExecutor
from core.triggers import TriggerResolver
from models.schemas import Disposition, DispositionKind, TriggerDecisionKind

logger = structlog.get_logger()


@dataclass
class RoutingOutcome:
    should_continue_to_ai: bool
    flow_executed: bool = False
    flow_started: bool = False
    flow_name: str = ""
    disposition: Optional[Disposition] = None

    def to_dict(self) -> dict:
        return {
            "should_continue_to_ai": self.should_continue_to_ai,
            "flow_executed": self.flow_executed,
            "flow_started": self.flow_started,
            "flow_name": self.flow_name,
            "disposition": self.disposition.model_dump(mode="json") if self.disposition else None,
        }


def _continue_to_ai(disposition: Disposition) -> bool:
    # "busy" means another invocation owns this contact right now; the
    # message is a duplicate or will be answered by that invocation.
    if disposition.kind == DispositionKind.ERROR and disposition.reason == "busy":
        return False
    return disposition.hands_back_to_bot


class InteractiveFlowRouter:
    """Entry point the webhook handler calls for every inbound message."""

    def __init__(self, executor: FlowExecutor, resolver: TriggerResolver):
        self.executor = executor
        self.resolver = resolver

    async def process_message(
        self,
        tenant_id: str,
        contact: str,
        content: str,
        is_interactive_reply: bool = False,
        interactive_response_id: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> RoutingOutcome:
        log = logger.bind(tenant_id=tenant_id, contact=contact, message_id=message_id)
        try:
            decision = await self.resolver.resolve(tenant_id, contact, content, is_interactive_reply)

            if decision.kind == TriggerDecisionKind.RESUME:
                disposition = await self.executor.continue_flow(
                    tenant_id, contact, content,
                    choice_id=interactive_response_id, message_id=message_id,
                )
                log.info("flow_message_processed", flow_id=decision.flow_id,
                         disposition=disposition.kind.value, reason=disposition.reason)
                return RoutingOutcome(
                    should_continue_to_ai=_continue_to_ai(disposition),
                    flow_executed=True, disposition=disposition,
                )

            if decision.kind == TriggerDecisionKind.START:
                disposition = await self.executor.start_flow(decision.flow_id, tenant_id, contact)
                log.info("flow_triggered", flow_id=decision.flow_id, flow_name=decision.flow_name,
                         keyword=decision.matched_keyword, disposition=disposition.kind.value)
                started = disposition.kind != DispositionKind.ERROR
                return RoutingOutcome(
                    should_continue_to_ai=_continue_to_ai(disposition),
                    flow_executed=started, flow_started=started,
                    flow_name=decision.flow_name, disposition=disposition,
                )

            return RoutingOutcome(should_continue_to_ai=True)

        except AlreadyActiveError as e:
            # a concurrent message started a flow for this contact first
            log.warning("flow_routing_race", error=str(e))
            return RoutingOutcome(should_continue_to_ai=False)
        except NoActiveExecutionError as e:
            log.warning("flow_routing_race", error=str(e))
            return RoutingOutcome(should_continue_to_ai=True)
        except FlowEngineError as e:
            log.error("flow_routing_failed", error=str(e))
            return RoutingOutcome(should_continue_to_ai=True)
        except Exception as e:
            log.exception("flow_routing_unexpected_error", error=str(e))
            return RoutingOutcome(should_continue_to_ai=True)
