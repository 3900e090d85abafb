"""
Flow Executor: drives executions through the block interpreter.

Every public operation is one short unit of work:

  lease(tenant, contact)
    → load / claim the execution
    → loop: interpret block → perform effects → commit step → persist
    → stop at a prompt (suspended), a terminal block, or an error
    → release lease, return a Disposition

Side effects of a block are performed before its step is committed, and the
index of the last delivered effect is persisted when a delivery fails. A retry
resumes after that index, so a message that did go out is not sent twice.
Definition errors, delivery failures, busy contacts and store outages all come
back as Dispositions; only AlreadyActiveError and NoActiveExecutionError
(calling start/continue in the wrong state) are raised to the caller.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from backend.connector import CRMConnector
from channels.base import MessageDelivery
from config.settings import EngineConfig
from core.errors import (
    CollaboratorError, ContactBusyError, ExecutionNotActiveError, ExecutionNotFoundError,
    FlowDefinitionError, FlowNotFoundError, LeaseLostError, NoActiveExecutionError,
    StaleExecutionError, StoreError,
)
from core.handoff import format_flow_context, last_user_message
from core.interpreter import (
    AddTag, BEST_EFFORT_EFFECTS, BlockInterpreter, Effect, NotifyAgent, RemoveTag,
    RequestBotReply, SendButtons, SendList, SendText, SetServicingMode, StepKind, StepResult,
    UserInput,
)
from core.validator import ensure_valid
from database.store_base import BaseExecutionStore, BaseFlowStore, Lease
from models.schemas import (
    Disposition, ExecutionStatus, FlowExecution, FlowStep, InteractiveFlow, ServicingMode,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


_TRANSFER_STATUS = {
    ServicingMode.BOT: ExecutionStatus.TRANSFERRED_BOT,
    ServicingMode.HUMAN: ExecutionStatus.TRANSFERRED_HUMAN,
}


class FlowExecutor:
    """
    Runs flows for contacts. Stores and collaborators are injected; the
    executor holds no per-contact state between calls.
    """

    def __init__(
        self,
        flows: BaseFlowStore,
        executions: BaseExecutionStore,
        delivery: MessageDelivery,
        crm: CRMConnector,
        config: Optional[EngineConfig] = None,
    ):
        self.flows = flows
        self.executions = executions
        self.delivery = delivery
        self.crm = crm
        self.config = config or EngineConfig()

    # ══════════════════════════════════════════════════════
    #  PUBLIC OPERATIONS
    # ══════════════════════════════════════════════════════

    async def start_flow(self, flow_id: str, tenant_id: str, contact: str) -> Disposition:
        """Start ``flow_id`` for a contact with no active execution."""
        log = logger.bind(flow_id=flow_id, tenant_id=tenant_id, contact=contact)
        try:
            try:
                flow = await self._load_flow(tenant_id, flow_id, active_only=True)
                ensure_valid(flow)
            except FlowDefinitionError as e:
                log.error("flow_definition_error", block_id=e.block_id, error=str(e))
                return Disposition.error("definition_error", str(e), flow_id=flow_id)

            async with self.executions.lease(tenant_id, contact) as lease:
                execution = await self.executions.claim(tenant_id, contact, flow.id,
                                                        flow.start_block_id)
                log.info("flow_started", execution_id=execution.id, flow_name=flow.name)
                await self._switch_mode(execution, ServicingMode.FLOW)
                return await self._drive(flow, execution, lease)

        except FlowNotFoundError as e:
            log.warning("flow_not_found")
            return Disposition.error("flow_not_found", str(e), flow_id=flow_id)
        except ContactBusyError as e:
            log.info("contact_busy")
            return Disposition.error("busy", str(e), retryable=True, flow_id=flow_id)
        except (StaleExecutionError, ExecutionNotActiveError, LeaseLostError) as e:
            log.warning("execution_conflict", error=str(e))
            return Disposition.error("conflict", str(e), retryable=True, flow_id=flow_id)
        except StoreError as e:
            log.error("store_unavailable", error=str(e))
            return Disposition.error("store_unavailable", str(e), retryable=True, flow_id=flow_id)

    async def continue_flow(
        self,
        tenant_id: str,
        contact: str,
        user_input: str = "",
        choice_id: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> Disposition:
        """
        Feed an inbound message to the contact's active execution.

        ``message_id`` identifies the inbound message; a message already applied
        is not applied again. When another call advanced the execution while this
        one waited for the lease, the input is dropped and the current state is
        returned with ``duplicate=True``.
        """
        log = logger.bind(tenant_id=tenant_id, contact=contact)
        try:
            observed = await self.executions.get_active(tenant_id, contact)
            if observed is None:
                raise NoActiveExecutionError(tenant_id, contact)
            log = log.bind(execution_id=observed.id, flow_id=observed.flow_id)

            if message_id and observed.last_input_id == message_id:
                log.info("duplicate_input_ignored", message_id=message_id)
                return await self._current_state(observed)

            async with self.executions.lease(tenant_id, contact) as lease:
                execution = await self.executions.get(observed.id)
                if execution is None:
                    raise NoActiveExecutionError(tenant_id, contact)
                if (execution.version != observed.version or not execution.is_active
                        or (message_id and execution.last_input_id == message_id)):
                    log.info("concurrent_advance_detected", observed_version=observed.version,
                             current_version=execution.version)
                    return await self._current_state(execution)

                try:
                    flow = await self._load_flow(tenant_id, execution.flow_id)
                except (FlowNotFoundError, FlowDefinitionError) as e:
                    return await self._abort_definition(execution, None, str(e),
                                                        execution.current_block_id)
                try:
                    ensure_valid(flow)
                except FlowDefinitionError as e:
                    return await self._abort_definition(execution, flow, str(e), e.block_id)

                if not execution.awaiting_input:
                    # the last step failed part-way; this message retries it
                    log.info("retrying_pending_step", block_id=execution.current_block_id,
                             effects_committed=execution.effects_committed)
                    return await self._drive(flow, execution, lease)
                return await self._drive(
                    flow, execution, lease, UserInput(text=user_input or "", choice_id=choice_id),
                    message_id,
                )

        except ContactBusyError as e:
            log.info("contact_busy")
            return Disposition.error("busy", str(e), retryable=True)
        except (StaleExecutionError, ExecutionNotActiveError, LeaseLostError) as e:
            log.warning("execution_conflict", error=str(e))
            return Disposition.error("conflict", str(e), retryable=True)
        except StoreError as e:
            log.error("store_unavailable", error=str(e))
            return Disposition.error("store_unavailable", str(e), retryable=True)

    async def _load_flow(self, tenant_id: str, flow_id: str, active_only: bool = False) -> InteractiveFlow:
        """
        Running executions keep going when their flow is deactivated, so only
        starting a flow requires it to be active.
        """
        if active_only:
            flow = await self.flows.get_active_flow(tenant_id, flow_id)
        else:
            flow = await self.flows.get_flow(tenant_id, flow_id)
        if flow is None:
            raise FlowNotFoundError(tenant_id, flow_id)
        return flow

    async def transfer_to_bot(self, execution_id: str) -> Disposition:
        return await self._transfer(execution_id, ServicingMode.BOT)

    async def transfer_to_human(self, execution_id: str) -> Disposition:
        return await self._transfer(execution_id, ServicingMode.HUMAN)

    # ══════════════════════════════════════════════════════
    #  DRIVE LOOP
    # ══════════════════════════════════════════════════════

    async def _drive(self, flow: InteractiveFlow, execution: FlowExecution, lease: Lease,
                     user_input: Optional[UserInput] = None,
                     message_id: Optional[str] = None) -> Disposition:
        """Runs under ``lease``; nothing is sent or saved once the lease is lost."""
        interpreter = BlockInterpreter(flow)
        advanced = 0

        while True:
            block = flow.get_block(execution.current_block_id)
            if block is None:
                return await self._abort_definition(
                    execution, flow, f"block '{execution.current_block_id}' not found",
                    execution.current_block_id,
                )

            result = interpreter.interpret(block, execution.variables, user_input)
            if result.kind == StepKind.ERROR:
                return await self._abort_definition(execution, flow, result.error, block.id)

            try:
                await self._apply_effects(flow, execution, result, lease)
            except CollaboratorError as e:
                return await self._record_failure(execution, result, e)
            lease.ensure_held()

            self._commit_step(execution, result, user_input, message_id)
            user_input = None

            if result.kind == StepKind.SUSPEND:
                execution.awaiting_input = True
                execution = await self._persist(execution)
                logger.info("flow_suspended", execution_id=execution.id, flow_id=flow.id,
                            block_id=block.id)
                return Disposition.suspended(execution, result.prompt)

            execution.awaiting_input = False
            if result.kind == StepKind.COMPLETE:
                return await self._finish(execution, ExecutionStatus.COMPLETED)
            if result.kind == StepKind.TRANSFER:
                return await self._finish(execution, _TRANSFER_STATUS[result.mode], result.mode)

            advanced += 1
            execution.current_block_id = result.next_block_id
            if advanced > self.config.step_budget:
                logger.error("step_budget_exceeded", execution_id=execution.id, flow_id=flow.id,
                             block_id=block.id, budget=self.config.step_budget)
                return await self._abort(
                    execution, "step_budget_exceeded",
                    f"{advanced} steps without waiting for input",
                )
            execution = await self._persist(execution)

    def _commit_step(self, execution: FlowExecution, result: StepResult,
                     user_input: Optional[UserInput], message_id: Optional[str]):
        now = _utcnow()
        execution.variables = result.variables
        if user_input is None:
            execution.history.append(result.block_id)
        elif message_id:
            execution.last_input_id = message_id
        execution.steps.append(FlowStep(
            block_id=result.block_id,
            block_type=result.block_type,
            executed_at=now,
            user_response=result.user_response,
            interactive_response_id=result.choice_id,
            next_block_id=result.next_block_id,
        ))
        execution.effects_committed = 0
        execution.failure_count = 0
        execution.last_step_at = now

    # ── Effects ───────────────────────────────────────────────

    async def _apply_effects(self, flow: InteractiveFlow, execution: FlowExecution,
                             result: StepResult, lease: Lease):
        for index, effect in enumerate(result.effects):
            if index < execution.effects_committed:
                continue
            lease.ensure_held()
            try:
                await self._perform(flow, execution, effect)
            except CollaboratorError as e:
                if not isinstance(effect, BEST_EFFORT_EFFECTS):
                    raise
                logger.warning("best_effort_effect_failed", execution_id=execution.id,
                               block_id=result.block_id, effect=effect.kind, error=str(e))
            execution.effects_committed = index + 1

    async def _perform(self, flow: InteractiveFlow, execution: FlowExecution, effect: Effect):
        tenant_id, contact = execution.tenant_id, execution.contact

        if isinstance(effect, SendText):
            await self.delivery.send_text(contact, effect.text)
        elif isinstance(effect, SendButtons):
            await self.delivery.send_buttons(contact, effect.body, effect.buttons, effect.footer)
        elif isinstance(effect, SendList):
            await self.delivery.send_list(contact, effect.body, effect.sections, effect.button_text,
                                          effect.header, effect.footer)
        elif isinstance(effect, AddTag):
            await self.crm.add_tag(tenant_id, contact, effect.tag)
        elif isinstance(effect, RemoveTag):
            await self.crm.remove_tag(tenant_id, contact, effect.tag)
        elif isinstance(effect, SetServicingMode):
            await self.crm.set_servicing_mode(tenant_id, contact, effect.mode)
        elif isinstance(effect, RequestBotReply):
            context = (format_flow_context(execution, flow, effect.context_format)
                       if effect.include_flow_context else "")
            await self.crm.request_bot_reply(tenant_id, contact, last_user_message(execution), context)
        elif isinstance(effect, NotifyAgent):
            await self.crm.notify_agent(tenant_id, contact, format_flow_context(execution, flow))

    async def _record_failure(self, execution: FlowExecution, result: StepResult,
                              error: CollaboratorError) -> Disposition:
        execution.failure_count += 1
        effect = result.effects[execution.effects_committed]
        logger.warning("effect_failed", execution_id=execution.id, flow_id=execution.flow_id,
                       block_id=result.block_id, effect=effect.kind, error=str(error),
                       retryable=error.retryable, failure_count=execution.failure_count)

        if not error.retryable or execution.failure_count >= self.config.max_delivery_failures:
            return await self._abort(execution, "delivery_failed", str(error))

        execution = await self._persist(execution)
        return Disposition.error("delivery_failed", str(error), retryable=True, execution=execution)

    # ── Persistence ───────────────────────────────────────────

    async def _persist(self, execution: FlowExecution) -> FlowExecution:
        """Save with retries. Effects are already out, so the save is what gets retried."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.config.persist_retries),
            wait=wait_exponential(multiplier=0.05, max=1),
            retry=retry_if_exception_type(StoreError),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning("persist_retry", execution_id=execution.id,
                                   attempt=attempt.retry_state.attempt_number)
                saved = await self.executions.save(execution)
        return saved

    # ── Terminal transitions ──────────────────────────────────

    async def _finish(self, execution: FlowExecution, status: ExecutionStatus,
                      mode: Optional[ServicingMode] = None) -> Disposition:
        execution.status = status
        execution.completed_at = _utcnow()
        execution = await self._persist(execution)
        logger.info("flow_finished", execution_id=execution.id, flow_id=execution.flow_id,
                    status=status.value, steps=len(execution.history))
        if status == ExecutionStatus.COMPLETED:
            await self._switch_mode(execution, ServicingMode.BOT)
            return Disposition.completed(execution)
        return Disposition.transferred(execution, mode)

    async def _abort(self, execution: FlowExecution, reason: str, detail: str) -> Disposition:
        execution.status = ExecutionStatus.ABORTED
        execution.error = f"{reason}: {detail}"
        execution.completed_at = _utcnow()
        execution = await self._persist(execution)
        logger.warning("flow_aborted", execution_id=execution.id, flow_id=execution.flow_id,
                       reason=reason, detail=detail)
        await self._switch_mode(execution, ServicingMode.BOT)
        return Disposition.aborted(execution, reason, detail)

    async def _abort_definition(self, execution: FlowExecution, flow: Optional[InteractiveFlow],
                                detail: str, block_id: Optional[str]) -> Disposition:
        logger.error("flow_definition_error", execution_id=execution.id,
                     flow_id=flow.id if flow else execution.flow_id, block_id=block_id, error=detail)
        await self._abort(execution, "definition_error", detail)
        return Disposition.error("definition_error", detail, execution=execution)

    async def _switch_mode(self, execution: FlowExecution, mode: ServicingMode):
        """Mode switches outside hand-off blocks never fail the operation."""
        try:
            await self.crm.set_servicing_mode(execution.tenant_id, execution.contact, mode)
        except CollaboratorError as e:
            logger.warning("servicing_mode_switch_failed", execution_id=execution.id,
                           mode=mode.value, error=str(e))

    # ── Admin transfers ───────────────────────────────────────

    async def _transfer(self, execution_id: str, mode: ServicingMode) -> Disposition:
        execution = await self.executions.get(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        log = logger.bind(execution_id=execution_id, flow_id=execution.flow_id, mode=mode.value)
        try:
            async with self.executions.lease(execution.tenant_id, execution.contact):
                execution = await self.executions.get(execution_id)
                if not execution.is_active:
                    raise ExecutionNotActiveError(execution_id, execution.status.value)
                try:
                    await self.crm.set_servicing_mode(execution.tenant_id, execution.contact, mode)
                except CollaboratorError as e:
                    log.warning("manual_transfer_failed", error=str(e))
                    return Disposition.error("mode_switch_failed", str(e), retryable=e.retryable,
                                             execution=execution)
                released = await self.executions.release(execution_id, _TRANSFER_STATUS[mode])
                log.info("flow_transferred_manually")
                return Disposition.transferred(released, mode)
        except ContactBusyError as e:
            log.info("contact_busy")
            return Disposition.error("busy", str(e), retryable=True, execution=execution)
        except StoreError as e:
            log.error("store_unavailable", error=str(e))
            return Disposition.error("store_unavailable", str(e), retryable=True, execution=execution)

    # ── State readback ────────────────────────────────────────

    async def _current_state(self, execution: FlowExecution) -> Disposition:
        """Disposition describing an execution as it is, for inputs that were not applied."""
        if execution.status == ExecutionStatus.ACTIVE:
            if not execution.awaiting_input:
                return Disposition.error("pending_retry", "the previous step has not finished",
                                         retryable=True, execution=execution)
            try:
                flow = await self.flows.get_flow(execution.tenant_id, execution.flow_id)
            except FlowDefinitionError as e:
                logger.warning("flow_unparseable", execution_id=execution.id,
                               flow_id=execution.flow_id, error=str(e))
                flow = None
            block = flow.get_block(execution.current_block_id) if flow else None
            prompt = BlockInterpreter(flow).prompt_for(block) if block else None
            return Disposition.suspended(execution, prompt, duplicate=True)
        if execution.status == ExecutionStatus.COMPLETED:
            return Disposition.completed(execution, duplicate=True)
        if execution.status == ExecutionStatus.TRANSFERRED_BOT:
            return Disposition.transferred(execution, ServicingMode.BOT, duplicate=True)
        if execution.status == ExecutionStatus.TRANSFERRED_HUMAN:
            return Disposition.transferred(execution, ServicingMode.HUMAN, duplicate=True)
        reason, _, detail = execution.error.partition(": ")
        return Disposition.aborted(execution, reason or "aborted", detail, duplicate=True)
