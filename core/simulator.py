"""
Flow Simulator: dry-run preview of a flow definition.

Drives the same BlockInterpreter as the live executor but performs none of the
effects: each step comes back as a PreviewStep describing what would have been
sent. Variables, history and the current block live on the simulator instance,
never in a store.

History is recorded exactly as the executor records it: every block reached
without user input is appended; resolving a choice is not. A preview and a
live run fed the same inputs therefore end with the same history and
variables.
"""
from __future__ import annotations

from typing import Any, Optional

import structlog
from pydantic import BaseModel, Field

from core.interpreter import BlockInterpreter, SendText, StepKind, StepResult, UserInput
from models.schemas import InteractiveFlow, Prompt

logger = structlog.get_logger()

# Blocks that advance without showing anything to the contact
_SILENT_TYPES = {"start", "condition", "action"}


class PreviewStep(BaseModel):
    """What one simulated step would have shown the contact."""
    type: str                                   # message | interactive_* | transfer | end | error
    block_id: Optional[str] = None
    content: str = ""
    prompt: Optional[Prompt] = None
    destination: Optional[str] = None           # bot | human, for transfers
    message: str = ""
    auto_advance: bool = False
    next_block_id: Optional[str] = None
    action_description: str = ""
    terminal: bool = False
    effects: list[dict[str, Any]] = Field(default_factory=list)


class FlowSimulator:

    def __init__(self, flow: InteractiveFlow, step_budget: int = 50,
                 variables: Optional[dict[str, Any]] = None):
        self.flow = flow
        self.step_budget = step_budget
        self._interpreter = BlockInterpreter(flow)
        self._initial_variables = dict(variables or {})
        self.reset()

    def reset(self):
        self.current_block_id: Optional[str] = self.flow.start_block_id
        self.variables: dict[str, Any] = dict(self._initial_variables)
        self.history: list[str] = []
        self.awaiting_input = False
        self.finished = False
        self._advanced = 0

    def get_state(self) -> dict[str, Any]:
        return {
            "current_block_id": self.current_block_id,
            "variables": dict(self.variables),
            "history": list(self.history),
            "awaiting_input": self.awaiting_input,
            "finished": self.finished,
        }

    # ── Driving ───────────────────────────────────────────────

    def execute_block(self, block_id: str) -> PreviewStep:
        """
        Execute ``block_id`` without input. Start, condition and action blocks
        pass straight through to the block they lead to; the first block that
        shows something (or ends the flow) is returned.
        """
        actions: list[str] = []
        effects: list[dict[str, Any]] = []

        while True:
            block = self.flow.get_block(block_id)
            if block is None:
                return self._error(f"block '{block_id}' not found", block_id)

            self.current_block_id = block_id
            self.awaiting_input = False
            result = self._interpreter.interpret(block, self.variables, None)
            if result.kind == StepKind.ERROR:
                return self._error(result.error, block.id)

            self.history.append(block.id)
            self.variables = result.variables
            effects.extend(e.to_dict() for e in result.effects)
            if block.type == "action" and result.description:
                actions.append(result.description)

            if result.kind == StepKind.ADVANCE:
                self._advanced += 1
                if self._advanced > self.step_budget:
                    return self._error(f"{self._advanced} steps without waiting for input", block.id)
                if block.type in _SILENT_TYPES:
                    block_id = result.next_block_id
                    continue

            return self._preview(result, effects, "; ".join(actions))

    def handle_user_choice(self, choice_id: str, target_block_id: Optional[str] = None,
                           choice_title: Optional[str] = None) -> PreviewStep:
        """
        Answer the prompt the simulator is waiting on. ``target_block_id``
        overrides where the chosen option leads.
        """
        block = self.flow.get_block(self.current_block_id)
        if block is None or not self.awaiting_input:
            return self._error("no prompt is waiting for a choice", self.current_block_id)

        result = self._interpreter.interpret(
            block, self.variables, UserInput(text=choice_title or "", choice_id=choice_id)
        )
        if result.kind == StepKind.ERROR:
            return self._error(result.error, block.id)

        self.variables = result.variables
        self._advanced = 0
        if result.kind == StepKind.SUSPEND:
            # unrecognised choice: the same prompt again
            return self._preview(result, [e.to_dict() for e in result.effects])

        target = target_block_id or result.next_block_id
        if not target:
            self.awaiting_input = False
            self.finished = True
            return PreviewStep(type="end", block_id=block.id, message="Flow finished", terminal=True)
        return self.execute_block(target)

    def go_back(self) -> Optional[str]:
        """Step back to the previously visited block; None at the beginning."""
        if len(self.history) <= 1:
            return None
        self.history.pop()
        self.current_block_id = self.history[-1]
        block = self.flow.get_block(self.current_block_id)
        self.awaiting_input = bool(block is not None and block.is_interactive)
        self.finished = False
        return self.current_block_id

    def run(self, block_id: Optional[str] = None) -> list[PreviewStep]:
        """Auto-advance from ``block_id`` (default: the start block) to the next prompt or the end."""
        steps = [self.execute_block(block_id or self.flow.start_block_id)]
        while steps[-1].auto_advance and steps[-1].next_block_id:
            steps.append(self.execute_block(steps[-1].next_block_id))
        return steps

    # ── Previews ──────────────────────────────────────────────

    def _preview(self, result: StepResult, effects: list[dict[str, Any]],
                 action_description: str = "") -> PreviewStep:
        text = next((e.text for e in self._texts(result)), "")

        if result.kind == StepKind.SUSPEND:
            self.awaiting_input = True
            self._advanced = 0
            return PreviewStep(
                type=result.block_type, block_id=result.block_id, prompt=result.prompt,
                content=result.prompt.body if result.prompt else "",
                message=result.description, effects=effects,
                action_description=action_description,
            )

        if result.kind == StepKind.TRANSFER:
            self.finished = True
            destination = result.mode.value if result.mode else None
            return PreviewStep(
                type="transfer", block_id=result.block_id, destination=destination, content=text,
                message=f"Transferred to {destination}", terminal=True, effects=effects,
                action_description=action_description,
            )

        if result.kind == StepKind.COMPLETE:
            self.finished = True
            return PreviewStep(
                type="end", block_id=result.block_id, content=text, message="Flow finished",
                terminal=True, effects=effects, action_description=action_description,
            )

        # message block: shown, then continue with next_block_id
        return PreviewStep(
            type=result.block_type, block_id=result.block_id, content=text,
            auto_advance=True, next_block_id=result.next_block_id, effects=effects,
            action_description=action_description,
        )

    @staticmethod
    def _texts(result: StepResult) -> list[SendText]:
        return [e for e in result.effects if isinstance(e, SendText)]

    def _error(self, message: str, block_id: Optional[str]) -> PreviewStep:
        logger.info("simulation_error", flow_id=self.flow.id, block_id=block_id, error=message)
        self.finished = True
        self.awaiting_input = False
        return PreviewStep(type="error", block_id=block_id, message=message, terminal=True)
