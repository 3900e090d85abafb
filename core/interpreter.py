"""
Block Interpreter: maps one block to one step.

    interpret(block, variables, user_input) → StepResult

The interpreter performs no network or storage I/O. Side effects come back as
plain effect records (send this text, present these buttons, tag the contact)
that the live executor performs and the simulator only displays, so both
drivers branch identically.

Per type:
  start / message / action   advance along the plain outgoing edge
  interactive_*              present and suspend; with input, resolve the
                             chosen option to its target block
  condition                  first matching condition, else default, else edge
  ai_handoff / human_handoff transfer
  end                        complete
A block with no way forward completes the flow.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Optional, Union

import structlog

from core.errors import FlowDefinitionError
from models.schemas import (
    ActionType, ContextFormat, InteractiveFlow, LAST_CHOICE_TITLE,
    LAST_INTERACTIVE_RESPONSE, LAST_USER_RESPONSE, ListSection, Prompt,
    PromptOption, ReplyButton, ServicingMode, UnknownBlock,
)
from utils.conditions import as_number, first_match

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Input & effects
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class UserInput:
    """An inbound reply: free text and, for interactive replies, the option id."""
    text: str = ""
    choice_id: Optional[str] = None


@dataclass(frozen=True)
class SendText:
    text: str
    kind: ClassVar[str] = "send_text"

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "text": self.text}


@dataclass(frozen=True)
class SendButtons:
    body: str
    buttons: list[ReplyButton]
    footer: str = ""
    kind: ClassVar[str] = "send_buttons"

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind, "body": self.body, "footer": self.footer,
            "buttons": [{"id": b.id, "title": b.title} for b in self.buttons],
        }


@dataclass(frozen=True)
class SendList:
    body: str
    sections: list[ListSection]
    button_text: str
    header: str = ""
    footer: str = ""
    kind: ClassVar[str] = "send_list"

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind, "body": self.body, "header": self.header,
            "footer": self.footer, "button_text": self.button_text,
            "sections": [
                {
                    "title": s.title,
                    "rows": [{"id": r.id, "title": r.title, "description": r.description} for r in s.rows],
                }
                for s in self.sections
            ],
        }


@dataclass(frozen=True)
class AddTag:
    tag: str
    kind: ClassVar[str] = "add_tag"

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "tag": self.tag}


@dataclass(frozen=True)
class RemoveTag:
    tag: str
    kind: ClassVar[str] = "remove_tag"

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "tag": self.tag}


@dataclass(frozen=True)
class SetServicingMode:
    mode: ServicingMode
    kind: ClassVar[str] = "set_servicing_mode"

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "mode": ServicingMode(self.mode).value}


@dataclass(frozen=True)
class RequestBotReply:
    include_flow_context: bool = True
    context_format: str = ContextFormat.SUMMARY.value
    kind: ClassVar[str] = "request_bot_reply"

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "include_flow_context": self.include_flow_context,
                "context_format": self.context_format}


@dataclass(frozen=True)
class NotifyAgent:
    kind: ClassVar[str] = "notify_agent"

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind}


Effect = Union[SendText, SendButtons, SendList, AddTag, RemoveTag, SetServicingMode,
               RequestBotReply, NotifyAgent]

# Effects whose failure must not stop a transfer that already happened
BEST_EFFORT_EFFECTS = (RequestBotReply, NotifyAgent)


# ──────────────────────────────────────────────────────────────
#  Step result
# ──────────────────────────────────────────────────────────────

class StepKind(str, Enum):
    ADVANCE = "advance"
    SUSPEND = "suspend"
    COMPLETE = "complete"
    TRANSFER = "transfer"
    ERROR = "error"


@dataclass
class StepResult:
    kind: StepKind
    block_id: str
    block_type: str
    effects: list[Effect] = field(default_factory=list)
    variables: dict[str, Any] = field(default_factory=dict)
    next_block_id: Optional[str] = None
    mode: Optional[ServicingMode] = None
    prompt: Optional[Prompt] = None
    error: str = ""
    description: str = ""
    choice_id: Optional[str] = None        # option the input resolved to
    user_response: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.kind in (StepKind.COMPLETE, StepKind.TRANSFER, StepKind.ERROR)


@dataclass(frozen=True)
class _Option:
    id: str
    title: str
    description: str
    next_block_id: str


# ──────────────────────────────────────────────────────────────
#  Interpreter
# ──────────────────────────────────────────────────────────────

class BlockInterpreter:
    """Stateless interpreter bound to one flow definition."""

    def __init__(self, flow: InteractiveFlow):
        self.flow = flow
        self._handlers = {
            "start": self._start,
            "message": self._message,
            "interactive_list": self._interactive,
            "interactive_buttons": self._interactive,
            "condition": self._condition,
            "action": self._action,
            "ai_handoff": self._ai_handoff,
            "human_handoff": self._human_handoff,
            "end": self._end,
        }

    def interpret(self, block, variables: dict[str, Any],
                  user_input: Optional[UserInput] = None) -> StepResult:
        """Never raises for a bad definition; returns an ERROR step instead."""
        variables = dict(variables)
        handler = self._handlers.get(block.type)
        if handler is None or isinstance(block, UnknownBlock):
            return self._failed(block, variables, f"unknown block type '{block.type}'")

        try:
            result = handler(block, variables, user_input)
        except FlowDefinitionError as e:
            return self._failed(block, variables, str(e))
        except (TypeError, ValueError, KeyError, AttributeError) as e:
            logger.exception("block_interpretation_failed", flow_id=self.flow.id,
                             block_id=block.id, block_type=block.type)
            return self._failed(block, variables, f"{type(e).__name__}: {e}")

        if result.next_block_id and self.flow.get_block(result.next_block_id) is None:
            return self._failed(
                block, variables, f"block '{block.id}' leads to missing block '{result.next_block_id}'"
            )
        return result

    def prompt_for(self, block) -> Optional[Prompt]:
        """The prompt an interactive block presents, or None for other blocks."""
        if not block.is_interactive:
            return None
        data = block.data
        options = [PromptOption(id=o.id, title=o.title, description=o.description)
                   for o in self._options(block)]
        if block.type == "interactive_buttons":
            return Prompt(block_id=block.id, block_type=block.type, body=data.buttons_body,
                          footer=data.buttons_footer, options=options)
        return Prompt(block_id=block.id, block_type=block.type, body=data.list_body,
                      header=data.list_header, footer=data.list_footer,
                      button_text=data.list_button_text, options=options)

    # ── Edges ─────────────────────────────────────────────────

    def next_block_id(self, block_id: str, plain_only: bool = False) -> Optional[str]:
        """Target of the block's single outgoing edge; a handle-less edge wins."""
        edges = self.flow.outgoing_edges(block_id)
        plain = [e for e in edges if not e.source_handle]
        if plain_only:
            edges = plain
        candidates = plain or edges
        return candidates[0].target if candidates else None

    def _handle_target(self, block_id: str, handle: str) -> Optional[str]:
        for edge in self.flow.outgoing_edges(block_id):
            if edge.source_handle == handle:
                return edge.target
        return None

    # ── Result helpers ────────────────────────────────────────

    def _failed(self, block, variables, message: str) -> StepResult:
        return StepResult(StepKind.ERROR, block.id, block.type, variables=variables, error=message)

    def _advance(self, block, variables, effects=None, description: str = "",
                 plain_only: bool = False) -> StepResult:
        target = self.next_block_id(block.id, plain_only=plain_only)
        return StepResult(
            StepKind.ADVANCE if target else StepKind.COMPLETE,
            block.id, block.type,
            effects=effects or [], variables=variables,
            next_block_id=target, description=description,
        )

    # ── Handlers ──────────────────────────────────────────────

    def _start(self, block, variables, user_input) -> StepResult:
        return self._advance(block, variables)

    def _message(self, block, variables, user_input) -> StepResult:
        text = block.data.message_text
        if not text.strip():
            raise FlowDefinitionError("message block has no text", self.flow.id, block.id)
        return self._advance(block, variables, [SendText(text)])

    def _end(self, block, variables, user_input) -> StepResult:
        return StepResult(StepKind.COMPLETE, block.id, block.type, variables=variables)

    def _options(self, block) -> list[_Option]:
        if block.type == "interactive_buttons":
            return [_Option(b.id, b.title, "", b.next_block_id) for b in block.data.buttons]
        return [
            _Option(r.id, r.title, r.description, r.next_block_id)
            for s in block.data.list_sections for r in s.rows
        ]

    def _present(self, block, variables, description: str = "") -> StepResult:
        data = block.data
        if not self._options(block):
            raise FlowDefinitionError("interactive block has no options", self.flow.id, block.id)
        if block.type == "interactive_buttons":
            effect = SendButtons(body=data.buttons_body, buttons=list(data.buttons),
                                 footer=data.buttons_footer)
        else:
            effect = SendList(body=data.list_body, sections=list(data.list_sections),
                              button_text=data.list_button_text, header=data.list_header,
                              footer=data.list_footer)
        return StepResult(StepKind.SUSPEND, block.id, block.type, effects=[effect],
                          variables=variables, prompt=self.prompt_for(block),
                          description=description)

    def _match(self, block, user_input: UserInput) -> Optional[_Option]:
        options = self._options(block)
        if user_input.choice_id:
            for option in options:
                if option.id == user_input.choice_id:
                    return option
        text = (user_input.text or "").strip().casefold()
        if text:
            for option in options:
                if text in (option.id.casefold(), option.title.strip().casefold()):
                    return option
        return None

    def _interactive(self, block, variables, user_input) -> StepResult:
        if user_input is None:
            return self._present(block, variables)

        option = self._match(block, user_input)
        if option is None:
            variables[LAST_USER_RESPONSE] = user_input.text
            result = self._present(block, variables, description="choice not recognized")
            result.user_response = user_input.text
            return result

        variables[LAST_INTERACTIVE_RESPONSE] = option.id
        variables[LAST_CHOICE_TITLE] = option.title
        variables[LAST_USER_RESPONSE] = option.title
        target = option.next_block_id or self._handle_target(block.id, option.id)
        return StepResult(
            StepKind.ADVANCE if target else StepKind.COMPLETE,
            block.id, block.type, variables=variables, next_block_id=target,
            description=f"chose '{option.title}'",
            choice_id=option.id, user_response=option.title,
        )

    def _condition(self, block, variables, user_input) -> StepResult:
        conditions = block.data.conditions
        index = first_match(conditions, variables)
        if index is not None:
            condition = conditions[index]
            if not condition.next_block_id:
                raise FlowDefinitionError(f"condition {index} has no target block",
                                          self.flow.id, block.id)
            return StepResult(
                StepKind.ADVANCE, block.id, block.type, variables=variables,
                next_block_id=condition.next_block_id,
                description=f"{condition.variable} {condition.operator} {condition.value!r} matched",
            )

        if block.data.default_next_block_id:
            return StepResult(
                StepKind.ADVANCE, block.id, block.type, variables=variables,
                next_block_id=block.data.default_next_block_id, description="no condition matched",
            )
        return self._advance(block, variables, description="no condition matched", plain_only=True)

    def _action(self, block, variables, user_input) -> StepResult:
        params = block.data.action_params
        try:
            action = ActionType(block.data.action_type)
        except ValueError:
            logger.warning("unknown_action_type", flow_id=self.flow.id, block_id=block.id,
                           action_type=block.data.action_type)
            return self._advance(block, variables, description="unknown action skipped")

        if action in (ActionType.ADD_TAG, ActionType.REMOVE_TAG):
            tag = str(params.get("tag", "")).strip()
            if not tag:
                raise FlowDefinitionError(f"{action.value} needs a tag", self.flow.id, block.id)
            effect = AddTag(tag) if action == ActionType.ADD_TAG else RemoveTag(tag)
            return self._advance(block, variables, [effect], description=f"{action.value} {tag}")

        name = str(params.get("name", "")).strip()
        if not name:
            raise FlowDefinitionError(f"{action.value} needs a variable name", self.flow.id, block.id)

        if action == ActionType.SET_VARIABLE:
            value = params.get("value")
            if value is None or not isinstance(value, (str, int, float, bool)):
                raise FlowDefinitionError("variable value must be text, number or boolean",
                                          self.flow.id, block.id)
            variables[name] = value
            description = f"set {name} = {value!r}"

        elif action in (ActionType.INCREMENT, ActionType.DECREMENT):
            step = as_number(params.get("by", 1))
            if step is None:
                raise FlowDefinitionError(f"{action.value} step must be a number",
                                          self.flow.id, block.id)
            current = as_number(variables.get(name)) or 0.0
            updated = current + step if action == ActionType.INCREMENT else current - step
            variables[name] = int(updated) if updated.is_integer() else updated
            description = f"{action.value} {name} → {variables[name]}"

        else:
            variables.pop(name, None)
            description = f"cleared {name}"

        return self._advance(block, variables, description=description)

    def _ai_handoff(self, block, variables, user_input) -> StepResult:
        data = block.data
        effects: list[Effect] = []
        if data.transition_message.strip():
            effects.append(SendText(data.transition_message))
        effects.append(SetServicingMode(ServicingMode.BOT))
        if data.auto_respond:
            effects.append(RequestBotReply(include_flow_context=data.include_flow_context,
                                           context_format=ContextFormat(data.context_format).value))
        return StepResult(StepKind.TRANSFER, block.id, block.type, effects=effects,
                          variables=variables, mode=ServicingMode.BOT)

    def _human_handoff(self, block, variables, user_input) -> StepResult:
        data = block.data
        effects: list[Effect] = []
        if data.transition_message.strip():
            effects.append(SendText(data.transition_message))
        effects.append(SetServicingMode(ServicingMode.HUMAN))
        if data.notify_agent:
            effects.append(NotifyAgent())
        return StepResult(StepKind.TRANSFER, block.id, block.type, effects=effects,
                          variables=variables, mode=ServicingMode.HUMAN)
