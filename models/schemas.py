"""
Core data models for the flow engine.
Flow definitions arrive from the visual editor as camelCase JSON; executions
and dispositions are the engine's own records.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    AliasChoices, BaseModel, ConfigDict, Discriminator, Field, PrivateAttr, Tag,
    field_validator,
)
from pydantic.alias_generators import to_camel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class BlockType(str, Enum):
    START = "start"
    MESSAGE = "message"
    INTERACTIVE_LIST = "interactive_list"
    INTERACTIVE_BUTTONS = "interactive_buttons"
    CONDITION = "condition"
    ACTION = "action"
    AI_HANDOFF = "ai_handoff"
    HUMAN_HANDOFF = "human_handoff"
    END = "end"


INTERACTIVE_BLOCK_TYPES = frozenset({BlockType.INTERACTIVE_LIST.value, BlockType.INTERACTIVE_BUTTONS.value})


class TriggerType(str, Enum):
    KEYWORD = "keyword"
    ALWAYS = "always"
    MANUAL = "manual"
    QR_CODE = "qr_code"
    LINK = "link"


class ExecutionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    TRANSFERRED_BOT = "transferred_bot"
    TRANSFERRED_HUMAN = "transferred_human"
    ABORTED = "aborted"


class ServicingMode(str, Enum):
    """Who answers the contact: the AI assistant, a human agent or a flow."""
    BOT = "bot"
    HUMAN = "human"
    FLOW = "flow"


class ActionType(str, Enum):
    SET_VARIABLE = "set_variable"
    INCREMENT = "increment"
    DECREMENT = "decrement"
    CLEAR_VARIABLE = "clear_variable"
    ADD_TAG = "add_tag"
    REMOVE_TAG = "remove_tag"


class ContextFormat(str, Enum):
    SUMMARY = "summary"
    FULL = "full"


VariableValue = Union[str, int, float, bool]

# Variables the engine writes when an interactive choice is resolved
LAST_USER_RESPONSE = "last_user_response"
LAST_INTERACTIVE_RESPONSE = "last_interactive_response"
LAST_CHOICE_TITLE = "last_choice_title"


class _EditorModel(BaseModel):
    """Base for editor JSON: camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ──────────────────────────────────────────────────────────────
#  Block payloads
# ──────────────────────────────────────────────────────────────

class BlockPosition(_EditorModel):
    x: float = 0
    y: float = 0


class ListRow(_EditorModel):
    id: str
    title: str
    description: str = ""
    next_block_id: str = ""                   # overrides the edge lookup when set


class ListSection(_EditorModel):
    id: str = ""
    title: str = ""
    rows: list[ListRow] = []


class ReplyButton(_EditorModel):
    id: str
    title: str
    next_block_id: str = ""


class Condition(_EditorModel):
    variable: str
    operator: str                             # ==, !=, >, <, contains, not_contains
    value: VariableValue = ""
    next_block_id: str = ""


class StartData(_EditorModel):
    label: str = ""


class MessageData(_EditorModel):
    label: str = ""
    message_text: str = ""


class InteractiveListData(_EditorModel):
    label: str = ""
    list_header: str = ""
    list_body: str = ""
    list_footer: str = ""
    list_button_text: str = ""
    list_sections: list[ListSection] = []


class InteractiveButtonsData(_EditorModel):
    label: str = ""
    buttons_body: str = ""
    buttons_footer: str = ""
    buttons: list[ReplyButton] = []


class ConditionData(_EditorModel):
    label: str = ""
    conditions: list[Condition] = []
    default_next_block_id: str = ""


class ActionData(_EditorModel):
    label: str = ""
    action_type: str = ""
    action_params: dict[str, Any] = {}


class AIHandoffData(_EditorModel):
    label: str = ""
    transition_message: str = ""
    auto_respond: bool = True
    include_flow_context: bool = True
    context_format: ContextFormat = ContextFormat.SUMMARY


class HumanHandoffData(_EditorModel):
    label: str = ""
    transition_message: str = ""
    notify_agent: bool = True


class EndData(_EditorModel):
    label: str = ""


# ──────────────────────────────────────────────────────────────
#  Blocks, tagged by ``type``
# ──────────────────────────────────────────────────────────────

class _BlockBase(_EditorModel):
    id: str
    position: BlockPosition = Field(default_factory=BlockPosition)

    @property
    def is_interactive(self) -> bool:
        return self.type in INTERACTIVE_BLOCK_TYPES


class StartBlock(_BlockBase):
    type: Literal["start"] = "start"
    data: StartData = Field(default_factory=StartData)


class MessageBlock(_BlockBase):
    type: Literal["message"] = "message"
    data: MessageData = Field(default_factory=MessageData)


class InteractiveListBlock(_BlockBase):
    type: Literal["interactive_list"] = "interactive_list"
    data: InteractiveListData = Field(default_factory=InteractiveListData)


class InteractiveButtonsBlock(_BlockBase):
    type: Literal["interactive_buttons"] = "interactive_buttons"
    data: InteractiveButtonsData = Field(default_factory=InteractiveButtonsData)


class ConditionBlock(_BlockBase):
    type: Literal["condition"] = "condition"
    data: ConditionData = Field(default_factory=ConditionData)


class ActionBlock(_BlockBase):
    type: Literal["action"] = "action"
    data: ActionData = Field(default_factory=ActionData)


class AIHandoffBlock(_BlockBase):
    type: Literal["ai_handoff"] = "ai_handoff"
    data: AIHandoffData = Field(default_factory=AIHandoffData)


class HumanHandoffBlock(_BlockBase):
    type: Literal["human_handoff"] = "human_handoff"
    data: HumanHandoffData = Field(default_factory=HumanHandoffData)


class EndBlock(_BlockBase):
    type: Literal["end"] = "end"
    data: EndData = Field(default_factory=EndData)


class UnknownBlock(_BlockBase):
    """A block whose type this engine does not execute; kept so validation can report it."""
    type: str
    data: dict[str, Any] = {}


_KNOWN_BLOCK_TYPES = {member.value for member in BlockType}


def _block_tag(value: Any) -> str:
    kind = value.get("type") if isinstance(value, dict) else getattr(value, "type", None)
    if isinstance(kind, Enum):
        kind = kind.value
    return kind if isinstance(kind, str) and kind in _KNOWN_BLOCK_TYPES else "unknown"


FlowBlock = Annotated[
    Union[
        Annotated[StartBlock, Tag("start")],
        Annotated[MessageBlock, Tag("message")],
        Annotated[InteractiveListBlock, Tag("interactive_list")],
        Annotated[InteractiveButtonsBlock, Tag("interactive_buttons")],
        Annotated[ConditionBlock, Tag("condition")],
        Annotated[ActionBlock, Tag("action")],
        Annotated[AIHandoffBlock, Tag("ai_handoff")],
        Annotated[HumanHandoffBlock, Tag("human_handoff")],
        Annotated[EndBlock, Tag("end")],
        Annotated[UnknownBlock, Tag("unknown")],
    ],
    Discriminator(_block_tag),
]


class FlowEdge(_EditorModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    source: str
    target: str
    source_handle: Optional[str] = None       # option id for interactive blocks
    target_handle: Optional[str] = None
    label: str = ""


# ──────────────────────────────────────────────────────────────
#  Flow definition
# ──────────────────────────────────────────────────────────────

class InteractiveFlow(_EditorModel):
    """A tenant-owned conversation graph as saved by the flow editor."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: str = Field(validation_alias=AliasChoices("tenantId", "clientId", "tenant_id"),
                           serialization_alias="tenantId")
    name: str
    description: str = ""
    is_active: bool = True
    trigger_type: TriggerType = TriggerType.KEYWORD
    trigger_keywords: list[str] = []
    trigger_qr_code: str = ""
    blocks: list[FlowBlock] = []
    edges: list[FlowEdge] = []
    start_block_id: str = ""
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    _block_index: Optional[dict[str, Any]] = PrivateAttr(default=None)

    @field_validator("trigger_keywords", mode="before")
    @classmethod
    def _keywords_default(cls, value: Any) -> Any:
        return [] if value is None else value

    def get_block(self, block_id: Optional[str]) -> Optional[FlowBlock]:
        if not block_id:
            return None
        if self._block_index is None:
            self._block_index = {}
            for block in self.blocks:
                self._block_index.setdefault(block.id, block)
        return self._block_index.get(block_id)

    def outgoing_edges(self, block_id: str) -> list[FlowEdge]:
        return [edge for edge in self.edges if edge.source == block_id]


# ──────────────────────────────────────────────────────────────
#  Execution state
# ──────────────────────────────────────────────────────────────

class FlowStep(BaseModel):
    """One executed block, kept for hand-off context and audit."""
    block_id: str
    block_type: str
    executed_at: datetime = Field(default_factory=_utcnow)
    user_response: Optional[str] = None
    interactive_response_id: Optional[str] = None
    next_block_id: Optional[str] = None


class FlowExecution(BaseModel):
    """One contact's run through one flow."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    flow_id: str
    tenant_id: str
    contact: str                              # E.164 phone number
    current_block_id: str
    status: ExecutionStatus = ExecutionStatus.ACTIVE
    variables: dict[str, VariableValue] = {}
    history: list[str] = []
    steps: list[FlowStep] = []
    awaiting_input: bool = False              # suspended on a presented interactive block
    effects_committed: int = 0                # effects of the current block already delivered
    failure_count: int = 0                    # consecutive failed attempts on the current block
    last_input_id: Optional[str] = None       # inbound message id last applied
    error: str = ""
    version: int = 0
    started_at: datetime = Field(default_factory=_utcnow)
    last_step_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == ExecutionStatus.ACTIVE


# ──────────────────────────────────────────────────────────────
#  Engine results
# ──────────────────────────────────────────────────────────────

class PromptOption(BaseModel):
    id: str
    title: str
    description: str = ""


class Prompt(BaseModel):
    """The interactive message a suspended execution is waiting on."""
    block_id: str
    block_type: str
    body: str = ""
    header: str = ""
    footer: str = ""
    button_text: str = ""
    options: list[PromptOption] = []


class DispositionKind(str, Enum):
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    TRANSFERRED = "transferred"
    ABORTED = "aborted"
    ERROR = "error"


class Disposition(BaseModel):
    """Outcome of one engine operation."""
    kind: DispositionKind
    execution_id: Optional[str] = None
    flow_id: Optional[str] = None
    prompt: Optional[Prompt] = None
    mode: Optional[ServicingMode] = None
    reason: str = ""
    detail: str = ""
    retryable: bool = False
    duplicate: bool = False                   # input had already been applied

    @classmethod
    def suspended(cls, execution: FlowExecution, prompt: Optional[Prompt], **kw) -> Disposition:
        return cls(kind=DispositionKind.SUSPENDED, execution_id=execution.id,
                   flow_id=execution.flow_id, prompt=prompt, **kw)

    @classmethod
    def completed(cls, execution: FlowExecution, **kw) -> Disposition:
        return cls(kind=DispositionKind.COMPLETED, execution_id=execution.id,
                   flow_id=execution.flow_id, **kw)

    @classmethod
    def transferred(cls, execution: FlowExecution, mode: ServicingMode, **kw) -> Disposition:
        return cls(kind=DispositionKind.TRANSFERRED, execution_id=execution.id,
                   flow_id=execution.flow_id, mode=mode, **kw)

    @classmethod
    def aborted(cls, execution: FlowExecution, reason: str, detail: str = "", **kw) -> Disposition:
        return cls(kind=DispositionKind.ABORTED, execution_id=execution.id,
                   flow_id=execution.flow_id, reason=reason, detail=detail, **kw)

    @classmethod
    def error(cls, reason: str, detail: str = "", retryable: bool = False,
              execution: Optional[FlowExecution] = None, flow_id: Optional[str] = None) -> Disposition:
        return cls(
            kind=DispositionKind.ERROR,
            execution_id=execution.id if execution else None,
            flow_id=execution.flow_id if execution else flow_id,
            reason=reason, detail=detail, retryable=retryable,
        )

    @property
    def hands_back_to_bot(self) -> bool:
        """True when the default AI path should answer instead of the flow."""
        if self.kind in (DispositionKind.ERROR, DispositionKind.ABORTED):
            return True
        return self.kind == DispositionKind.TRANSFERRED and self.mode == ServicingMode.BOT


class TriggerDecisionKind(str, Enum):
    RESUME = "resume"
    START = "start"
    DECLINE = "decline"


class TriggerDecision(BaseModel):
    kind: TriggerDecisionKind
    flow_id: Optional[str] = None
    flow_name: str = ""
    execution_id: Optional[str] = None
    matched_keyword: str = ""


class FlowValidationError(BaseModel):
    """One problem found in a flow definition."""
    field: str
    message: str
    block_id: Optional[str] = None
