"""
Flow definition validation.

validate_flow() returns every problem it finds instead of stopping at the
first, so the editor can show them all at once. The engine refuses to start a
flow with any error, and the trigger resolver skips such flows.
"""
from __future__ import annotations

from typing import Optional

import structlog

from channels.interactive import button_errors, list_errors
from core.errors import FlowDefinitionError
from models.schemas import (
    ActionBlock, ActionType, BlockType, ConditionBlock,
    FlowValidationError, InteractiveButtonsBlock, InteractiveFlow,
    InteractiveListBlock, MessageBlock, UnknownBlock,
)
from utils.conditions import OPERATORS

logger = structlog.get_logger()


def _error(errors: list[FlowValidationError], field: str, message: str,
           block_id: Optional[str] = None):
    errors.append(FlowValidationError(field=field, message=message, block_id=block_id))


def validate_flow(flow: InteractiveFlow) -> list[FlowValidationError]:
    """Validate a flow definition. Returns list of errors, empty when valid."""
    errors: list[FlowValidationError] = []
    block_ids: set[str] = set()

    for block in flow.blocks:
        if not block.id:
            _error(errors, "blocks", "block has no id")
        elif block.id in block_ids:
            _error(errors, "blocks", f"duplicate block id '{block.id}'", block.id)
        block_ids.add(block.id)

    start = flow.get_block(flow.start_block_id)
    if not flow.start_block_id:
        _error(errors, "startBlockId", "start block is not set")
    elif start is None:
        _error(errors, "startBlockId", f"start block '{flow.start_block_id}' does not exist")
    elif start.type != BlockType.START.value:
        _error(errors, "startBlockId", f"start block '{start.id}' is a {start.type} block",
               start.id)

    for edge in flow.edges:
        if edge.source not in block_ids:
            _error(errors, "edges", f"edge '{edge.id}' comes from unknown block '{edge.source}'")
        if edge.target not in block_ids:
            _error(errors, "edges", f"edge '{edge.id}' points to unknown block '{edge.target}'",
                   edge.source if edge.source in block_ids else None)

    for block in flow.blocks:
        _validate_block(flow, block, block_ids, errors)

    return errors


def _check_target(errors, block_ids: set[str], target: str, field: str, block_id: str):
    if target and target not in block_ids:
        _error(errors, field, f"target block '{target}' does not exist", block_id)


def _validate_block(flow: InteractiveFlow, block, block_ids: set[str],
                    errors: list[FlowValidationError]):
    if isinstance(block, UnknownBlock):
        _error(errors, "type", f"unknown block type '{block.type}'", block.id)

    elif isinstance(block, MessageBlock):
        if not block.data.message_text.strip():
            _error(errors, "messageText", "message block has no text", block.id)

    elif isinstance(block, InteractiveButtonsBlock):
        data = block.data
        for problem in button_errors(data.buttons_body, data.buttons, data.buttons_footer):
            _error(errors, "buttons", problem, block.id)
        for button in data.buttons:
            _check_target(errors, block_ids, button.next_block_id, "buttons", block.id)

    elif isinstance(block, InteractiveListBlock):
        data = block.data
        for problem in list_errors(data.list_body, data.list_sections, data.list_button_text,
                                   data.list_header, data.list_footer):
            _error(errors, "listSections", problem, block.id)
        for section in data.list_sections:
            for row in section.rows:
                _check_target(errors, block_ids, row.next_block_id, "listSections", block.id)

    elif isinstance(block, ConditionBlock):
        data = block.data
        for index, condition in enumerate(data.conditions):
            field = f"conditions[{index}]"
            if not condition.variable:
                _error(errors, field, "condition has no variable", block.id)
            if condition.operator not in OPERATORS:
                _error(errors, field, f"unsupported operator '{condition.operator}'", block.id)
            if not condition.next_block_id:
                _error(errors, field, "condition has no target block", block.id)
            _check_target(errors, block_ids, condition.next_block_id, field, block.id)
        _check_target(errors, block_ids, data.default_next_block_id, "defaultNextBlockId", block.id)

    elif isinstance(block, ActionBlock):
        _validate_action(block, errors)


def _validate_action(block: ActionBlock, errors: list[FlowValidationError]):
    action_type = block.data.action_type
    params = block.data.action_params
    try:
        kind = ActionType(action_type)
    except ValueError:
        _error(errors, "actionType", f"unsupported action type '{action_type}'", block.id)
        return

    if kind in (ActionType.ADD_TAG, ActionType.REMOVE_TAG):
        if not str(params.get("tag", "")).strip():
            _error(errors, "actionParams.tag", f"{kind.value} needs a tag", block.id)
        return

    if not str(params.get("name", "")).strip():
        _error(errors, "actionParams.name", f"{kind.value} needs a variable name", block.id)
    if kind == ActionType.SET_VARIABLE:
        value = params.get("value")
        if isinstance(value, (dict, list)) or value is None:
            _error(errors, "actionParams.value", "variable value must be text, number or boolean",
                   block.id)


def ensure_valid(flow: InteractiveFlow) -> None:
    """Raise FlowDefinitionError if the flow has any validation error."""
    errors = validate_flow(flow)
    if errors:
        logger.warning("flow_definition_invalid", flow_id=flow.id, tenant_id=flow.tenant_id,
                       errors=[e.message for e in errors])
        first = errors[0]
        raise FlowDefinitionError(
            f"Flow '{flow.name}' is invalid: {first.message}",
            flow_id=flow.id, block_id=first.block_id, errors=errors,
        )
