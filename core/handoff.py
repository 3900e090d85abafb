"""
Hand-off context: a plain-text account of what the contact did in the flow,
handed to the AI assistant so it does not ask again for what was already
answered.
"""
from __future__ import annotations

from typing import Optional

from models.schemas import ContextFormat, FlowExecution, InteractiveFlow

MAX_SUMMARY_CHARS = 1000


def last_user_message(execution: FlowExecution) -> str:
    """The most recent thing the contact said or chose during the flow."""
    for step in reversed(execution.steps):
        if step.user_response:
            return step.user_response
    return str(execution.variables.get("last_user_response", ""))


def _prompt_text(flow: Optional[InteractiveFlow], block_id: str) -> str:
    block = flow.get_block(block_id) if flow else None
    if block is None:
        return block_id
    data = block.data
    if block.type == "interactive_buttons":
        return data.buttons_body or data.label or block_id
    if block.type == "interactive_list":
        return data.list_body or data.list_header or data.label or block_id
    return getattr(data, "label", "") or block_id


def format_flow_context(execution: FlowExecution, flow: Optional[InteractiveFlow] = None,
                        fmt: str = ContextFormat.SUMMARY.value) -> str:
    """
    summary: collected variables plus one line per answered prompt, truncated
    to MAX_SUMMARY_CHARS.
    full: every executed step in order, then the variables.
    """
    name = flow.name if flow else execution.flow_id
    variables = "\n".join(f"- {k}: {v}" for k, v in execution.variables.items()) \
        or "No variables collected."

    if ContextFormat(fmt) == ContextFormat.FULL:
        lines = []
        for i, step in enumerate(execution.steps, start=1):
            response = step.user_response or step.interactive_response_id or "-"
            lines.append(f"{i}. [{step.block_type}] {step.block_id}: {response}")
        steps = "\n".join(lines) or "No steps recorded."
        return (
            f"[FLOW CONTEXT: {name}]\n"
            f"Steps taken:\n{steps}\n\n"
            f"Collected data:\n{variables}"
        )

    answers = [
        f"- {_prompt_text(flow, step.block_id)}: {step.user_response}"
        for step in execution.steps
        if step.user_response and step.interactive_response_id
    ]
    context = (
        f"[FLOW CONTEXT: {name}]\n"
        "The contact has just gone through an automated interactive flow.\n\n"
        f"Answers:\n{chr(10).join(answers) or 'None.'}\n\n"
        f"Collected data:\n{variables}\n\n"
        f"Last interaction: {last_user_message(execution) or 'N/A'}\n\n"
        "The contact already provided this information; use it in the conversation."
    )
    if len(context) > MAX_SUMMARY_CHARS:
        context = context[:MAX_SUMMARY_CHARS] + "... [context truncated]"
    return context
