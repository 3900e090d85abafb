"""Tests for hand-off context formatting."""
from core.handoff import MAX_SUMMARY_CHARS, format_flow_context, last_user_message
from models.schemas import FlowExecution, FlowStep


def _execution(**fields):
    data = dict(flow_id="menu-flow", tenant_id="t", contact="+1", current_block_id="menu")
    data.update(fields)
    return FlowExecution(**data)


def _answered(block_id, title, choice_id):
    return FlowStep(block_id=block_id, block_type="interactive_buttons",
                    user_response=title, interactive_response_id=choice_id)


class TestLastUserMessage:
    def test_latest_step_response(self):
        execution = _execution(steps=[_answered("menu", "Sales", "A"), _answered("sub", "Phones", "X")])
        assert last_user_message(execution) == "Phones"

    def test_falls_back_to_variable(self):
        execution = _execution(variables={"last_user_response": "hello"})
        assert last_user_message(execution) == "hello"

    def test_empty(self):
        assert last_user_message(_execution()) == ""


class TestFormatFlowContext:
    def test_summary_lists_answers_by_prompt(self, linear_menu_flow):
        execution = _execution(
            steps=[FlowStep(block_id="hello", block_type="message"), _answered("menu", "Agent", "B")],
            variables={"plan": "gold"},
        )
        context = format_flow_context(execution, linear_menu_flow)
        assert context.startswith("[FLOW CONTEXT: Main menu]")
        assert "- What would you like?: Agent" in context
        assert "- plan: gold" in context
        assert "Last interaction: Agent" in context

    def test_summary_without_flow_uses_ids(self):
        execution = _execution(steps=[_answered("menu", "Agent", "B")])
        context = format_flow_context(execution)
        assert "[FLOW CONTEXT: menu-flow]" in context
        assert "- menu: Agent" in context
        assert "No variables collected." in context

    def test_summary_is_truncated(self):
        execution = _execution(variables={f"v{i}": "x" * 50 for i in range(40)})
        context = format_flow_context(execution)
        assert context.endswith("... [context truncated]")
        assert len(context) == MAX_SUMMARY_CHARS + len("... [context truncated]")

    def test_full_lists_every_step(self, linear_menu_flow):
        execution = _execution(steps=[
            FlowStep(block_id="start", block_type="start"),
            FlowStep(block_id="hello", block_type="message"),
            _answered("menu", "Agent", "B"),
        ])
        context = format_flow_context(execution, linear_menu_flow, "full")
        assert "1. [start] start: -" in context
        assert "3. [interactive_buttons] menu: Agent" in context
        assert "No variables collected." in context

    def test_full_is_not_truncated(self):
        execution = _execution(variables={f"v{i}": "x" * 50 for i in range(40)})
        context = format_flow_context(execution, fmt="full")
        assert "truncated" not in context
        assert len(context) > MAX_SUMMARY_CHARS
