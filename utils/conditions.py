"""
Condition evaluator for condition blocks.

Evaluates Condition objects against an execution's variables. Comparisons are
loose: numeric text compares as a number, booleans compare as "true"/"false",
and anything that cannot be compared evaluates to False rather than raising.
"""
from __future__ import annotations

import math
from typing import Any, Optional

from models.schemas import Condition


def as_number(value: Any) -> Optional[float]:
    """Coerce to float, or None when the value is not numeric."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        if not value.strip():
            return None
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return None if math.isnan(number) else number


def as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _equals(actual: Any, expected: Any) -> bool:
    if actual is None:
        return False
    left, right = as_number(actual), as_number(expected)
    if left is not None and right is not None:
        return left == right
    return as_text(actual) == as_text(expected)


def _greater(actual: Any, expected: Any) -> bool:
    left, right = as_number(actual), as_number(expected)
    return left is not None and right is not None and left > right


def _less(actual: Any, expected: Any) -> bool:
    left, right = as_number(actual), as_number(expected)
    return left is not None and right is not None and left < right


def _contains(actual: Any, expected: Any) -> bool:
    return actual is not None and as_text(expected) in as_text(actual)


OPERATORS: dict[str, Any] = {
    "==": _equals,
    "!=": lambda a, b: not _equals(a, b),
    ">": _greater,
    "<": _less,
    "contains": _contains,
    "not_contains": lambda a, b: not _contains(a, b),
}


def evaluate_condition(condition: Condition, variables: dict[str, Any]) -> bool:
    """Evaluate a single condition against the variable map."""
    fn = OPERATORS.get(condition.operator)
    if fn is None:
        return False
    try:
        return bool(fn(variables.get(condition.variable), condition.value))
    except (TypeError, ValueError):
        return False


def first_match(conditions: list[Condition], variables: dict[str, Any]) -> Optional[int]:
    """Index of the first condition that holds, in declaration order."""
    for index, condition in enumerate(conditions):
        if evaluate_condition(condition, variables):
            return index
    return None
