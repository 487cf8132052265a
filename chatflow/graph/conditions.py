"""
Condition evaluation for condition nodes.

Pure functions over the session's variables; evaluation never raises.

Rules:
- a missing (or None) variable makes every operator False, "!=" included
- equality and substring operators compare lowercased string forms
- numeric operators parse both sides as floats; a parse failure is False
- an unknown operator is False and logs a warning
"""

import logging
from collections.abc import Mapping
from typing import Any

from chatflow.graph.node import ConditionGroup
from chatflow.graph.variables import VariableStore, to_text

logger = logging.getLogger(__name__)

MAX_GROUP_CONDITIONS = 5
LOGICAL_OPERATORS = ("AND", "OR")

# Canonical operator -> accepted spellings
_OPERATOR_ALIASES: dict[str, tuple[str, ...]] = {
    "==": ("==", "eq", "equals"),
    "!=": ("!=", "neq", "not_equals", "not equals"),
    ">": (">", "gt", "greater"),
    "<": ("<", "lt", "less"),
    ">=": (">=", "gte", "greater_or_equal"),
    "<=": ("<=", "lte", "less_or_equal"),
    "contains": ("contains",),
    "not_contains": ("not_contains", "not contains"),
    "starts_with": ("starts_with", "starts with"),
    "ends_with": ("ends_with", "ends with"),
}

_CANONICAL: dict[str, str] = {
    alias: canonical for canonical, aliases in _OPERATOR_ALIASES.items() for alias in aliases
}


def normalize_operator(operator: str | None) -> str | None:
    """Map an operator spelling to its canonical form. None if unknown."""
    if not operator:
        return None
    return _CANONICAL.get(operator.strip().lower())


def is_known_operator(operator: str | None) -> bool:
    return normalize_operator(operator) is not None


def _to_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return float(value)
    try:
        return float(str(value).strip())
    except ValueError:
        return None


def evaluate_condition(value: Any, operator: str, literal: Any) -> bool:
    """
    Compare a variable value against a literal.

    Args:
        value: The variable's value, or None when the variable is not set
        operator: Operator in any accepted spelling
        literal: The right-hand side configured on the node

    Returns:
        The comparison result; False for missing variables and unknown operators
    """
    canonical = normalize_operator(operator)
    if canonical is None:
        logger.warning(f"Unknown condition operator '{operator}', evaluating to False")
        return False

    if value is None:
        return False

    if canonical in (">", "<", ">=", "<="):
        left = _to_float(value)
        right = _to_float(literal)
        if left is None or right is None:
            return False
        if canonical == ">":
            return left > right
        if canonical == "<":
            return left < right
        if canonical == ">=":
            return left >= right
        return left <= right

    left_text = to_text(value).lower()
    right_text = to_text(literal).lower()

    if canonical == "==":
        return left_text == right_text
    if canonical == "!=":
        return left_text != right_text
    if canonical == "contains":
        return right_text in left_text
    if canonical == "not_contains":
        return right_text not in left_text
    if canonical == "starts_with":
        return left_text.startswith(right_text)
    return left_text.endswith(right_text)


def evaluate_group(group: ConditionGroup, variables: Mapping[str, Any] | VariableStore) -> bool:
    """
    Evaluate a condition group left to right with short-circuit.

    An empty group is False. An unrecognised logical operator is treated as AND.
    """
    if not group.conditions:
        return False

    if isinstance(variables, VariableStore):
        lookup = variables.resolve
    else:
        store = VariableStore(variables)
        lookup = store.resolve

    use_or = group.logical_operator.strip().upper() == "OR"
    for condition in group.conditions[:MAX_GROUP_CONDITIONS]:
        result = evaluate_condition(lookup(condition.variable), condition.operator, condition.value)
        if use_or and result:
            return True
        if not use_or and not result:
            return False
    return not use_or
