"""Predicate evaluation for condition and switch nodes."""

from __future__ import annotations

import re
from typing import Any, Dict, Optional

from ..execute import StepInput

_MISSING = object()


def get_value_by_path(obj: Any, path: str) -> Any:
    current = obj
    for part in path.split("."):
        if current is None:
            return None
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else None
        else:
            current = getattr(current, part, None)
    return current


def resolve_field(step_input: StepInput, field: Optional[str]) -> Any:
    """Resolve a dotted ``field`` path against the node's context.

    Paths starting with ``input``, ``trigger`` or ``steps`` address those
    scopes explicitly; any other path is looked up in the input data.
    """
    if not field:
        return step_input.data
    scopes: Dict[str, Any] = {
        "input": step_input.data,
        "trigger": step_input.trigger_payload,
        "steps": step_input.steps,
    }
    head, _, rest = field.partition(".")
    if head in scopes:
        return get_value_by_path(scopes[head], rest) if rest else scopes[head]
    return get_value_by_path(step_input.data, field)


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _compare_numbers(actual: Any, expected: Any, op) -> bool:
    a, b = _to_number(actual), _to_number(expected)
    if a is None or b is None:
        return False
    return op(a, b)


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or (
        isinstance(value, (list, dict, tuple)) and len(value) == 0
    )


def evaluate(actual: Any, operator: str, expected: Any = None) -> bool:
    """Apply ``operator`` to ``actual`` and ``expected``.

    Raises:
        ValueError: For unknown operators.
    """
    if operator == "equals":
        return actual == expected or str(actual) == str(expected)
    if operator == "notEquals":
        return not evaluate(actual, "equals", expected)
    if operator == "contains":
        if isinstance(actual, str) and isinstance(expected, str):
            return expected in actual
        if isinstance(actual, (list, tuple)):
            return expected in actual
        return False
    if operator == "notContains":
        if isinstance(actual, str) and isinstance(expected, str):
            return expected not in actual
        if isinstance(actual, (list, tuple)):
            return expected not in actual
        return True
    if operator == "startsWith":
        return isinstance(actual, str) and isinstance(expected, str) and actual.startswith(expected)
    if operator == "endsWith":
        return isinstance(actual, str) and isinstance(expected, str) and actual.endswith(expected)
    if operator == "greaterThan":
        return _compare_numbers(actual, expected, lambda a, b: a > b)
    if operator == "lessThan":
        return _compare_numbers(actual, expected, lambda a, b: a < b)
    if operator == "greaterThanOrEqual":
        return _compare_numbers(actual, expected, lambda a, b: a >= b)
    if operator == "lessThanOrEqual":
        return _compare_numbers(actual, expected, lambda a, b: a <= b)
    if operator == "isEmpty":
        return _is_empty(actual)
    if operator == "isNotEmpty":
        return not _is_empty(actual)
    if operator == "isTrue":
        return actual is True or actual == "true"
    if operator == "isFalse":
        return actual is False or actual == "false"
    if operator == "regex":
        if not isinstance(actual, str) or not isinstance(expected, str):
            return False
        try:
            return re.search(expected, actual) is not None
        except re.error:
            return False
    raise ValueError(f"Unknown operator: {operator}")
