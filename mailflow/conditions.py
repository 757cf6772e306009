"""Evaluation of trigger and branch conditions against subscriber data.

Conditions are folded strictly left to right: the first result seeds the
accumulator and each following condition is combined with it through its
own ``logical_operator``. There is no precedence grouping, so
``A AND B OR C`` is ``(A and B) or C`` and ``A OR B AND C`` is
``(A or B) and C``. Workflow authors expecting algebraic precedence will get
different results.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Any, Iterable, Mapping

from .contracts import TriggerCondition


def get_nested_value(data: Mapping[str, Any], path: str) -> Any:
    """Resolve a dotted ``path`` through nested mappings and sequences.

    Returns ``None`` as soon as a segment cannot be resolved.
    """
    current: Any = data
    for key in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(key)
        elif isinstance(current, (list, tuple)) and key.isdigit():
            index = int(key)
            current = current[index] if index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (list, tuple)):
        return ",".join(_stringify(v) for v in value)
    return str(value)


def _to_number(value: Any) -> float:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, datetime):
        return value.timestamp()
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return math.nan
        try:
            return float(text)
        except ValueError:
            return math.nan
    return math.nan


def _strict_equals(left: Any, right: Any) -> bool:
    # booleans never compare equal to numbers
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    return left == right


def evaluate_condition(condition: TriggerCondition, data: Mapping[str, Any]) -> bool:
    field_value = get_nested_value(data, condition.field)
    op = condition.operator

    if op == "equals":
        return _strict_equals(field_value, condition.value)
    if op == "not_equals":
        return not _strict_equals(field_value, condition.value)
    if op == "contains":
        return _stringify(condition.value).lower() in _stringify(field_value).lower()
    if op == "not_contains":
        return _stringify(condition.value).lower() not in _stringify(field_value).lower()
    if op == "greater_than":
        return _to_number(field_value) > _to_number(condition.value)
    if op == "less_than":
        return _to_number(field_value) < _to_number(condition.value)
    if op == "exists":
        return field_value is not None
    if op == "not_exists":
        return field_value is None
    return False


def evaluate_conditions(
    conditions: Iterable[TriggerCondition], data: Mapping[str, Any]
) -> bool:
    """Fold ``conditions`` left to right; an empty list is ``True``."""
    result: bool | None = None
    for condition in conditions:
        outcome = evaluate_condition(condition, data)
        if result is None:
            result = outcome
        elif condition.logical_operator == "OR":
            result = result or outcome
        else:
            result = result and outcome
    return True if result is None else result
