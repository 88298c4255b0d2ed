from __future__ import annotations

import math
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from app.automations.schemas import (
    Condition,
    ConditionAll,
    ConditionAny,
    ConditionNot,
    parse_condition,
)

_EMPTY = (None, "", [], {}, ())


def evaluate(expression: dict[str, Any] | Condition, context: dict[str, Any]) -> bool:
    """Evaluate a condition tree against a plain dict context.

    Raises ``ValueError`` (or pydantic's subclass of it) when the expression
    does not parse; comparisons between incompatible types are false.
    """
    condition = parse_condition(expression) if isinstance(expression, dict) else expression
    return _eval(condition, context)


def matches_filter(trigger_filter: dict[str, Any] | None, context: dict[str, Any]) -> bool:
    if not trigger_filter:
        return True
    return evaluate(trigger_filter, context)


def resolve_path(context: dict[str, Any], path: str) -> tuple[bool, Any]:
    current: Any = context
    for segment in path.split("."):
        if not isinstance(current, dict) or segment not in current:
            return False, None
        current = current[segment]
    return True, current


def _eval(condition: Condition, context: dict[str, Any]) -> bool:
    if isinstance(condition, ConditionAll):
        return all(_eval(item, context) for item in condition.all)
    if isinstance(condition, ConditionAny):
        return any(_eval(item, context) for item in condition.any)
    if isinstance(condition, ConditionNot):
        return not _eval(condition.not_, context)

    exists, current = resolve_path(context, condition.path)
    op = condition.op
    target = condition.value

    if op == "exists":
        return exists and current not in _EMPTY
    if op == "not_exists":
        return not exists or current in _EMPTY
    if op == "eq":
        return _normalized(current) == _normalized(target)
    if op == "neq":
        return _normalized(current) != _normalized(target)
    if op == "in":
        if not isinstance(target, (list, tuple, set)):
            return False
        return any(_normalized(current) == _normalized(item) for item in target)
    if op == "contains":
        if isinstance(current, str) and isinstance(target, str):
            return target.lower() in current.lower()
        if isinstance(current, (list, tuple, set)):
            return any(_normalized(item) == _normalized(target) for item in current)
        return False

    left = _normalized(current)
    right = _normalized(target)
    if left is None or right is None:
        return False
    try:
        if op == "gt":
            return left > right
        if op == "gte":
            return left >= right
        if op == "lt":
            return left < right
        if op == "lte":
            return left <= right
    except TypeError:
        return False
    return False


def _normalized(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, int):
        return float(value)
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, str):
        as_number = _parse_number(value)
        if as_number is not None:
            return as_number
        as_date = _parse_date(value)
        if as_date is not None:
            return as_date.isoformat()
        return value
    return value


def _parse_number(value: str) -> float | None:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    # "NaN" and "inf" stay strings so they compare as text.
    return number if math.isfinite(number) else None


def _parse_date(value: str) -> date | None:
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None
