"""Condition evaluator — decides whether a run should proceed."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from tasker.scheduler.models import parse_instant

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence
    from datetime import datetime

    from tasker.scheduler.models import TaskCondition

logger = logging.getLogger(__name__)

_MISSING = object()


@dataclass
class ConditionContext:
    """What conditions are evaluated against.

    Attributes:
        now: Evaluation time, compared against ``time`` conditions.
        variables: Values looked up by ``variable`` and ``api-response``
            conditions. Trigger payloads are exposed under ``"payload"``.
    """

    now: datetime
    variables: Mapping[str, Any] = field(default_factory=dict)


def lookup(variables: Mapping[str, Any], key: str) -> Any:
    """Resolve a dotted path (``"payload.status"``) in nested mappings and lists."""
    current: Any = variables
    for part in key.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list | tuple) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return _MISSING
    return current


def _actual_value(condition: TaskCondition, context: ConditionContext) -> Any:
    if condition.type == "time":
        return context.now
    if not condition.key:
        return _MISSING
    return lookup(context.variables, condition.key)


def _expected_value(condition: TaskCondition) -> Any:
    if condition.type == "time" and isinstance(condition.value, str):
        return parse_instant(condition.value)
    return condition.value


def condition_met(condition: TaskCondition, context: ConditionContext) -> bool:
    """Evaluate a single condition. Incomparable values evaluate to False."""
    actual = _actual_value(condition, context)
    op = condition.operator

    if op == "exists":
        present = actual is not _MISSING and actual is not None
        return present if condition.value is None else present is bool(condition.value)
    if actual is _MISSING:
        return False

    try:
        expected = _expected_value(condition)
        if op == "equals":
            return actual == expected
        if op == "contains":
            return actual is not None and expected in actual
        if op == "greater":
            return actual > expected
        if op == "less":
            return actual < expected
    except (TypeError, ValueError):
        logger.debug("Condition not comparable: %s %s %r", condition.type, op, condition.value)
        return False

    logger.warning("Unknown condition operator: %s", op)
    return False


def all_conditions_met(
    conditions: Sequence[TaskCondition], context: ConditionContext
) -> bool:
    """True when every condition holds. An empty list always passes."""
    return all(condition_met(condition, context) for condition in conditions)
