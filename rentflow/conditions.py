"""Condition matching against entity snapshots.

Evaluation is fail-closed: a field missing from the snapshot never satisfies a
condition, except ``exists: false``.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping, Sequence

from .contracts import Condition, Operator
from .utils.templating import MISSING, get_nested

logger = logging.getLogger(__name__)

_DEFAULT_GROUP = object()


def group_conditions(conditions: Iterable[Condition]) -> list[list[Condition]]:
    """Split conditions into groups, ordered by first appearance."""
    groups: dict[Any, list[Condition]] = {}
    for condition in conditions:
        key = _DEFAULT_GROUP if condition.group is None else condition.group
        groups.setdefault(key, []).append(condition)
    return list(groups.values())


def matches(conditions: Sequence[Condition], snapshot: Mapping[str, Any]) -> bool:
    """Return whether ``snapshot`` satisfies ``conditions``.

    Conditions within a group are AND'ed (stopping at the first false one) and
    groups are OR'ed. An empty list matches unconditionally.
    """
    if not conditions:
        return True
    return any(
        all(evaluate(condition, snapshot) for condition in group)
        for group in group_conditions(conditions)
    )


def evaluate(condition: Condition, snapshot: Mapping[str, Any]) -> bool:
    """Evaluate a single condition."""
    actual = get_nested(snapshot, condition.field)
    operator = condition.operator
    expected = condition.value

    if operator is Operator.EXISTS:
        return (actual is not MISSING) == bool(expected)
    if actual is MISSING:
        return False

    try:
        if operator is Operator.EQUALS:
            return actual == expected
        if operator is Operator.NOT_EQUALS:
            return actual != expected
        if operator is Operator.GREATER_THAN:
            return actual > expected
        if operator is Operator.LESS_THAN:
            return actual < expected
        if operator is Operator.CONTAINS:
            return _contains(actual, expected)
        if operator is Operator.NOT_CONTAINS:
            return not _contains(actual, expected)
        if operator is Operator.IN:
            return actual in expected
        if operator is Operator.NOT_IN:
            return actual not in expected
    except TypeError:
        logger.debug(
            f"Incomparable values for '{condition.field}' {operator.value}: "
            f"{type(actual).__name__} vs {type(expected).__name__}"
        )
        return False

    logger.warning(f"Unknown operator '{operator}' on field '{condition.field}'; failing closed")
    return False


def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str):
        return isinstance(expected, str) and expected in actual
    if isinstance(actual, (list, tuple, set, frozenset, Mapping)):
        return expected in actual
    raise TypeError("contains requires a string, collection or mapping")
