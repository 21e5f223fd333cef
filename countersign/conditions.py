"""Boolean routing predicates over entity snapshots."""

from __future__ import annotations

import logging
import operator as op
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Sequence

from .models import Predicate, Transition

logger = logging.getLogger(__name__)

_MISSING = object()


def _coerce_pair(left: Any, right: Any) -> tuple[Any, Any]:
    """Bring numeric strings and numbers onto a common footing."""
    if isinstance(left, bool) or isinstance(right, bool):
        return left, right
    if isinstance(left, (int, float)) and isinstance(right, str):
        try:
            return left, float(right)
        except ValueError:
            return left, right
    if isinstance(left, str) and isinstance(right, (int, float)):
        try:
            return float(left), right
        except ValueError:
            return left, right
    return left, right


def _ordered(fn: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def compare(left: Any, right: Any) -> bool:
        if left is None or right is None:
            return False
        left, right = _coerce_pair(left, right)
        try:
            return bool(fn(left, right))
        except TypeError:
            return False

    return compare


def _equals(left: Any, right: Any) -> bool:
    left, right = _coerce_pair(left, right)
    return left == right


def _contains(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return False
    if isinstance(left, str):
        return str(right) in left
    try:
        return right in left
    except TypeError:
        return False


def _starts_with(left: Any, right: Any) -> bool:
    return isinstance(left, str) and right is not None and left.startswith(str(right))


def _ends_with(left: Any, right: Any) -> bool:
    return isinstance(left, str) and right is not None and left.endswith(str(right))


def _member_of(left: Any, right: Any) -> bool:
    if not isinstance(right, (list, tuple, set, frozenset)):
        return False
    return any(_equals(left, candidate) for candidate in right)


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "=": _equals,
    "!=": lambda left, right: not _equals(left, right),
    ">": _ordered(op.gt),
    ">=": _ordered(op.ge),
    "<": _ordered(op.lt),
    "<=": _ordered(op.le),
    "contains": _contains,
    "starts_with": _starts_with,
    "ends_with": _ends_with,
    "in": _member_of,
}


class ConditionEvaluator:
    """Evaluates conjunctions of predicates and picks transitions.

    A predicate whose field is absent from the snapshot is false, whatever
    the operator, so a missing field never routes an entity down a branch.
    """

    def __init__(self, operators: Optional[Mapping[str, Callable[[Any, Any], bool]]] = None) -> None:
        self._operators = dict(operators or OPERATORS)

    def check(self, predicate: Predicate, snapshot: Mapping[str, Any]) -> bool:
        left = snapshot.get(predicate.field, _MISSING)
        if left is _MISSING:
            return False
        if predicate.value_ref is not None:
            right = snapshot.get(predicate.value_ref, _MISSING)
            if right is _MISSING:
                return False
        else:
            right = predicate.value
        compare = self._operators.get(predicate.operator)
        if compare is None:
            raise ValueError(f"Unsupported operator: {predicate.operator}")
        return compare(left, right)

    def evaluate(self, condition: Iterable[Predicate], snapshot: Mapping[str, Any]) -> bool:
        """Return ``True`` when every predicate holds; empty conditions are always true."""
        return all(self.check(predicate, snapshot) for predicate in condition)

    def select(
        self, transitions: Sequence[Transition], snapshot: Mapping[str, Any]
    ) -> Optional[Transition]:
        """First transition, by ``order``, whose condition matches."""
        for transition in sorted(transitions, key=lambda t: t.order):
            if self.evaluate(transition.condition, snapshot):
                logger.debug(
                    f"Transition {transition.from_step!r} -> {transition.to_step!r} "
                    f"matched (order={transition.order})"
                )
                return transition
        return None


__all__ = ["ConditionEvaluator", "OPERATORS"]
