"""Structural validation of workflow definitions."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict, List, Optional, Set

from .approvers import ApproverResolver
from .models import Transition, ValidationResult, WorkflowDefinition

logger = logging.getLogger(__name__)

START = "<start>"


class DefinitionValidator:
    """Checks a definition before it becomes eligible for use.

    A valid definition is a DAG rooted at the virtual start node in which
    every step is reachable and every node (start included) has an
    unconditional fallback transition, so routing always finds an exit and
    every instance terminates.
    """

    def __init__(self, resolver: Optional[ApproverResolver] = None) -> None:
        self._resolver = resolver or ApproverResolver()

    def validate(self, definition: WorkflowDefinition) -> ValidationResult:
        errors: List[str] = []
        warnings: List[str] = []

        step_ids = [s.id for s in definition.steps]
        known: Set[str] = set(step_ids)
        duplicates = sorted({s for s in step_ids if step_ids.count(s) > 1})
        if duplicates:
            errors.append(f"Duplicate step ids: {', '.join(duplicates)}")
        if not definition.steps:
            errors.append("Definition has no steps")

        edges: Dict[str, List[Transition]] = defaultdict(list)
        for transition in definition.transitions:
            for endpoint in (transition.from_step, transition.to_step):
                if endpoint is not None and endpoint not in known:
                    errors.append(f"Transition references unknown step {endpoint!r}")
            edges[transition.from_step or START].append(transition)

        if not edges.get(START):
            errors.append("No transition leaves the start node")

        cycle = self._find_cycle(edges, known)
        if cycle:
            errors.append(f"Step graph has a cycle: {' -> '.join(cycle)}")

        reachable = self._reachable(edges, known)
        for step in definition.steps:
            if step.id not in reachable:
                errors.append(f"Step {step.id!r} is unreachable from start")

        for node in [START] + [s.id for s in definition.steps]:
            outgoing = sorted(edges.get(node, []), key=lambda t: t.order)
            label = "start node" if node == START else f"step {node!r}"
            fallbacks = [t for t in outgoing if t.is_fallback]
            if not fallbacks:
                errors.append(f"{label} has no unconditional fallback transition")
                continue
            shadowed = [t for t in outgoing if t.order > fallbacks[0].order]
            if shadowed:
                warnings.append(
                    f"{label}: {len(shadowed)} transition(s) ordered after the fallback never match"
                )

        for step in definition.steps:
            bound = self._resolver.static_bound(step)
            if bound is None:
                warnings.append(
                    f"Step {step.id!r}: quorum {step.quorum} cannot be checked statically "
                    f"for {step.approver_rule.kind!r} approvers"
                )
            elif step.quorum > bound:
                errors.append(
                    f"Step {step.id!r}: quorum {step.quorum} exceeds the {bound} possible approver(s)"
                )

        result = ValidationResult(
            valid=not errors,
            errors=errors,
            warnings=warnings,
            stats={
                "steps": len(definition.steps),
                "transitions": len(definition.transitions),
                "terminal_transitions": sum(
                    1 for t in definition.transitions if t.to_step is None
                ),
            },
        )
        if errors:
            logger.info(f"Definition {definition.code!r} failed validation: {errors}")
        return result

    @staticmethod
    def _reachable(edges: Dict[str, List[Transition]], known: Set[str]) -> Set[str]:
        seen: Set[str] = set()
        frontier = [START]
        while frontier:
            node = frontier.pop()
            for transition in edges.get(node, []):
                target = transition.to_step
                if target is not None and target in known and target not in seen:
                    seen.add(target)
                    frontier.append(target)
        return seen

    @staticmethod
    def _find_cycle(edges: Dict[str, List[Transition]], known: Set[str]) -> List[str]:
        """Return one cycle as a list of step ids, or an empty list."""
        white, grey, black = 0, 1, 2
        colour: Dict[str, int] = {node: white for node in known}
        parent: Dict[str, str] = {}

        for root in sorted(known):
            if colour[root] != white:
                continue
            stack = [(root, iter(edges.get(root, [])))]
            colour[root] = grey
            while stack:
                node, children = stack[-1]
                advanced = False
                for transition in children:
                    target = transition.to_step
                    if target is None or target not in known:
                        continue
                    if colour[target] == grey:
                        cycle = [target, node]
                        while cycle[-1] != target:
                            cycle.append(parent[cycle[-1]])
                        return list(reversed(cycle))
                    if colour[target] == white:
                        colour[target] = grey
                        parent[target] = node
                        stack.append((target, iter(edges.get(target, []))))
                        advanced = True
                        break
                if not advanced:
                    colour[node] = black
                    stack.pop()
        return []


def validate_definition(definition: WorkflowDefinition) -> ValidationResult:
    """Validate ``definition`` with a default resolver."""
    return DefinitionValidator().validate(definition)
