"""Append-only audit log and event-sourced replay of instance state."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from .models import Event, EventAction, InstanceState, WorkflowInstance
from .persistence import WorkflowRepository

logger = logging.getLogger(__name__)


class ReplayedState(BaseModel):
    """Instance state reconstructed purely from history."""

    state: Optional[InstanceState] = None
    current_step_id: Optional[str] = None
    resolved_approvers: List[str] = Field(default_factory=list)
    delegated_by: Dict[str, str] = Field(default_factory=dict)
    step_approvals: List[str] = Field(default_factory=list)
    step_rejections: List[str] = Field(default_factory=list)
    event_count: int = 0
    violations: List[str] = Field(default_factory=list)


def fold(events: Iterable[Event]) -> ReplayedState:
    """Fold events in sequence order into a :class:`ReplayedState`.

    Each event's ``resulting_state``/``resulting_step`` is authoritative;
    ``start`` and ``advance`` also carry the approver set frozen for the step
    they entered, and a terminal state leaves no approvers. Anything recorded
    after a terminal state, or a state that moves backwards, is reported in
    ``violations``.
    """
    replayed = ReplayedState()
    for event in sorted(events, key=lambda e: (e.sequence, e.timestamp)):
        replayed.event_count += 1
        if replayed.state is not None and replayed.state.is_terminal:
            replayed.violations.append(
                f"event #{event.sequence} ({event.action.value}) after terminal state "
                f"{replayed.state.value}"
            )
            continue
        if event.action == EventAction.START and replayed.state is not None:
            replayed.violations.append(f"event #{event.sequence}: second start event")

        if event.action in (EventAction.START, EventAction.ADVANCE):
            replayed.resolved_approvers = sorted(event.approvers)
            replayed.delegated_by = dict(event.delegated_by)
            replayed.step_approvals = []
            replayed.step_rejections = []
        elif event.action == EventAction.APPROVE:
            slot = replayed.delegated_by.get(event.actor, event.actor)
            if any(
                replayed.delegated_by.get(a, a) == slot for a in replayed.step_approvals
            ):
                replayed.violations.append(
                    f"event #{event.sequence}: slot of {slot} approved the same step twice"
                )
            replayed.step_approvals.append(event.actor)
        elif event.action == EventAction.REJECT:
            replayed.step_rejections.append(event.actor)

        replayed.state = event.resulting_state
        if event.resulting_state.is_terminal:
            replayed.current_step_id = None
            replayed.resolved_approvers = []
            replayed.delegated_by = {}
        else:
            replayed.current_step_id = event.resulting_step
    return replayed


class HistoryLog:
    """Audit log facade over the repository's event table."""

    def __init__(self, repository: WorkflowRepository) -> None:
        self._repository = repository

    def append(self, event: Event) -> Event:
        """Append ``event``; a repeated idempotency key raises ``DuplicateEvent``."""
        return self._repository.append_event(event)

    def replay(self, instance_id: str) -> List[Event]:
        """Every event of an instance in the order it was recorded."""
        return self._repository.list_events(instance_id)

    def fold(self, instance_id: str) -> ReplayedState:
        return fold(self.replay(instance_id))

    def contains(self, idempotency_key: str) -> bool:
        return self._repository.has_event(idempotency_key)

    def verify(self, instance: WorkflowInstance) -> List[str]:
        """Differences between the stored instance and its folded history.

        An empty list means the mutable row and the ledger agree.
        """
        replayed = self.fold(instance.id)
        problems = list(replayed.violations)
        if replayed.state != instance.state:
            problems.append(
                f"state: row={instance.state.value} history="
                f"{replayed.state.value if replayed.state else None}"
            )
        if replayed.current_step_id != instance.current_step_id:
            problems.append(
                f"current_step_id: row={instance.current_step_id} history={replayed.current_step_id}"
            )
        if sorted(replayed.resolved_approvers) != sorted(instance.resolved_approvers):
            problems.append("resolved_approvers differ from the last step entry event")
        if replayed.delegated_by != instance.delegated_by:
            problems.append("delegations differ from the last step entry event")
        if not instance.is_terminal:
            if sorted(replayed.step_approvals) != sorted(instance.step_approvals):
                problems.append("step approvals differ from history")
            if sorted(replayed.step_rejections) != sorted(instance.step_rejections):
                problems.append("step rejections differ from history")
        if problems:
            logger.warning(f"Instance {instance.id} disagrees with its history: {problems}")
        return problems
