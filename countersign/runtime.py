"""Instance runtime: the approval state machine."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from .adapters import AdapterRegistry
from .approvers import ApproverResolver
from .conditions import ConditionEvaluator
from .config import RuntimeConfig
from .definitions import DefinitionStore
from .errors import (
    ConcurrentModification,
    DuplicateEvent,
    DuplicateInFlight,
    InstanceNotFound,
    NoEligibleApprovers,
    NoEntryStep,
    NoMatchingTransition,
    NotAnApprover,
    NotExpired,
    NotInProgress,
    VersionConflict,
)
from .models import (
    SYSTEM_ACTOR,
    Event,
    EventAction,
    InstanceState,
    StateChange,
    Step,
    VetoPolicy,
    WorkflowDefinition,
    WorkflowInstance,
    idempotency_key,
    utcnow,
)
from .notify import NotificationHub
from .persistence import WorkflowRepository
from .utils.retry import sleep_before_retry

logger = logging.getLogger(__name__)


@dataclass
class _Mutation:
    """Result of applying one action to a private copy of an instance."""

    instance: WorkflowInstance
    events: List[Event] = field(default_factory=list)
    changes: List[StateChange] = field(default_factory=list)


Apply = Callable[[WorkflowInstance, WorkflowDefinition, datetime], _Mutation]


class ApprovalRuntime:
    """Owns the lifecycle of approval instances.

    Every action reads the instance with its version, computes the next state
    on a private copy and writes it back with compare-and-swap together with
    its history events. A lost race re-reads and re-applies, up to
    ``max_cas_retries`` times, then surfaces ``ConcurrentModification``.
    Validation failures raise before anything is written.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        definitions: DefinitionStore,
        adapters: AdapterRegistry,
        resolver: Optional[ApproverResolver] = None,
        evaluator: Optional[ConditionEvaluator] = None,
        notifications: Optional[NotificationHub] = None,
        config: Optional[RuntimeConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._definitions = definitions
        self._adapters = adapters
        self._resolver = resolver or ApproverResolver()
        self._evaluator = evaluator or ConditionEvaluator()
        self._notifications = notifications
        self._config = config or RuntimeConfig()
        self._clock = clock

    # ------------------------------------------------------------------
    # Queries

    def get(self, instance_id: str) -> WorkflowInstance:
        instance = self._repository.get_instance(instance_id)
        if instance is None:
            raise InstanceNotFound(f"Workflow instance {instance_id} not found")
        return instance

    # ------------------------------------------------------------------
    # Actions

    def start(
        self,
        entity_type: str,
        entity_id: str,
        requester: str,
        comment: Optional[str] = None,
        requested_at: Optional[datetime] = None,
    ) -> WorkflowInstance:
        """Open an approval for ``(entity_type, entity_id)``.

        A definition whose entry transition goes straight to the terminal
        node yields an instance that is approved on creation.
        """
        entity_id = str(entity_id)
        now = requested_at or self._clock()

        existing = self._repository.find_in_progress(entity_type, entity_id)
        if existing is not None:
            raise DuplicateInFlight(
                f"{entity_type}:{entity_id} already has an approval in progress",
                instance_id=existing.id,
            )

        # Fail fast when nothing is configured before touching the adapter.
        self._definitions.lookup(entity_type)
        snapshot = self._adapters.get_snapshot(entity_type, entity_id)
        definition = self._definitions.lookup(entity_type, snapshot)

        entry = self._evaluator.select(definition.transitions_from(None), snapshot)
        if entry is None:
            raise NoEntryStep(
                f"No entry transition of {definition.code!r} matches {entity_type}:{entity_id}"
            )

        instance = WorkflowInstance(
            workflow_definition_id=definition.id,
            entity_type=entity_type,
            entity_id=entity_id,
            entity_snapshot=snapshot,
            requester=requester,
            started_at=now,
        )
        if entry.to_step is None:
            instance.state = InstanceState.APPROVED
            instance.completed_at = now
        else:
            step = self._require_step(definition, entry.to_step)
            self._enter_step(instance, definition, step, snapshot, now)

        event = Event(
            instance_id=instance.id,
            action=EventAction.START,
            actor=requester,
            timestamp=now,
            comment=comment,
            resulting_state=instance.state,
            resulting_step=instance.current_step_id,
            approvers=list(instance.resolved_approvers),
            delegated_by=dict(instance.delegated_by),
        )
        stored = self._repository.create_instance(instance, [event])
        logger.info(
            f"Started {definition.code!r} v{definition.version} for {entity_type}:{entity_id} "
            f"as instance {stored.id} at step {stored.current_step_id} "
            f"(approvers={stored.resolved_approvers})"
        )
        self._notify(
            StateChange(
                instance_id=stored.id,
                action=EventAction.START,
                old_state=None,
                new_state=stored.state,
                new_step=stored.current_step_id,
                resolved_approvers=stored.resolved_approvers,
                entity_type=entity_type,
                entity_id=entity_id,
                occurred_at=now,
            )
        )
        return stored

    def approve(
        self,
        instance_id: str,
        actor: str,
        comment: Optional[str] = None,
        requested_at: Optional[datetime] = None,
    ) -> WorkflowInstance:
        def apply(instance, definition, now):
            step = self._current_step(instance, definition)
            self._check_approver(instance, actor)
            instance.step_approvals.append(actor)
            mutation = _Mutation(instance)
            mutation.events.append(
                self._event(instance, EventAction.APPROVE, actor, now, comment, step.id)
            )
            logger.info(
                f"{actor} approved step {step.id} of instance {instance.id} "
                f"({len(instance.approved_slots)}/{step.quorum})"
            )
            if len(instance.approved_slots) >= step.quorum:
                self._advance(mutation, definition, step, actor, now)
            return mutation

        return self._mutate(instance_id, EventAction.APPROVE, actor, requested_at, apply)

    def reject(
        self,
        instance_id: str,
        actor: str,
        comment: Optional[str] = None,
        requested_at: Optional[datetime] = None,
    ) -> WorkflowInstance:
        def apply(instance, definition, now):
            step = self._current_step(instance, definition)
            self._check_approver(instance, actor)
            instance.step_rejections.append(actor)

            if self._rejection_terminates(instance, step):
                self._finish(instance, InstanceState.REJECTED, now)
                logger.info(f"{actor} rejected instance {instance.id} at step {step.id}")
            else:
                logger.info(
                    f"{actor} rejected step {step.id} of instance {instance.id}; "
                    f"step stays open ({len(instance.step_rejections)} rejection(s))"
                )
            mutation = _Mutation(instance)
            mutation.events.append(
                self._event(instance, EventAction.REJECT, actor, now, comment, step.id)
            )
            if instance.is_terminal:
                mutation.changes.append(
                    self._change(instance, EventAction.REJECT, step.id, now)
                )
            return mutation

        return self._mutate(instance_id, EventAction.REJECT, actor, requested_at, apply)

    def cancel(
        self,
        instance_id: str,
        actor: str,
        comment: Optional[str] = None,
        requested_at: Optional[datetime] = None,
    ) -> WorkflowInstance:
        """Cancel an in-progress instance. Whether ``actor`` may do so is the caller's call."""

        def apply(instance, definition, now):
            step_id = instance.current_step_id
            self._finish(instance, InstanceState.CANCELLED, now)
            logger.info(f"{actor} cancelled instance {instance.id}")
            return _Mutation(
                instance,
                events=[self._event(instance, EventAction.CANCEL, actor, now, comment, step_id)],
                changes=[self._change(instance, EventAction.CANCEL, step_id, now)],
            )

        return self._mutate(instance_id, EventAction.CANCEL, actor, requested_at, apply)

    def expire(self, instance_id: str, now: Optional[datetime] = None) -> WorkflowInstance:
        """Expire an instance past its deadline. Reserved for the sweeper."""

        def apply(instance, definition, at):
            if instance.expires_at is None or instance.expires_at > at:
                raise NotExpired(
                    f"Instance {instance.id} is not past its deadline",
                    expires_at=instance.expires_at.isoformat() if instance.expires_at else None,
                )
            step_id = instance.current_step_id
            self._finish(instance, InstanceState.EXPIRED, at)
            logger.info(f"Instance {instance.id} expired at step {step_id}")
            return _Mutation(
                instance,
                events=[self._event(instance, EventAction.EXPIRE, SYSTEM_ACTOR, at, None, step_id)],
                changes=[self._change(instance, EventAction.EXPIRE, step_id, at)],
            )

        return self._mutate(instance_id, EventAction.EXPIRE, SYSTEM_ACTOR, now, apply)

    # ------------------------------------------------------------------
    # Mutation loop

    def _mutate(
        self,
        instance_id: str,
        action: EventAction,
        actor: str,
        requested_at: Optional[datetime],
        apply: Apply,
    ) -> WorkflowInstance:
        attempts = self._config.max_cas_retries
        for attempt in range(attempts):
            instance = self.get(instance_id)
            if requested_at is not None and self._repository.has_event(
                idempotency_key(instance.id, action, actor, requested_at)
            ):
                logger.info(
                    f"Ignoring replayed {action.value} by {actor} on instance {instance.id}"
                )
                return instance
            if instance.is_terminal:
                raise NotInProgress(
                    f"Instance {instance.id} is {instance.state.value}",
                    state=instance.state.value,
                )

            definition = self._definitions.get(instance.workflow_definition_id)
            now = requested_at or self._clock()
            mutation = apply(instance.model_copy(deep=True), definition, now)
            try:
                stored = self._repository.commit(
                    mutation.instance, instance.version, mutation.events
                )
            except (VersionConflict, DuplicateEvent) as exc:
                logger.debug(
                    f"{action.value} on instance {instance_id} lost a write race "
                    f"(attempt {attempt + 1}/{attempts}): {exc}"
                )
                sleep_before_retry(attempt, base=self._config.retry_backoff_seconds)
                continue

            for change in mutation.changes:
                self._notify(change)
            return stored

        logger.warning(
            f"{action.value} on instance {instance_id} gave up after {attempts} conflicting writes"
        )
        raise ConcurrentModification(
            f"Instance {instance_id} kept changing; retry the {action.value}",
            instance_id=instance_id,
        )

    # ------------------------------------------------------------------
    # State machine helpers

    def _advance(
        self,
        mutation: _Mutation,
        definition: WorkflowDefinition,
        step: Step,
        actor: str,
        now: datetime,
    ) -> None:
        """Quorum reached on ``step``: route to the next step or finish approved."""
        instance = mutation.instance
        snapshot = self._adapters.get_snapshot(instance.entity_type, instance.entity_id)
        instance.entity_snapshot = snapshot

        transition = self._evaluator.select(definition.transitions_from(step.id), snapshot)
        if transition is None:
            raise NoMatchingTransition(
                f"No transition out of step {step.id!r} of {definition.code!r} matches",
                instance_id=instance.id,
            )

        if transition.to_step is None:
            self._finish(instance, InstanceState.APPROVED, now)
            logger.info(f"Instance {instance.id} approved after step {step.id}")
        else:
            next_step = self._require_step(definition, transition.to_step)
            self._enter_step(instance, definition, next_step, snapshot, now)
            logger.info(
                f"Instance {instance.id} advanced {step.id} -> {next_step.id} "
                f"(approvers={instance.resolved_approvers})"
            )

        mutation.events.append(
            self._event(
                instance,
                EventAction.ADVANCE,
                actor,
                now,
                None,
                step.id,
                approvers=list(instance.resolved_approvers),
                delegated_by=dict(instance.delegated_by),
            )
        )
        mutation.changes.append(self._change(instance, EventAction.ADVANCE, step.id, now))

    def _enter_step(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        step: Step,
        snapshot: dict,
        now: datetime,
    ) -> None:
        approvers, delegated_by = self._resolver.resolve_with_delegates(
            step,
            snapshot,
            requester=instance.requester,
            at=now,
            workflow_code=definition.code,
        )
        slots = len(approvers) - len(delegated_by)
        if slots < step.quorum:
            raise NoEligibleApprovers(
                f"Step {step.id!r} needs {step.quorum} approval(s) but only "
                f"{slots} approver(s) resolved",
                step_id=step.id,
                approvers=sorted(approvers),
            )
        instance.current_step_id = step.id
        instance.resolved_approvers = sorted(approvers)
        instance.delegated_by = dict(delegated_by)
        instance.step_approvals = []
        instance.step_rejections = []
        instance.step_entered_at = now
        instance.expires_at = self._deadline(step, now)

    def _deadline(self, step: Step, now: datetime) -> Optional[datetime]:
        hours = step.timeout_hours or self._config.default_timeout_hours
        return now + timedelta(hours=hours) if hours else None

    @staticmethod
    def _finish(instance: WorkflowInstance, state: InstanceState, now: datetime) -> None:
        instance.state = state
        instance.completed_at = now
        instance.current_step_id = None
        instance.resolved_approvers = []
        instance.delegated_by = {}

    @staticmethod
    def _rejection_terminates(instance: WorkflowInstance, step: Step) -> bool:
        if step.veto_policy == VetoPolicy.ANY_REJECTION_TERMINATES:
            return True
        eligible = len(instance.principals)
        rejections = len(instance.rejected_slots)
        still_possible = eligible - rejections
        return rejections > still_possible or still_possible < step.quorum

    @staticmethod
    def _check_approver(instance: WorkflowInstance, actor: str) -> None:
        if actor not in instance.resolved_approvers:
            raise NotAnApprover(
                f"{actor} is not an approver of step {instance.current_step_id}",
                actor=actor,
                step_id=instance.current_step_id,
            )
        if instance.has_acted(actor):
            slot = instance.principal_of(actor)
            who = actor if slot == actor else f"{actor} (standing in for {slot})"
            raise NotAnApprover(
                f"{who} already acted on step {instance.current_step_id}",
                actor=actor,
                step_id=instance.current_step_id,
            )

    @staticmethod
    def _require_step(definition: WorkflowDefinition, step_id: str) -> Step:
        step = definition.get_step(step_id)
        if step is None:
            raise NoMatchingTransition(
                f"Definition {definition.code!r} routes to unknown step {step_id!r}"
            )
        return step

    def _current_step(
        self, instance: WorkflowInstance, definition: WorkflowDefinition
    ) -> Step:
        return self._require_step(definition, instance.current_step_id)

    @staticmethod
    def _event(
        instance: WorkflowInstance,
        action: EventAction,
        actor: str,
        now: datetime,
        comment: Optional[str],
        step_id: Optional[str],
        approvers: Optional[List[str]] = None,
        delegated_by: Optional[Dict[str, str]] = None,
    ) -> Event:
        return Event(
            instance_id=instance.id,
            action=action,
            actor=actor,
            timestamp=now,
            comment=comment,
            step_id=step_id,
            resulting_state=instance.state,
            resulting_step=instance.current_step_id,
            approvers=approvers or [],
            delegated_by=delegated_by or {},
        )

    @staticmethod
    def _change(
        instance: WorkflowInstance,
        action: EventAction,
        old_step: Optional[str],
        now: datetime,
    ) -> StateChange:
        return StateChange(
            instance_id=instance.id,
            action=action,
            old_state=InstanceState.IN_PROGRESS,
            new_state=instance.state,
            old_step=old_step,
            new_step=instance.current_step_id,
            resolved_approvers=list(instance.resolved_approvers),
            entity_type=instance.entity_type,
            entity_id=instance.entity_id,
            occurred_at=now,
        )

    def _notify(self, change: StateChange) -> None:
        if self._notifications is not None:
            self._notifications.emit(change)
