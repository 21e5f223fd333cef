"""Repository abstraction for approval workflow persistence."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol, Sequence, Tuple

from ..models import Event, HistoryQuery, InstanceState, WorkflowDefinition, WorkflowInstance


class WorkflowRepository(Protocol):
    """Protocol for persistence backends.

    Three logical tables: definitions, instances and events. Instance writes
    are compare-and-swap on ``version``; events are insert-only and unique on
    their idempotency key; at most one ``in_progress`` instance may exist per
    ``(entity_type, entity_id)``.
    """

    # Definitions ---------------------------------------------------------
    def save_definition(self, definition: WorkflowDefinition) -> None:
        """Insert a definition. Existing ids are never overwritten."""

    def set_definition_active(self, definition_id: str, active: bool) -> None:
        """Flip the only mutable definition attribute."""

    def get_definition(self, definition_id: str) -> WorkflowDefinition | None:
        """Retrieve a definition by id, active or not."""

    def list_definitions(self, entity_type: Optional[str] = None) -> list[WorkflowDefinition]:
        """Return stored definitions, optionally for one entity type."""

    # Instances -----------------------------------------------------------
    def create_instance(
        self, instance: WorkflowInstance, events: Sequence[Event]
    ) -> WorkflowInstance:
        """Insert a new instance with its first events atomically.

        Raises ``DuplicateInFlight`` when the entity already has an
        in-progress instance.
        """

    def commit(
        self, instance: WorkflowInstance, expected_version: int, events: Sequence[Event]
    ) -> WorkflowInstance:
        """Write ``instance`` if the stored version still equals ``expected_version``.

        Events are appended in the same transaction. Returns the stored
        instance carrying its new version; raises ``VersionConflict`` when
        another writer got there first.
        """

    def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        """Retrieve an instance by id."""

    def find_in_progress(self, entity_type: str, entity_id: str) -> WorkflowInstance | None:
        """The in-progress instance for an entity, if any."""

    def list_instances(self, state: Optional[InstanceState] = None) -> list[WorkflowInstance]:
        """All instances, optionally in one state."""

    def pending_for(self, identity: str) -> list[WorkflowInstance]:
        """In-progress instances whose current approvers include ``identity``."""

    def due_for_expiry(self, now: datetime) -> list[WorkflowInstance]:
        """In-progress instances whose deadline is at or before ``now``."""

    def query_instances(self, query: HistoryQuery) -> Tuple[List[WorkflowInstance], int]:
        """One page of instances matching ``query`` and the total match count."""

    # Events --------------------------------------------------------------
    def append_event(self, event: Event) -> Event:
        """Append one event, raising ``DuplicateEvent`` on a repeated key."""

    def list_events(self, instance_id: str) -> list[Event]:
        """Events of an instance in sequence order."""

    def has_event(self, idempotency_key: str) -> bool:
        """Whether an event with this idempotency key was recorded."""
