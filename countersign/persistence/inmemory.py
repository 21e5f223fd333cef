"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from ..errors import DefinitionNotFound, DuplicateEvent, DuplicateInFlight, VersionConflict
from ..models import (
    Event,
    HistoryQuery,
    InstanceState,
    WorkflowDefinition,
    WorkflowInstance,
)
from .repository import WorkflowRepository


def recency_key(instance: WorkflowInstance) -> datetime:
    """Sort key for history listings: completion time, else start time."""
    return instance.completed_at or instance.started_at


def matches_query(instance: WorkflowInstance, query: HistoryQuery) -> bool:
    if query.entity_type and instance.entity_type != query.entity_type:
        return False
    if query.state and instance.state != query.state:
        return False
    if query.started_from and instance.started_at < query.started_from:
        return False
    if query.started_to and instance.started_at > query.started_to:
        return False
    return True


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. A single lock makes every method
    atomic, which is what gives ``commit`` its compare-and-swap semantics.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._definitions: Dict[str, WorkflowDefinition] = {}
        self._instances: Dict[str, WorkflowInstance] = {}
        self._events: Dict[str, List[Event]] = {}
        self._event_keys: set[str] = set()

    # ------------------------------------------------------------------
    def save_definition(self, definition: WorkflowDefinition) -> None:
        with self._lock:
            if definition.id in self._definitions:
                raise ValueError(f"Definition {definition.id} already stored")
            for existing in self._definitions.values():
                if (existing.code, existing.version) == (definition.code, definition.version):
                    raise ValueError(
                        f"Definition {definition.code} v{definition.version} already stored"
                    )
            self._definitions[definition.id] = definition

    def set_definition_active(self, definition_id: str, active: bool) -> None:
        with self._lock:
            current = self._definitions.get(definition_id)
            if current is None:
                raise DefinitionNotFound(f"Definition {definition_id} not found")
            self._definitions[definition_id] = current.model_copy(update={"active": active})

    def get_definition(self, definition_id: str) -> WorkflowDefinition | None:
        with self._lock:
            return self._definitions.get(definition_id)

    def list_definitions(self, entity_type: Optional[str] = None) -> list[WorkflowDefinition]:
        with self._lock:
            return [
                d
                for d in self._definitions.values()
                if entity_type is None or d.entity_type == entity_type
            ]

    # ------------------------------------------------------------------
    def _append_locked(self, event: Event) -> Event:
        if event.idempotency_key in self._event_keys:
            raise DuplicateEvent(f"Event {event.idempotency_key} already recorded")
        history = self._events.setdefault(event.instance_id, [])
        stored = event.model_copy(update={"sequence": len(history) + 1})
        history.append(stored)
        self._event_keys.add(stored.idempotency_key)
        return stored

    def create_instance(
        self, instance: WorkflowInstance, events: Sequence[Event]
    ) -> WorkflowInstance:
        with self._lock:
            for existing in self._instances.values():
                if (
                    existing.state == InstanceState.IN_PROGRESS
                    and existing.entity_type == instance.entity_type
                    and existing.entity_id == instance.entity_id
                ):
                    raise DuplicateInFlight(
                        f"{instance.entity_type}:{instance.entity_id} already has an approval in progress",
                        instance_id=existing.id,
                    )
            stored = instance.model_copy(deep=True, update={"version": 1})
            self._instances[stored.id] = stored
            for event in events:
                self._append_locked(event)
            return stored.model_copy(deep=True)

    def commit(
        self, instance: WorkflowInstance, expected_version: int, events: Sequence[Event]
    ) -> WorkflowInstance:
        with self._lock:
            current = self._instances.get(instance.id)
            if current is None or current.version != expected_version:
                raise VersionConflict(
                    f"Instance {instance.id} changed since version {expected_version}"
                )
            keys = [e.idempotency_key for e in events]
            if any(k in self._event_keys for k in keys) or len(set(keys)) != len(keys):
                raise DuplicateEvent(f"Instance {instance.id} already has one of these events")
            stored = instance.model_copy(deep=True, update={"version": expected_version + 1})
            self._instances[stored.id] = stored
            for event in events:
                self._append_locked(event)
            return stored.model_copy(deep=True)

    def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        with self._lock:
            found = self._instances.get(instance_id)
            return found.model_copy(deep=True) if found else None

    def find_in_progress(self, entity_type: str, entity_id: str) -> WorkflowInstance | None:
        with self._lock:
            for instance in self._instances.values():
                if (
                    instance.state == InstanceState.IN_PROGRESS
                    and instance.entity_type == entity_type
                    and instance.entity_id == entity_id
                ):
                    return instance.model_copy(deep=True)
            return None

    def list_instances(self, state: Optional[InstanceState] = None) -> list[WorkflowInstance]:
        with self._lock:
            return [
                i.model_copy(deep=True)
                for i in self._instances.values()
                if state is None or i.state == state
            ]

    def pending_for(self, identity: str) -> list[WorkflowInstance]:
        with self._lock:
            pending = [
                i.model_copy(deep=True)
                for i in self._instances.values()
                if i.state == InstanceState.IN_PROGRESS and identity in i.resolved_approvers
            ]
        return sorted(pending, key=lambda i: i.started_at)

    def due_for_expiry(self, now: datetime) -> list[WorkflowInstance]:
        with self._lock:
            return [
                i.model_copy(deep=True)
                for i in self._instances.values()
                if i.state == InstanceState.IN_PROGRESS
                and i.expires_at is not None
                and i.expires_at <= now
            ]

    def query_instances(self, query: HistoryQuery) -> Tuple[List[WorkflowInstance], int]:
        with self._lock:
            matched = [i for i in self._instances.values() if matches_query(i, query)]
        matched.sort(key=recency_key, reverse=True)
        page = matched[query.offset : query.offset + query.page_size]
        return [i.model_copy(deep=True) for i in page], len(matched)

    # ------------------------------------------------------------------
    def append_event(self, event: Event) -> Event:
        with self._lock:
            return self._append_locked(event)

    def list_events(self, instance_id: str) -> list[Event]:
        with self._lock:
            return list(self._events.get(instance_id, []))

    def has_event(self, idempotency_key: str) -> bool:
        with self._lock:
            return idempotency_key in self._event_keys
