"""SQLModel implementation of the workflow repository (PostgreSQL and friends)."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List, Optional, Sequence, Tuple

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, SQLModel, create_engine, select

from ..errors import DefinitionNotFound, DuplicateEvent, DuplicateInFlight, VersionConflict
from ..models import (
    Event,
    HistoryQuery,
    InstanceState,
    WorkflowDefinition,
    WorkflowInstance,
)
from .repository import WorkflowRepository
from .tables import DefinitionRow, EventRow, InstanceRow

logger = logging.getLogger(__name__)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _instance_values(instance: WorkflowInstance) -> dict:
    return {
        "workflow_definition_id": instance.workflow_definition_id,
        "entity_type": instance.entity_type,
        "entity_id": instance.entity_id,
        "entity_snapshot": instance.model_dump(mode="json")["entity_snapshot"],
        "state": instance.state.value,
        "current_step_id": instance.current_step_id,
        "resolved_approvers": list(instance.resolved_approvers),
        "delegated_by": dict(instance.delegated_by),
        "step_approvals": list(instance.step_approvals),
        "step_rejections": list(instance.step_rejections),
        "requester": instance.requester,
        "started_at": instance.started_at,
        "step_entered_at": instance.step_entered_at,
        "completed_at": instance.completed_at,
        "expires_at": instance.expires_at,
        "version": instance.version,
    }


def _to_instance(row: InstanceRow) -> WorkflowInstance:
    return WorkflowInstance(
        id=row.id,
        workflow_definition_id=row.workflow_definition_id,
        entity_type=row.entity_type,
        entity_id=row.entity_id,
        entity_snapshot=dict(row.entity_snapshot or {}),
        state=InstanceState(row.state),
        current_step_id=row.current_step_id,
        resolved_approvers=list(row.resolved_approvers or []),
        delegated_by=dict(row.delegated_by or {}),
        step_approvals=list(row.step_approvals or []),
        step_rejections=list(row.step_rejections or []),
        requester=row.requester,
        started_at=_aware(row.started_at),
        step_entered_at=_aware(row.step_entered_at),
        completed_at=_aware(row.completed_at),
        expires_at=_aware(row.expires_at),
        version=row.version,
    )


def _to_event(row: EventRow) -> Event:
    return Event(
        id=row.id,
        instance_id=row.instance_id,
        sequence=row.sequence,
        action=row.action,
        actor=row.actor,
        timestamp=_aware(row.timestamp),
        comment=row.comment,
        step_id=row.step_id,
        resulting_state=row.resulting_state,
        resulting_step=row.resulting_step,
        approvers=list(row.approvers or []),
        delegated_by=dict(row.delegated_by or {}),
    )


class SQLWorkflowRepository(WorkflowRepository):
    """Persist workflow state through SQLModel on any SQLAlchemy URL.

    Used for PostgreSQL deployments (``postgresql+psycopg://...``); it also
    runs against ``sqlite+pysqlite:///`` URLs, which the tests rely on.
    """

    def __init__(self, database_url: str, echo: bool = False) -> None:
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        self.engine = create_engine(database_url, echo=echo, connect_args=connect_args)
        SQLModel.metadata.create_all(
            self.engine,
            tables=[DefinitionRow.__table__, InstanceRow.__table__, EventRow.__table__],
        )

    @contextmanager
    def session(self) -> Iterator[Session]:
        with Session(self.engine) as session:
            yield session

    # ------------------------------------------------------------------
    @staticmethod
    def _add_events(session: Session, events: Sequence[Event]) -> None:
        for event in events:
            current = session.exec(
                select(func.coalesce(func.max(EventRow.sequence), 0)).where(
                    EventRow.instance_id == event.instance_id
                )
            ).one()
            session.add(
                EventRow(
                    id=event.id,
                    instance_id=event.instance_id,
                    sequence=current + 1,
                    action=event.action.value,
                    actor=event.actor,
                    timestamp=event.timestamp,
                    comment=event.comment,
                    step_id=event.step_id,
                    resulting_state=event.resulting_state.value,
                    resulting_step=event.resulting_step,
                    approvers=list(event.approvers),
                    delegated_by=dict(event.delegated_by),
                    idempotency_key=event.idempotency_key,
                )
            )
            try:
                session.flush()
            except IntegrityError as exc:
                raise DuplicateEvent(f"Event {event.idempotency_key} already recorded") from exc

    # ------------------------------------------------------------------
    def save_definition(self, definition: WorkflowDefinition) -> None:
        row = DefinitionRow(
            id=definition.id,
            code=definition.code,
            version=definition.version,
            entity_type=definition.entity_type,
            active=definition.active,
            priority=definition.priority,
            body=definition.model_dump(mode="json"),
        )
        with self.session() as session:
            session.add(row)
            try:
                session.commit()
            except IntegrityError as exc:
                raise ValueError(
                    f"Definition {definition.code} v{definition.version} already stored"
                ) from exc

    def set_definition_active(self, definition_id: str, active: bool) -> None:
        with self.session() as session:
            row = session.get(DefinitionRow, definition_id)
            if row is None:
                raise DefinitionNotFound(f"Definition {definition_id} not found")
            body = dict(row.body)
            body["active"] = active
            row.active = active
            row.body = body
            session.add(row)
            session.commit()

    def get_definition(self, definition_id: str) -> WorkflowDefinition | None:
        with self.session() as session:
            row = session.get(DefinitionRow, definition_id)
            return WorkflowDefinition.model_validate(row.body) if row else None

    def list_definitions(self, entity_type: Optional[str] = None) -> list[WorkflowDefinition]:
        statement = select(DefinitionRow).order_by(DefinitionRow.code, DefinitionRow.version)
        if entity_type is not None:
            statement = statement.where(DefinitionRow.entity_type == entity_type)
        with self.session() as session:
            return [WorkflowDefinition.model_validate(r.body) for r in session.exec(statement)]

    # ------------------------------------------------------------------
    def create_instance(
        self, instance: WorkflowInstance, events: Sequence[Event]
    ) -> WorkflowInstance:
        stored = instance.model_copy(deep=True, update={"version": 1})
        with self.session() as session:
            session.add(InstanceRow(id=stored.id, **_instance_values(stored)))
            try:
                session.flush()
            except IntegrityError as exc:
                session.rollback()
                raise DuplicateInFlight(
                    f"{instance.entity_type}:{instance.entity_id} already has an approval in progress"
                ) from exc
            self._add_events(session, events)
            session.commit()
        return stored

    def commit(
        self, instance: WorkflowInstance, expected_version: int, events: Sequence[Event]
    ) -> WorkflowInstance:
        stored = instance.model_copy(deep=True, update={"version": expected_version + 1})
        with self.session() as session:
            result = session.execute(
                update(InstanceRow)
                .where(InstanceRow.id == instance.id, InstanceRow.version == expected_version)
                .values(**_instance_values(stored))
            )
            if result.rowcount != 1:
                session.rollback()
                raise VersionConflict(
                    f"Instance {instance.id} changed since version {expected_version}"
                )
            self._add_events(session, events)
            session.commit()
        return stored

    def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        with self.session() as session:
            row = session.get(InstanceRow, instance_id)
            return _to_instance(row) if row else None

    def find_in_progress(self, entity_type: str, entity_id: str) -> WorkflowInstance | None:
        statement = select(InstanceRow).where(
            InstanceRow.entity_type == entity_type,
            InstanceRow.entity_id == entity_id,
            InstanceRow.state == InstanceState.IN_PROGRESS.value,
        )
        with self.session() as session:
            row = session.exec(statement).first()
            return _to_instance(row) if row else None

    def list_instances(self, state: Optional[InstanceState] = None) -> list[WorkflowInstance]:
        statement = select(InstanceRow).order_by(InstanceRow.started_at)
        if state is not None:
            statement = statement.where(InstanceRow.state == InstanceState(state).value)
        with self.session() as session:
            return [_to_instance(r) for r in session.exec(statement)]

    def pending_for(self, identity: str) -> list[WorkflowInstance]:
        # JSON containment differs per dialect; filter the in-progress set here.
        return [
            i
            for i in self.list_instances(InstanceState.IN_PROGRESS)
            if identity in i.resolved_approvers
        ]

    def due_for_expiry(self, now: datetime) -> list[WorkflowInstance]:
        statement = (
            select(InstanceRow)
            .where(
                InstanceRow.state == InstanceState.IN_PROGRESS.value,
                InstanceRow.expires_at.is_not(None),
                InstanceRow.expires_at <= now,
            )
            .order_by(InstanceRow.expires_at)
        )
        with self.session() as session:
            return [_to_instance(r) for r in session.exec(statement)]

    def query_instances(self, query: HistoryQuery) -> Tuple[List[WorkflowInstance], int]:
        conditions = []
        if query.entity_type:
            conditions.append(InstanceRow.entity_type == query.entity_type)
        if query.state:
            conditions.append(InstanceRow.state == InstanceState(query.state).value)
        if query.started_from:
            conditions.append(InstanceRow.started_at >= query.started_from)
        if query.started_to:
            conditions.append(InstanceRow.started_at <= query.started_to)
        recency = func.coalesce(InstanceRow.completed_at, InstanceRow.started_at)
        with self.session() as session:
            total = session.exec(
                select(func.count()).select_from(InstanceRow).where(*conditions)
            ).one()
            rows = session.exec(
                select(InstanceRow)
                .where(*conditions)
                .order_by(recency.desc(), InstanceRow.id)
                .offset(query.offset)
                .limit(query.page_size)
            ).all()
            return [_to_instance(r) for r in rows], total

    # ------------------------------------------------------------------
    def append_event(self, event: Event) -> Event:
        with self.session() as session:
            self._add_events(session, [event])
            session.commit()
            row = session.exec(
                select(EventRow).where(EventRow.idempotency_key == event.idempotency_key)
            ).one()
            return _to_event(row)

    def list_events(self, instance_id: str) -> list[Event]:
        statement = (
            select(EventRow)
            .where(EventRow.instance_id == instance_id)
            .order_by(EventRow.sequence)
        )
        with self.session() as session:
            return [_to_event(r) for r in session.exec(statement)]

    def has_event(self, idempotency_key: str) -> bool:
        statement = select(EventRow.id).where(EventRow.idempotency_key == idempotency_key)
        with self.session() as session:
            return session.exec(statement).first() is not None
