"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional, Sequence, Tuple

from ..errors import DefinitionNotFound, DuplicateEvent, DuplicateInFlight, VersionConflict
from ..models import (
    Event,
    HistoryQuery,
    InstanceState,
    WorkflowDefinition,
    WorkflowInstance,
)
from .repository import WorkflowRepository


def _ts(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflow state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._lock, self._conn:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS workflow_definitions (
                    id TEXT PRIMARY KEY,
                    code TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    entity_type TEXT NOT NULL,
                    active INTEGER NOT NULL,
                    priority INTEGER NOT NULL,
                    body TEXT NOT NULL,
                    UNIQUE (code, version)
                );
                CREATE TABLE IF NOT EXISTS workflow_instances (
                    id TEXT PRIMARY KEY,
                    workflow_definition_id TEXT NOT NULL
                        REFERENCES workflow_definitions(id),
                    entity_type TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    entity_snapshot TEXT NOT NULL,
                    state TEXT NOT NULL,
                    current_step_id TEXT,
                    resolved_approvers TEXT NOT NULL,
                    delegated_by TEXT NOT NULL DEFAULT '{}',
                    step_approvals TEXT NOT NULL,
                    step_rejections TEXT NOT NULL,
                    requester TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    step_entered_at TEXT,
                    completed_at TEXT,
                    expires_at TEXT,
                    version INTEGER NOT NULL
                );
                CREATE UNIQUE INDEX IF NOT EXISTS ux_workflow_instances_in_flight
                    ON workflow_instances (entity_type, entity_id)
                    WHERE state = 'in_progress';
                CREATE INDEX IF NOT EXISTS ix_workflow_instances_state
                    ON workflow_instances (state, expires_at);
                CREATE TABLE IF NOT EXISTS workflow_events (
                    id TEXT PRIMARY KEY,
                    instance_id TEXT NOT NULL REFERENCES workflow_instances(id),
                    sequence INTEGER NOT NULL,
                    action TEXT NOT NULL,
                    actor TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    comment TEXT,
                    step_id TEXT,
                    resulting_state TEXT NOT NULL,
                    resulting_step TEXT,
                    approvers TEXT NOT NULL,
                    delegated_by TEXT NOT NULL DEFAULT '{}',
                    idempotency_key TEXT NOT NULL UNIQUE,
                    UNIQUE (instance_id, sequence)
                );
                """
            )

    # ------------------------------------------------------------------
    # Helper methods
    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    @staticmethod
    def _instance_params(instance: WorkflowInstance) -> dict:
        return {
            "id": instance.id,
            "workflow_definition_id": instance.workflow_definition_id,
            "entity_type": instance.entity_type,
            "entity_id": instance.entity_id,
            "entity_snapshot": json.dumps(instance.entity_snapshot, default=str),
            "state": instance.state.value,
            "current_step_id": instance.current_step_id,
            "resolved_approvers": json.dumps(instance.resolved_approvers),
            "delegated_by": json.dumps(instance.delegated_by),
            "step_approvals": json.dumps(instance.step_approvals),
            "step_rejections": json.dumps(instance.step_rejections),
            "requester": instance.requester,
            "started_at": _ts(instance.started_at),
            "step_entered_at": _ts(instance.step_entered_at),
            "completed_at": _ts(instance.completed_at),
            "expires_at": _ts(instance.expires_at),
            "version": instance.version,
        }

    @staticmethod
    def _row_to_instance(row: sqlite3.Row) -> WorkflowInstance:
        return WorkflowInstance(
            id=row["id"],
            workflow_definition_id=row["workflow_definition_id"],
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            entity_snapshot=json.loads(row["entity_snapshot"]),
            state=InstanceState(row["state"]),
            current_step_id=row["current_step_id"],
            resolved_approvers=json.loads(row["resolved_approvers"]),
            delegated_by=json.loads(row["delegated_by"]),
            step_approvals=json.loads(row["step_approvals"]),
            step_rejections=json.loads(row["step_rejections"]),
            requester=row["requester"],
            started_at=_dt(row["started_at"]),
            step_entered_at=_dt(row["step_entered_at"]),
            completed_at=_dt(row["completed_at"]),
            expires_at=_dt(row["expires_at"]),
            version=row["version"],
        )

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> Event:
        return Event(
            id=row["id"],
            instance_id=row["instance_id"],
            sequence=row["sequence"],
            action=row["action"],
            actor=row["actor"],
            timestamp=_dt(row["timestamp"]),
            comment=row["comment"],
            step_id=row["step_id"],
            resulting_state=row["resulting_state"],
            resulting_step=row["resulting_step"],
            approvers=json.loads(row["approvers"]),
            delegated_by=json.loads(row["delegated_by"]),
        )

    def _insert_events(self, cur: sqlite3.Cursor, events: Sequence[Event]) -> None:
        for event in events:
            cur.execute(
                "SELECT COALESCE(MAX(sequence), 0) FROM workflow_events WHERE instance_id = ?",
                (event.instance_id,),
            )
            sequence = cur.fetchone()[0] + 1
            try:
                cur.execute(
                    """
                    INSERT INTO workflow_events (
                        id, instance_id, sequence, action, actor, timestamp, comment,
                        step_id, resulting_state, resulting_step, approvers, delegated_by,
                        idempotency_key
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        event.id,
                        event.instance_id,
                        sequence,
                        event.action.value,
                        event.actor,
                        _ts(event.timestamp),
                        event.comment,
                        event.step_id,
                        event.resulting_state.value,
                        event.resulting_step,
                        json.dumps(event.approvers),
                        json.dumps(event.delegated_by),
                        event.idempotency_key,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicateEvent(f"Event {event.idempotency_key} already recorded") from exc

    # ------------------------------------------------------------------
    # Repository API: definitions
    def save_definition(self, definition: WorkflowDefinition) -> None:
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    """
                    INSERT INTO workflow_definitions
                        (id, code, version, entity_type, active, priority, body)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        definition.id,
                        definition.code,
                        definition.version,
                        definition.entity_type,
                        int(definition.active),
                        definition.priority,
                        definition.model_dump_json(),
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise ValueError(
                f"Definition {definition.code} v{definition.version} already stored"
            ) from exc

    def set_definition_active(self, definition_id: str, active: bool) -> None:
        current = self.get_definition(definition_id)
        if current is None:
            raise DefinitionNotFound(f"Definition {definition_id} not found")
        updated = current.model_copy(update={"active": active})
        with self._lock, self._conn:
            self._conn.execute(
                "UPDATE workflow_definitions SET active = ?, body = ? WHERE id = ?",
                (int(active), updated.model_dump_json(), definition_id),
            )

    def get_definition(self, definition_id: str) -> WorkflowDefinition | None:
        row = self._fetchone("SELECT body FROM workflow_definitions WHERE id = ?", definition_id)
        return WorkflowDefinition.model_validate_json(row["body"]) if row else None

    def list_definitions(self, entity_type: Optional[str] = None) -> list[WorkflowDefinition]:
        if entity_type is None:
            rows = self._fetchall("SELECT body FROM workflow_definitions ORDER BY code, version")
        else:
            rows = self._fetchall(
                "SELECT body FROM workflow_definitions WHERE entity_type = ? ORDER BY code, version",
                entity_type,
            )
        return [WorkflowDefinition.model_validate_json(r["body"]) for r in rows]

    # ------------------------------------------------------------------
    # Repository API: instances
    def create_instance(
        self, instance: WorkflowInstance, events: Sequence[Event]
    ) -> WorkflowInstance:
        stored = instance.model_copy(deep=True, update={"version": 1})
        params = self._instance_params(stored)
        with self._lock, self._conn:
            cur = self._conn.cursor()
            try:
                cur.execute(
                    f"INSERT INTO workflow_instances ({', '.join(params)}) "
                    f"VALUES ({', '.join(':' + k for k in params)})",
                    params,
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicateInFlight(
                    f"{instance.entity_type}:{instance.entity_id} already has an approval in progress"
                ) from exc
            self._insert_events(cur, events)
        return stored

    def commit(
        self, instance: WorkflowInstance, expected_version: int, events: Sequence[Event]
    ) -> WorkflowInstance:
        stored = instance.model_copy(deep=True, update={"version": expected_version + 1})
        params = self._instance_params(stored)
        params["expected_version"] = expected_version
        assignments = ", ".join(f"{k} = :{k}" for k in params if k not in ("id", "expected_version"))
        with self._lock, self._conn:
            cur = self._conn.cursor()
            cur.execute(
                f"UPDATE workflow_instances SET {assignments} "
                "WHERE id = :id AND version = :expected_version",
                params,
            )
            if cur.rowcount != 1:
                raise VersionConflict(
                    f"Instance {instance.id} changed since version {expected_version}"
                )
            self._insert_events(cur, events)
        return stored

    def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        row = self._fetchone("SELECT * FROM workflow_instances WHERE id = ?", instance_id)
        return self._row_to_instance(row) if row else None

    def find_in_progress(self, entity_type: str, entity_id: str) -> WorkflowInstance | None:
        row = self._fetchone(
            "SELECT * FROM workflow_instances WHERE entity_type = ? AND entity_id = ? AND state = ?",
            entity_type,
            entity_id,
            InstanceState.IN_PROGRESS.value,
        )
        return self._row_to_instance(row) if row else None

    def list_instances(self, state: Optional[InstanceState] = None) -> list[WorkflowInstance]:
        if state is None:
            rows = self._fetchall("SELECT * FROM workflow_instances ORDER BY started_at")
        else:
            rows = self._fetchall(
                "SELECT * FROM workflow_instances WHERE state = ? ORDER BY started_at",
                InstanceState(state).value,
            )
        return [self._row_to_instance(r) for r in rows]

    def pending_for(self, identity: str) -> list[WorkflowInstance]:
        rows = self._fetchall(
            """
            SELECT wi.* FROM workflow_instances wi, json_each(wi.resolved_approvers) approver
            WHERE wi.state = ? AND approver.value = ?
            ORDER BY wi.started_at
            """,
            InstanceState.IN_PROGRESS.value,
            identity,
        )
        return [self._row_to_instance(r) for r in rows]

    def due_for_expiry(self, now: datetime) -> list[WorkflowInstance]:
        rows = self._fetchall(
            """
            SELECT * FROM workflow_instances
            WHERE state = ? AND expires_at IS NOT NULL AND expires_at <= ?
            ORDER BY expires_at
            """,
            InstanceState.IN_PROGRESS.value,
            _ts(now),
        )
        return [self._row_to_instance(r) for r in rows]

    def query_instances(self, query: HistoryQuery) -> Tuple[List[WorkflowInstance], int]:
        clauses: List[str] = []
        params: List[Any] = []
        if query.entity_type:
            clauses.append("entity_type = ?")
            params.append(query.entity_type)
        if query.state:
            clauses.append("state = ?")
            params.append(InstanceState(query.state).value)
        if query.started_from:
            clauses.append("started_at >= ?")
            params.append(_ts(query.started_from))
        if query.started_to:
            clauses.append("started_at <= ?")
            params.append(_ts(query.started_to))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        total = self._fetchone(f"SELECT COUNT(*) AS n FROM workflow_instances {where}", *params)["n"]
        rows = self._fetchall(
            f"""
            SELECT * FROM workflow_instances {where}
            ORDER BY COALESCE(completed_at, started_at) DESC, id
            LIMIT ? OFFSET ?
            """,
            *params,
            query.page_size,
            query.offset,
        )
        return [self._row_to_instance(r) for r in rows], total

    # ------------------------------------------------------------------
    # Repository API: events
    def append_event(self, event: Event) -> Event:
        with self._lock, self._conn:
            cur = self._conn.cursor()
            self._insert_events(cur, [event])
            cur.execute(
                "SELECT * FROM workflow_events WHERE idempotency_key = ?",
                (event.idempotency_key,),
            )
            return self._row_to_event(cur.fetchone())

    def list_events(self, instance_id: str) -> list[Event]:
        rows = self._fetchall(
            "SELECT * FROM workflow_events WHERE instance_id = ? ORDER BY sequence",
            instance_id,
        )
        return [self._row_to_event(r) for r in rows]

    def has_event(self, idempotency_key: str) -> bool:
        row = self._fetchone(
            "SELECT 1 FROM workflow_events WHERE idempotency_key = ?", idempotency_key
        )
        return row is not None

    def close(self) -> None:
        with self._lock:
            self._conn.close()
