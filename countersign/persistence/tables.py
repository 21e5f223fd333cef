"""SQLModel table definitions for SQL-backed persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Column, DateTime, Index, UniqueConstraint, text
from sqlmodel import Field, SQLModel


class DefinitionRow(SQLModel, table=True):
    """A stored workflow definition; steps and transitions live in ``body``."""

    __tablename__ = "workflow_definitions"
    __table_args__ = (UniqueConstraint("code", "version", name="uq_definition_code_version"),)

    id: str = Field(primary_key=True)
    code: str = Field(index=True)
    version: int = 1
    entity_type: str = Field(index=True)
    active: bool = True
    priority: int = 0
    body: dict = Field(sa_column=Column(JSON, nullable=False))


class InstanceRow(SQLModel, table=True):
    """One approval instance; ``version`` is the compare-and-swap column."""

    __tablename__ = "workflow_instances"
    __table_args__ = (
        Index(
            "ux_workflow_instances_in_flight",
            "entity_type",
            "entity_id",
            unique=True,
            sqlite_where=text("state = 'in_progress'"),
            postgresql_where=text("state = 'in_progress'"),
        ),
    )

    id: str = Field(primary_key=True)
    workflow_definition_id: str = Field(foreign_key="workflow_definitions.id")
    entity_type: str
    entity_id: str
    entity_snapshot: dict = Field(sa_column=Column(JSON, nullable=False))
    state: str = Field(default="in_progress", index=True)
    current_step_id: Optional[str] = None
    resolved_approvers: list = Field(sa_column=Column(JSON, nullable=False))
    delegated_by: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    step_approvals: list = Field(sa_column=Column(JSON, nullable=False))
    step_rejections: list = Field(sa_column=Column(JSON, nullable=False))
    requester: str
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    step_entered_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True))
    )
    completed_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True))
    )
    expires_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True), index=True)
    )
    version: int = 1


class EventRow(SQLModel, table=True):
    """Append-only history row."""

    __tablename__ = "workflow_events"
    __table_args__ = (UniqueConstraint("instance_id", "sequence", name="uq_event_sequence"),)

    id: str = Field(primary_key=True)
    instance_id: str = Field(foreign_key="workflow_instances.id", index=True)
    sequence: int
    action: str
    actor: str
    timestamp: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    comment: Optional[str] = None
    step_id: Optional[str] = None
    resulting_state: str
    resulting_step: Optional[str] = None
    approvers: list = Field(sa_column=Column(JSON, nullable=False))
    delegated_by: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    idempotency_key: str = Field(unique=True)
