"""Data models for approval workflow definitions, instances and history."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, Generic, List, Literal, Optional, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

SYSTEM_ACTOR = "system"

T = TypeVar("T")


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class InstanceState(str, Enum):
    IN_PROGRESS = "in_progress"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not InstanceState.IN_PROGRESS


TERMINAL_STATES = frozenset(s for s in InstanceState if s.is_terminal)


class EventAction(str, Enum):
    START = "start"
    APPROVE = "approve"
    REJECT = "reject"
    CANCEL = "cancel"
    EXPIRE = "expire"
    ADVANCE = "advance"


class VetoPolicy(str, Enum):
    ANY_REJECTION_TERMINATES = "any_rejection_terminates"
    MAJORITY_REQUIRED = "majority_required"


Operator = Literal["=", "!=", ">", ">=", "<", "<=", "contains", "starts_with", "ends_with", "in"]


# ---------------------------------------------------------------------------
# Definition language


class Predicate(BaseModel):
    """Single ``field operator value`` comparison over an entity snapshot.

    ``value_ref`` compares against another snapshot field instead of a
    literal, e.g. ``total > approval_limit``.
    """

    model_config = ConfigDict(frozen=True)

    field: str
    operator: Operator = "="
    value: Any = None
    value_ref: Optional[str] = None


class UserRule(BaseModel):
    """Fixed list of identities."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["user"] = "user"
    users: List[str] = Field(min_length=1)

    @model_validator(mode="before")
    @classmethod
    def _accept_single_user(cls, data: Any) -> Any:
        if isinstance(data, dict) and "user" in data and "users" not in data:
            data = dict(data)
            data["users"] = [data.pop("user")]
        return data


class RoleRule(BaseModel):
    """Every member of a directory role."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["role"] = "role"
    role: str


class PermissionRule(BaseModel):
    """Every identity holding a permission code."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["permission"] = "permission"
    permission: str


class ManagerRule(BaseModel):
    """The requester's manager, or ``fallback_role`` when there is none."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["manager"] = "manager"
    fallback_role: Optional[str] = None


class Bracket(BaseModel):
    """Approver group selected when a numeric field reaches ``minimum``."""

    model_config = ConfigDict(frozen=True)

    minimum: Optional[float] = None
    users: List[str] = Field(default_factory=list)
    role: Optional[str] = None

    @model_validator(mode="after")
    def _needs_approvers(self) -> "Bracket":
        if not self.users and not self.role:
            raise ValueError("bracket needs users or a role")
        return self


class FieldBracketRule(BaseModel):
    """Pick an approver group from the bracket a snapshot field falls in."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["field_bracket"] = "field_bracket"
    field: str
    brackets: List[Bracket] = Field(min_length=1)
    default: Optional[Bracket] = None


ApproverRule = Annotated[
    Union[UserRule, RoleRule, PermissionRule, ManagerRule, FieldBracketRule],
    Field(discriminator="kind"),
]


class Step(BaseModel):
    """One approval stage in a workflow definition."""

    model_config = ConfigDict(frozen=True)

    id: str
    sequence: int = 0
    name: str = ""
    approver_rule: ApproverRule
    quorum: int = Field(default=1, ge=1)
    veto_policy: VetoPolicy = VetoPolicy.ANY_REJECTION_TERMINATES
    timeout_hours: Optional[float] = Field(default=None, gt=0)


class Transition(BaseModel):
    """Directed edge between steps. ``None`` endpoints are the virtual start/terminal nodes."""

    model_config = ConfigDict(frozen=True)

    from_step: Optional[str] = None
    to_step: Optional[str] = None
    condition: List[Predicate] = Field(default_factory=list)
    order: int = 0
    label: Optional[str] = None

    @property
    def is_fallback(self) -> bool:
        return not self.condition


class WorkflowDefinition(BaseModel):
    """Immutable, versioned workflow definition."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    code: str
    name: str = ""
    description: Optional[str] = None
    entity_type: str
    active: bool = True
    priority: int = 0
    version: int = Field(default=1, ge=1)
    activation_condition: List[Predicate] = Field(default_factory=list)
    steps: List[Step] = Field(default_factory=list)
    transitions: List[Transition] = Field(default_factory=list)

    def get_step(self, step_id: str) -> Optional[Step]:
        return next((s for s in self.steps if s.id == step_id), None)

    def transitions_from(self, step_id: Optional[str]) -> List[Transition]:
        """Outgoing transitions of ``step_id`` in evaluation order."""
        return sorted(
            (t for t in self.transitions if t.from_step == step_id),
            key=lambda t: t.order,
        )


# ---------------------------------------------------------------------------
# Runtime records


class WorkflowInstance(BaseModel):
    """An approval in flight (or finished) for one business record."""

    id: str = Field(default_factory=new_id)
    workflow_definition_id: str
    entity_type: str
    entity_id: str
    entity_snapshot: Dict[str, Any] = Field(default_factory=dict)
    state: InstanceState = InstanceState.IN_PROGRESS
    current_step_id: Optional[str] = None
    resolved_approvers: List[str] = Field(default_factory=list)
    # delegate -> delegator; a delegate fills the delegator's slot
    delegated_by: Dict[str, str] = Field(default_factory=dict)
    step_approvals: List[str] = Field(default_factory=list)
    step_rejections: List[str] = Field(default_factory=list)
    requester: str
    started_at: datetime = Field(default_factory=utcnow)
    step_entered_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    version: int = 0

    @field_validator("entity_id", mode="before")
    @classmethod
    def _stringify_entity_id(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int) else value

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def principal_of(self, actor: str) -> str:
        """Identity whose approver slot ``actor`` fills."""
        return self.delegated_by.get(actor, actor)

    @property
    def principals(self) -> List[str]:
        """Approver slots of the current step, delegates folded into their delegators."""
        return sorted({self.principal_of(a) for a in self.resolved_approvers})

    @property
    def approved_slots(self) -> List[str]:
        return sorted({self.principal_of(a) for a in self.step_approvals})

    @property
    def rejected_slots(self) -> List[str]:
        return sorted({self.principal_of(a) for a in self.step_rejections})

    def has_acted(self, actor: str) -> bool:
        """Whether ``actor``'s slot was already used on this step, by them or their stand-in."""
        slot = self.principal_of(actor)
        return slot in self.approved_slots or slot in self.rejected_slots


class Event(BaseModel):
    """Append-only history entry."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    instance_id: str
    sequence: int = 0
    action: EventAction
    actor: str
    timestamp: datetime = Field(default_factory=utcnow)
    comment: Optional[str] = None
    step_id: Optional[str] = None
    resulting_state: InstanceState
    resulting_step: Optional[str] = None
    approvers: List[str] = Field(default_factory=list)
    delegated_by: Dict[str, str] = Field(default_factory=dict)

    @property
    def idempotency_key(self) -> str:
        return idempotency_key(self.instance_id, self.action, self.actor, self.timestamp)


def idempotency_key(
    instance_id: str, action: EventAction, actor: str, timestamp: datetime
) -> str:
    """Key deduplicating replayed actions: ``(instance, action, actor, timestamp)``."""
    action_value = action.value if isinstance(action, EventAction) else str(action)
    return f"{instance_id}:{action_value}:{actor}:{timestamp.isoformat()}"


class StateChange(BaseModel):
    """Domain event emitted to notifiers on every state transition."""

    instance_id: str
    action: EventAction
    old_state: Optional[InstanceState] = None
    new_state: InstanceState
    old_step: Optional[str] = None
    new_step: Optional[str] = None
    resolved_approvers: List[str] = Field(default_factory=list)
    entity_type: str
    entity_id: str
    occurred_at: datetime = Field(default_factory=utcnow)


class Delegation(BaseModel):
    """Temporary hand-over of a delegator's approver slot to a delegate."""

    id: str = Field(default_factory=new_id)
    delegator: str
    delegate: str
    starts_at: datetime
    ends_at: datetime
    workflow_code: Optional[str] = None
    reason: Optional[str] = None
    active: bool = True

    @model_validator(mode="after")
    def _check_window(self) -> "Delegation":
        if self.delegator == self.delegate:
            raise ValueError("cannot delegate to oneself")
        if self.ends_at < self.starts_at:
            raise ValueError("delegation ends before it starts")
        return self

    def covers(self, at: datetime, workflow_code: Optional[str] = None) -> bool:
        if not self.active or not (self.starts_at <= at <= self.ends_at):
            return False
        return self.workflow_code is None or self.workflow_code == workflow_code


class ValidationResult(BaseModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    stats: Dict[str, int] = Field(default_factory=dict)


class HistoryQuery(BaseModel):
    """Filters for browsing instances."""

    entity_type: Optional[str] = None
    state: Optional[InstanceState] = None
    started_from: Optional[datetime] = None
    started_to: Optional[datetime] = None
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=500)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size


class Page(BaseModel, Generic[T]):
    items: List[T] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 20

    @property
    def pages(self) -> int:
        return (self.total + self.page_size - 1) // self.page_size if self.total else 0


__all__ = [
    "SYSTEM_ACTOR",
    "utcnow",
    "new_id",
    "InstanceState",
    "TERMINAL_STATES",
    "EventAction",
    "VetoPolicy",
    "Operator",
    "Predicate",
    "UserRule",
    "RoleRule",
    "PermissionRule",
    "ManagerRule",
    "Bracket",
    "FieldBracketRule",
    "ApproverRule",
    "Step",
    "Transition",
    "WorkflowDefinition",
    "WorkflowInstance",
    "Event",
    "idempotency_key",
    "StateChange",
    "Delegation",
    "ValidationResult",
    "HistoryQuery",
    "Page",
]
