"""Shared fixtures for countersign tests."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest

import countersign.persistence as persistence
from countersign.adapters import AdapterRegistry, StaticEntityAdapter
from countersign.approvers import ApproverResolver, DelegationBook, InMemoryDirectory
from countersign.config import RuntimeConfig
from countersign.definitions import DefinitionStore
from countersign.history import HistoryLog
from countersign.inbox import Inbox
from countersign.models import (
    Predicate,
    Step,
    Transition,
    UserRule,
    VetoPolicy,
    WorkflowDefinition,
)
from countersign.notify import InMemoryNotifier, NotificationHub
from countersign.persistence import InMemoryWorkflowRepository
from countersign.runtime import ApprovalRuntime

ENTITY = "purchase_order"


class FakeClock:
    """Deterministic clock that ticks one millisecond per reading."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            self.now += timedelta(milliseconds=1)
            return self.now

    def advance(self, **delta) -> datetime:
        with self._lock:
            self.now += timedelta(**delta)
            return self.now


class Engine:
    """Runtime plus the collaborators a test wants to poke at."""

    def __init__(self, repository=None, clock=None, config=None) -> None:
        self.clock = clock or FakeClock()
        self.repository = repository or InMemoryWorkflowRepository()
        self.directory = InMemoryDirectory()
        self.delegations = DelegationBook()
        self.records = StaticEntityAdapter()
        self.adapters = AdapterRegistry({ENTITY: self.records})
        self.definitions = DefinitionStore(self.repository)
        self.notifier = InMemoryNotifier()
        self.hub = NotificationHub([self.notifier])
        self.runtime = ApprovalRuntime(
            self.repository,
            self.definitions,
            self.adapters,
            resolver=ApproverResolver(self.directory, self.delegations),
            notifications=self.hub,
            config=config or RuntimeConfig(retry_backoff_seconds=0),
            clock=self.clock,
        )
        self.inbox = Inbox(self.repository)
        self.history = HistoryLog(self.repository)

    def register(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        return self.definitions.register(definition)

    def start(self, entity_id: str = "po-1", requester: str = "dave", **fields):
        self.records.put(entity_id, {"total": 100, **fields})
        return self.runtime.start(ENTITY, entity_id, requester)

    def actions(self, instance_id: str) -> list[str]:
        return [e.action.value for e in self.history.replay(instance_id)]

    def close(self) -> None:
        self.hub.shutdown()


def single_step_definition(
    approvers=("alice",),
    quorum: int = 1,
    veto_policy: VetoPolicy = VetoPolicy.ANY_REJECTION_TERMINATES,
    code: str = "po_single",
    timeout_hours=None,
    **extra,
) -> WorkflowDefinition:
    return WorkflowDefinition(
        code=code,
        name="Single approval",
        entity_type=ENTITY,
        steps=[
            Step(
                id="review",
                approver_rule=UserRule(users=list(approvers)),
                quorum=quorum,
                veto_policy=veto_policy,
                timeout_hours=timeout_hours,
            )
        ],
        transitions=[
            Transition(from_step=None, to_step="review"),
            Transition(from_step="review", to_step=None),
        ],
        **extra,
    )


def two_step_definition(code: str = "po_two_step", **extra) -> WorkflowDefinition:
    """alice reviews, then bob and carol must both sign off."""
    return WorkflowDefinition(
        code=code,
        name="Two step approval",
        entity_type=ENTITY,
        steps=[
            Step(id="step1", sequence=1, approver_rule=UserRule(users=["alice"])),
            Step(
                id="step2",
                sequence=2,
                approver_rule=UserRule(users=["bob", "carol"]),
                quorum=2,
            ),
        ],
        transitions=[
            Transition(from_step=None, to_step="step1"),
            Transition(from_step="step1", to_step="step2"),
            Transition(from_step="step2", to_step=None),
        ],
        **extra,
    )


def routed_definition(threshold: float = 10000) -> WorkflowDefinition:
    """Manager review; totals above ``threshold`` also need the director."""
    return WorkflowDefinition(
        code="po_routed",
        entity_type=ENTITY,
        steps=[
            Step(id="manager", approver_rule=UserRule(users=["alice"])),
            Step(id="director", approver_rule=UserRule(users=["zoe"])),
        ],
        transitions=[
            Transition(from_step=None, to_step="manager"),
            Transition(
                from_step="manager",
                to_step="director",
                condition=[Predicate(field="total", operator=">", value=threshold)],
                order=0,
                label="large order",
            ),
            Transition(from_step="manager", to_step=None, order=10),
            Transition(from_step="director", to_step=None),
        ],
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine(clock):
    eng = Engine(clock=clock)
    yield eng
    eng.close()


@pytest.fixture
def single_step():
    return single_step_definition


@pytest.fixture
def two_step():
    return two_step_definition


@pytest.fixture
def routed():
    return routed_definition


@pytest.fixture
def make_engine():
    """Build engines over other repositories; closed at teardown."""
    created = []

    def factory(**kwargs) -> Engine:
        eng = Engine(**kwargs)
        created.append(eng)
        return eng

    yield factory
    for eng in created:
        eng.close()


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch, tmp_path):
    """Keep the cached repository and config lookups out of the user's environment."""
    monkeypatch.delenv("COUNTERSIGN_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("COUNTERSIGN_NOTIFIER", raising=False)
    monkeypatch.setenv("COUNTERSIGN_CONFIG", str(tmp_path / "missing-countersign.yaml"))
    persistence.reset_repository()
    yield
    persistence.reset_repository()
