"""Concurrent actions against one instance."""

import threading
from datetime import timedelta

import pytest

from countersign.config import RuntimeConfig
from countersign.errors import NotInProgress
from countersign.models import EventAction, InstanceState, utcnow
from countersign.persistence import InMemoryWorkflowRepository, SQLiteWorkflowRepository
from countersign.persistence.sql import SQLWorkflowRepository
from countersign.sweeper import ExpirySweeper

APPROVERS = [f"approver{i}" for i in range(8)]


@pytest.fixture(params=["inmemory", "sqlite", "sqlmodel"])
def contended_engine(request, make_engine, tmp_path):
    if request.param == "inmemory":
        repository = InMemoryWorkflowRepository()
    elif request.param == "sqlite":
        repository = SQLiteWorkflowRepository(tmp_path / "concurrency.db")
    else:
        repository = SQLWorkflowRepository(
            f"sqlite+pysqlite:///{tmp_path / 'concurrency-sqlmodel.db'}"
        )
    return make_engine(
        repository=repository,
        clock=utcnow,
        config=RuntimeConfig(max_cas_retries=50, retry_backoff_seconds=0.001),
    )


def _run_all(targets):
    barrier = threading.Barrier(len(targets))
    outcomes = [None] * len(targets)

    def worker(index, target):
        barrier.wait()
        try:
            outcomes[index] = target()
        except Exception as exc:  # collected for assertions
            outcomes[index] = exc

    threads = [
        threading.Thread(target=worker, args=(i, t)) for i, t in enumerate(targets)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    return outcomes


def test_concurrent_approvals_advance_exactly_once(contended_engine, single_step):
    engine = contended_engine
    engine.register(single_step(approvers=APPROVERS, quorum=3))
    instance = engine.start()

    outcomes = _run_all(
        [lambda actor=actor: engine.runtime.approve(instance.id, actor) for actor in APPROVERS]
    )

    errors = [o for o in outcomes if isinstance(o, Exception)]
    assert all(isinstance(e, NotInProgress) for e in errors), errors

    final = engine.runtime.get(instance.id)
    assert final.state == InstanceState.APPROVED
    events = engine.history.replay(instance.id)
    actions = [e.action for e in events]
    assert actions.count(EventAction.ADVANCE) == 1
    assert actions.count(EventAction.APPROVE) == 3
    assert len(errors) == len(APPROVERS) - 3
    assert [e.sequence for e in events] == list(range(1, len(events) + 1))
    assert engine.history.verify(final) == []


def test_sweeper_race_with_approval_has_one_winner(contended_engine, single_step):
    engine = contended_engine
    engine.register(single_step(timeout_hours=1))
    instance = engine.start()
    later = utcnow() + timedelta(hours=2)
    sweeper = ExpirySweeper(engine.runtime, engine.repository)

    outcomes = _run_all(
        [
            lambda: engine.runtime.approve(instance.id, "alice"),
            lambda: sweeper.sweep_once(now=later),
        ]
    )

    final = engine.runtime.get(instance.id)
    assert final.state in (InstanceState.APPROVED, InstanceState.EXPIRED)
    terminal_events = [
        e for e in engine.history.replay(instance.id) if e.resulting_state.is_terminal
    ]
    assert len(terminal_events) == 1
    if final.state == InstanceState.EXPIRED:
        assert isinstance(outcomes[0], NotInProgress)
    else:
        assert outcomes[1] == []
