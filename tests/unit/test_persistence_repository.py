"""Contract tests run against every repository backend."""

from datetime import datetime, timedelta, timezone

import pytest

from countersign.errors import (
    DefinitionNotFound,
    DuplicateEvent,
    DuplicateInFlight,
    VersionConflict,
)
from countersign.models import (
    Event,
    EventAction,
    HistoryQuery,
    InstanceState,
    WorkflowInstance,
)
from countersign.persistence import InMemoryWorkflowRepository, SQLiteWorkflowRepository
from countersign.persistence.sql import SQLWorkflowRepository

T0 = datetime(2025, 4, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["inmemory", "sqlite", "sqlmodel"])
def repo(request, tmp_path):
    if request.param == "inmemory":
        return InMemoryWorkflowRepository()
    if request.param == "sqlite":
        return SQLiteWorkflowRepository(tmp_path / "wf.db")
    return SQLWorkflowRepository(f"sqlite+pysqlite:///{tmp_path / 'wf-sqlmodel.db'}")


@pytest.fixture
def definition(repo, single_step):
    definition = single_step(approvers=["alice", "bob"], quorum=2)
    repo.save_definition(definition)
    return definition


def _instance(definition, entity_id="po-1", started=T0, **fields):
    return WorkflowInstance(
        workflow_definition_id=definition.id,
        entity_type="purchase_order",
        entity_id=entity_id,
        entity_snapshot={"total": 1200, "supplier": "ACME"},
        current_step_id="review",
        resolved_approvers=["alice", "bob"],
        requester="dave",
        started_at=started,
        step_entered_at=started,
        expires_at=started + timedelta(hours=72),
        **fields,
    )


def _event(instance, action, actor, at, state=InstanceState.IN_PROGRESS):
    return Event(
        instance_id=instance.id,
        action=action,
        actor=actor,
        timestamp=at,
        step_id="review",
        resulting_state=state,
        resulting_step=None if state.is_terminal else "review",
        approvers=["alice", "bob"] if action == EventAction.START else [],
    )


def _start(repo, definition, **kwargs):
    instance = _instance(definition, **kwargs)
    return repo.create_instance(
        instance, [_event(instance, EventAction.START, "dave", instance.started_at)]
    )


def test_definitions_round_trip(repo, definition):
    assert repo.get_definition(definition.id) == definition
    assert [d.id for d in repo.list_definitions("purchase_order")] == [definition.id]
    assert repo.list_definitions("expense_report") == []
    assert repo.get_definition("missing") is None

    repo.set_definition_active(definition.id, False)
    assert repo.get_definition(definition.id).active is False
    with pytest.raises(DefinitionNotFound):
        repo.set_definition_active("missing", True)


def test_definition_code_and_version_are_unique(repo, definition):
    clash = definition.model_copy(update={"id": "another-id"})
    with pytest.raises(ValueError):
        repo.save_definition(clash)


def test_create_and_read_instance(repo, definition):
    stored = _start(repo, definition)

    assert stored.version == 1
    loaded = repo.get_instance(stored.id)
    assert loaded == stored
    assert loaded.started_at == T0
    assert loaded.entity_snapshot == {"total": 1200, "supplier": "ACME"}
    events = repo.list_events(stored.id)
    assert [(e.sequence, e.action) for e in events] == [(1, EventAction.START)]
    assert events[0].timestamp == T0
    assert repo.has_event(events[0].idempotency_key)
    assert repo.get_instance("missing") is None


def test_one_in_flight_instance_per_entity(repo, definition):
    first = _start(repo, definition)
    with pytest.raises(DuplicateInFlight):
        _start(repo, definition)
    assert repo.find_in_progress("purchase_order", "po-1").id == first.id

    finished = first.model_copy(
        update={"state": InstanceState.APPROVED, "current_step_id": None, "completed_at": T0}
    )
    repo.commit(finished, 1, [])
    assert repo.find_in_progress("purchase_order", "po-1") is None
    second = _start(repo, definition)
    assert second.id != first.id


def test_commit_is_compare_and_swap(repo, definition):
    stored = _start(repo, definition)
    approved_once = stored.model_copy(update={"step_approvals": ["alice"]})
    event = _event(stored, EventAction.APPROVE, "alice", T0 + timedelta(minutes=1))

    after = repo.commit(approved_once, expected_version=1, events=[event])
    assert after.version == 2

    stale = stored.model_copy(update={"step_approvals": ["bob"]})
    with pytest.raises(VersionConflict):
        repo.commit(
            stale, 1, [_event(stored, EventAction.APPROVE, "bob", T0 + timedelta(minutes=2))]
        )

    current = repo.get_instance(stored.id)
    assert current.step_approvals == ["alice"]
    assert current.version == 2
    assert [e.actor for e in repo.list_events(stored.id)] == ["dave", "alice"]


def test_duplicate_event_rolls_back_commit(repo, definition):
    stored = _start(repo, definition)
    event = _event(stored, EventAction.APPROVE, "alice", T0 + timedelta(minutes=1))
    repo.commit(stored.model_copy(update={"step_approvals": ["alice"]}), 1, [event])

    with pytest.raises(DuplicateEvent):
        repo.commit(
            stored.model_copy(update={"step_approvals": ["alice", "alice"]}), 2, [event]
        )

    current = repo.get_instance(stored.id)
    assert current.version == 2
    assert current.step_approvals == ["alice"]
    assert len(repo.list_events(stored.id)) == 2


def test_pending_and_due_for_expiry(repo, definition):
    early = _start(repo, definition, entity_id="po-1", started=T0)
    late = _start(repo, definition, entity_id="po-2", started=T0 + timedelta(hours=10))

    assert [i.id for i in repo.pending_for("alice")] == [early.id, late.id]
    assert repo.pending_for("mallory") == []

    due = repo.due_for_expiry(T0 + timedelta(hours=73))
    assert [i.id for i in due] == [early.id]
    assert repo.due_for_expiry(T0) == []


def test_query_instances(repo, definition):
    ids = [
        _start(repo, definition, entity_id=f"po-{n}", started=T0 + timedelta(hours=n)).id
        for n in range(4)
    ]
    oldest = repo.get_instance(ids[0])
    repo.commit(
        oldest.model_copy(
            update={
                "state": InstanceState.REJECTED,
                "current_step_id": None,
                "completed_at": T0 + timedelta(days=1),
            }
        ),
        1,
        [],
    )

    items, total = repo.query_instances(HistoryQuery(page_size=3))
    assert total == 4
    assert [i.id for i in items] == [ids[0], ids[3], ids[2]]

    items, total = repo.query_instances(HistoryQuery(state=InstanceState.IN_PROGRESS))
    assert total == 3

    items, total = repo.query_instances(
        HistoryQuery(started_from=T0 + timedelta(hours=1), started_to=T0 + timedelta(hours=2))
    )
    assert sorted(i.id for i in items) == sorted(ids[1:3])
    assert repo.list_instances(InstanceState.REJECTED)[0].id == ids[0]


def test_append_event_assigns_sequence(repo, definition):
    stored = _start(repo, definition)
    extra = _event(
        stored, EventAction.CANCEL, "dave", T0 + timedelta(minutes=5), InstanceState.CANCELLED
    )

    appended = repo.append_event(extra)

    assert appended.sequence == 2
    with pytest.raises(DuplicateEvent):
        repo.append_event(extra)
