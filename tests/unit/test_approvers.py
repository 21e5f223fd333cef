from datetime import datetime, timedelta, timezone

import pytest

from countersign.approvers import (
    ApproverResolver,
    DelegationBook,
    InMemoryDirectory,
    register_rule_resolver,
)
from countersign.approvers.rules import RULE_RESOLVERS
from countersign.models import (
    Bracket,
    Delegation,
    FieldBracketRule,
    ManagerRule,
    PermissionRule,
    RoleRule,
    Step,
    UserRule,
)

NOW = datetime(2025, 3, 3, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def directory():
    directory = InMemoryDirectory(
        roles={"finance": ["frank", "fiona"], "admins": ["ada"]},
        permissions={"po.approve": ["paul"]},
    )
    directory.set_manager("dave", "mia")
    return directory


@pytest.fixture
def resolver(directory):
    return ApproverResolver(directory=directory)


def _step(rule, quorum=1):
    return Step(id="s", approver_rule=rule, quorum=quorum)


def test_user_rule(resolver):
    assert resolver.resolve(_step(UserRule(users=["bob", "alice"])), {}) == {"alice", "bob"}


def test_user_rule_accepts_single_user():
    assert UserRule.model_validate({"user": "alice"}).users == ["alice"]


def test_role_and_permission_rules(resolver):
    assert resolver.resolve(_step(RoleRule(role="finance")), {}) == {"frank", "fiona"}
    assert resolver.resolve(_step(PermissionRule(permission="po.approve")), {}) == {"paul"}
    assert resolver.resolve(_step(RoleRule(role="nobody")), {}) == frozenset()


def test_manager_rule_and_fallback(resolver):
    step = _step(ManagerRule(fallback_role="admins"))
    assert resolver.resolve(step, {}, requester="dave") == {"mia"}
    assert resolver.resolve(step, {}, requester="erin") == {"ada"}
    assert resolver.resolve(_step(ManagerRule()), {}, requester="erin") == frozenset()


def test_field_bracket_picks_highest_reached(resolver):
    rule = FieldBracketRule(
        field="total",
        brackets=[
            Bracket(minimum=0, users=["alice"]),
            Bracket(minimum=10000, role="finance"),
            Bracket(minimum=50000, users=["ceo"]),
        ],
        default=Bracket(users=["fallback"]),
    )
    step = _step(rule)
    assert resolver.resolve(step, {"total": 500}) == {"alice"}
    assert resolver.resolve(step, {"total": 10000}) == {"frank", "fiona"}
    assert resolver.resolve(step, {"total": "75000"}) == {"ceo"}
    assert resolver.resolve(step, {}) == {"fallback"}
    assert resolver.resolve(step, {"total": -5}) == {"fallback"}


def test_resolution_is_deterministic(resolver):
    step = _step(RoleRule(role="finance"))
    assert resolver.resolve(step, {"x": 1}, at=NOW) == resolver.resolve(step, {"x": 1}, at=NOW)


def test_static_bounds(resolver):
    assert resolver.static_bound(_step(UserRule(users=["a", "b"]))) == 2
    assert resolver.static_bound(_step(RoleRule(role="finance"))) is None
    assert resolver.static_bound(_step(ManagerRule())) == 1
    assert resolver.static_bound(_step(ManagerRule(fallback_role="admins"))) is None


def test_active_delegation_widens_approver_set(directory):
    book = DelegationBook(
        [
            Delegation(
                delegator="alice",
                delegate="erin",
                starts_at=NOW - timedelta(days=1),
                ends_at=NOW + timedelta(days=1),
            )
        ]
    )
    resolver = ApproverResolver(directory=directory, delegations=book)
    step = _step(UserRule(users=["alice"]))

    assert resolver.resolve(step, {}, at=NOW) == {"alice", "erin"}
    assert resolver.resolve(step, {}, at=NOW + timedelta(days=3)) == {"alice"}


def test_delegates_map_to_their_delegator(directory):
    window = dict(starts_at=NOW - timedelta(days=1), ends_at=NOW + timedelta(days=1))
    book = DelegationBook(
        [
            Delegation(delegator="alice", delegate="erin", **window),
            Delegation(delegator="bob", delegate="alice", **window),
        ]
    )
    resolver = ApproverResolver(directory=directory, delegations=book)
    step = _step(UserRule(users=["alice", "bob"]))

    approvers, delegated_by = resolver.resolve_with_delegates(step, {}, at=NOW)

    assert approvers == {"alice", "bob", "erin"}
    # alice is named by the rule, so she keeps her own slot.
    assert delegated_by == {"erin": "alice"}


def test_delegation_scoped_to_workflow(directory):
    book = DelegationBook()
    book.add(
        Delegation(
            delegator="alice",
            delegate="erin",
            starts_at=NOW - timedelta(days=1),
            ends_at=NOW + timedelta(days=1),
            workflow_code="po_single",
        )
    )
    resolver = ApproverResolver(directory=directory, delegations=book)
    step = _step(UserRule(users=["alice"]))

    assert "erin" in resolver.resolve(step, {}, at=NOW, workflow_code="po_single")
    assert "erin" not in resolver.resolve(step, {}, at=NOW, workflow_code="expenses")


def test_delegation_book_refuses_overlaps_and_revokes():
    book = DelegationBook()
    first = book.add(
        Delegation(
            delegator="alice",
            delegate="erin",
            starts_at=NOW,
            ends_at=NOW + timedelta(days=5),
        )
    )
    with pytest.raises(ValueError):
        book.add(
            Delegation(
                delegator="alice",
                delegate="bob",
                starts_at=NOW + timedelta(days=2),
                ends_at=NOW + timedelta(days=9),
            )
        )
    book.revoke(first.id)
    assert book.delegates_of("alice", NOW + timedelta(days=1)) == []
    assert [d.id for d in book.list_for("erin")] == [first.id]


def test_delegation_validation():
    with pytest.raises(ValueError):
        Delegation(delegator="alice", delegate="alice", starts_at=NOW, ends_at=NOW)
    with pytest.raises(ValueError):
        Delegation(
            delegator="alice", delegate="bob", starts_at=NOW, ends_at=NOW - timedelta(days=1)
        )


def test_custom_rule_resolver_can_be_registered(monkeypatch, resolver):
    class EveryoneResolver:
        def resolve(self, rule, context):
            return {"everyone"}

        def static_bound(self, rule):
            return None

    monkeypatch.setitem(RULE_RESOLVERS, "role", RULE_RESOLVERS["role"])
    register_rule_resolver("role", EveryoneResolver())
    assert resolver.resolve(_step(RoleRule(role="finance")), {}) == {"everyone"}
