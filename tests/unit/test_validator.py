from countersign.models import (
    Bracket,
    FieldBracketRule,
    ManagerRule,
    Predicate,
    RoleRule,
    Step,
    Transition,
    UserRule,
    WorkflowDefinition,
)
from countersign.validator import DefinitionValidator, validate_definition


def _definition(steps, transitions, **extra):
    return WorkflowDefinition(
        code="test", entity_type="purchase_order", steps=steps, transitions=transitions, **extra
    )


def _step(step_id, users=("alice",), quorum=1):
    return Step(id=step_id, approver_rule=UserRule(users=list(users)), quorum=quorum)


def test_valid_two_step_definition(two_step):
    result = validate_definition(two_step())
    assert result.valid, result.errors
    assert result.errors == []
    assert result.stats == {"steps": 2, "transitions": 3, "terminal_transitions": 1}


def test_cycle_is_rejected():
    definition = _definition(
        [_step("a"), _step("b")],
        [
            Transition(to_step="a"),
            Transition(
                from_step="a",
                to_step="b",
                condition=[Predicate(field="total", operator=">", value=1)],
            ),
            Transition(from_step="a", to_step=None, order=1),
            Transition(from_step="b", to_step="a"),
        ],
    )
    result = DefinitionValidator().validate(definition)
    assert not result.valid
    assert any("cycle" in e and "a -> b -> a" in e for e in result.errors)


def test_unreachable_step_is_rejected():
    definition = _definition(
        [_step("a"), _step("orphan")],
        [
            Transition(to_step="a"),
            Transition(from_step="a", to_step=None),
            Transition(from_step="orphan", to_step=None),
        ],
    )
    result = validate_definition(definition)
    assert "Step 'orphan' is unreachable from start" in result.errors


def test_missing_fallback_is_rejected():
    definition = _definition(
        [_step("a")],
        [
            Transition(to_step="a"),
            Transition(
                from_step="a",
                to_step=None,
                condition=[Predicate(field="total", operator="<", value=10)],
            ),
        ],
    )
    result = validate_definition(definition)
    assert "step 'a' has no unconditional fallback transition" in result.errors


def test_start_node_needs_fallback():
    definition = _definition(
        [_step("a")],
        [
            Transition(to_step="a", condition=[Predicate(field="total", operator=">", value=0)]),
            Transition(from_step="a", to_step=None),
        ],
    )
    result = validate_definition(definition)
    assert "start node has no unconditional fallback transition" in result.errors


def test_unknown_step_reference():
    definition = _definition(
        [_step("a")],
        [
            Transition(to_step="a"),
            Transition(from_step="a", to_step="ghost"),
        ],
    )
    result = validate_definition(definition)
    assert "Transition references unknown step 'ghost'" in result.errors


def test_no_start_transition_and_no_steps():
    result = validate_definition(_definition([], []))
    assert "Definition has no steps" in result.errors
    assert "No transition leaves the start node" in result.errors


def test_duplicate_step_ids():
    definition = _definition(
        [_step("a"), _step("a")],
        [Transition(to_step="a"), Transition(from_step="a", to_step=None)],
    )
    assert "Duplicate step ids: a" in validate_definition(definition).errors


def test_quorum_above_static_bound_is_an_error():
    definition = _definition(
        [_step("a", users=["alice", "bob"], quorum=3)],
        [Transition(to_step="a"), Transition(from_step="a", to_step=None)],
    )
    result = validate_definition(definition)
    assert not result.valid
    assert "quorum 3 exceeds the 2 possible approver(s)" in result.errors[0]


def test_bracket_bound_is_smallest_group():
    rule = FieldBracketRule(
        field="total",
        brackets=[
            Bracket(minimum=0, users=["alice"]),
            Bracket(minimum=10000, users=["bob", "carol"]),
        ],
    )
    definition = _definition(
        [Step(id="a", approver_rule=rule, quorum=2)],
        [Transition(to_step="a"), Transition(from_step="a", to_step=None)],
    )
    assert not validate_definition(definition).valid


def test_dynamic_rules_only_warn():
    definition = _definition(
        [
            Step(id="a", approver_rule=RoleRule(role="finance"), quorum=3),
            Step(id="b", approver_rule=ManagerRule(fallback_role="admins")),
        ],
        [
            Transition(to_step="a"),
            Transition(from_step="a", to_step="b"),
            Transition(from_step="b", to_step=None),
        ],
    )
    result = validate_definition(definition)
    assert result.valid
    assert len(result.warnings) == 2


def test_transitions_after_fallback_are_flagged():
    definition = _definition(
        [_step("a")],
        [
            Transition(to_step="a"),
            Transition(from_step="a", to_step=None, order=0),
            Transition(
                from_step="a",
                to_step=None,
                order=1,
                condition=[Predicate(field="total", operator=">", value=5)],
            ),
        ],
    )
    result = validate_definition(definition)
    assert result.valid
    assert any("never match" in w for w in result.warnings)
