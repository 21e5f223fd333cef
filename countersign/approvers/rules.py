"""Per-kind approver rule strategies."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Protocol, Set

from ..models import (
    Bracket,
    FieldBracketRule,
    ManagerRule,
    PermissionRule,
    RoleRule,
    UserRule,
)
from .directory import IdentityDirectory

logger = logging.getLogger(__name__)


@dataclass
class ResolutionContext:
    snapshot: Mapping[str, Any]
    directory: IdentityDirectory
    requester: Optional[str] = None
    extras: Dict[str, Any] = field(default_factory=dict)


class RuleResolver(Protocol):
    """Turns one kind of approver rule into identities."""

    def resolve(self, rule: Any, context: ResolutionContext) -> Set[str]:
        """Eligible approvers for ``rule``."""

    def static_bound(self, rule: Any) -> Optional[int]:
        """Largest set size knowable without a directory, or ``None``."""


class UserRuleResolver:
    def resolve(self, rule: UserRule, context: ResolutionContext) -> Set[str]:
        return set(rule.users)

    def static_bound(self, rule: UserRule) -> Optional[int]:
        return len(set(rule.users))


class RoleRuleResolver:
    def resolve(self, rule: RoleRule, context: ResolutionContext) -> Set[str]:
        return set(context.directory.members_of_role(rule.role))

    def static_bound(self, rule: RoleRule) -> Optional[int]:
        return None


class PermissionRuleResolver:
    def resolve(self, rule: PermissionRule, context: ResolutionContext) -> Set[str]:
        return set(context.directory.holders_of_permission(rule.permission))

    def static_bound(self, rule: PermissionRule) -> Optional[int]:
        return None


class ManagerRuleResolver:
    def resolve(self, rule: ManagerRule, context: ResolutionContext) -> Set[str]:
        manager = (
            context.directory.manager_of(context.requester) if context.requester else None
        )
        if manager:
            return {manager}
        if rule.fallback_role:
            logger.info(
                f"No manager for requester {context.requester!r}, "
                f"using fallback role {rule.fallback_role!r}"
            )
            return set(context.directory.members_of_role(rule.fallback_role))
        logger.warning(
            f"Requester {context.requester!r} has no manager and no fallback role is configured"
        )
        return set()

    def static_bound(self, rule: ManagerRule) -> Optional[int]:
        return None if rule.fallback_role else 1


class FieldBracketRuleResolver:
    """Highest bracket whose ``minimum`` the snapshot value reaches."""

    def select(self, rule: FieldBracketRule, snapshot: Mapping[str, Any]) -> Optional[Bracket]:
        raw = snapshot.get(rule.field)
        try:
            value = float(raw) if raw is not None and not isinstance(raw, bool) else None
        except (TypeError, ValueError):
            value = None
        if value is None:
            return rule.default
        chosen = None
        for bracket in sorted(
            rule.brackets, key=lambda b: float("-inf") if b.minimum is None else b.minimum
        ):
            if bracket.minimum is None or bracket.minimum <= value:
                chosen = bracket
        return chosen or rule.default

    def resolve(self, rule: FieldBracketRule, context: ResolutionContext) -> Set[str]:
        bracket = self.select(rule, context.snapshot)
        if bracket is None:
            return set()
        approvers = set(bracket.users)
        if bracket.role:
            approvers.update(context.directory.members_of_role(bracket.role))
        return approvers

    def static_bound(self, rule: FieldBracketRule) -> Optional[int]:
        candidates = list(rule.brackets) + ([rule.default] if rule.default else [])
        if any(b.role for b in candidates):
            return None
        return min(len(set(b.users)) for b in candidates)


RULE_RESOLVERS: Dict[str, RuleResolver] = {
    "user": UserRuleResolver(),
    "role": RoleRuleResolver(),
    "permission": PermissionRuleResolver(),
    "manager": ManagerRuleResolver(),
    "field_bracket": FieldBracketRuleResolver(),
}


def register_rule_resolver(kind: str, resolver: RuleResolver) -> None:
    """Install or replace the strategy used for rules of ``kind``."""
    RULE_RESOLVERS[kind] = resolver
