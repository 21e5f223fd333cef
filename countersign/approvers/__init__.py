"""Approver resolution for workflow steps."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from ..models import Step, utcnow
from .directory import DelegationBook, IdentityDirectory, InMemoryDirectory
from .rules import (
    RULE_RESOLVERS,
    ResolutionContext,
    RuleResolver,
    register_rule_resolver,
)

logger = logging.getLogger(__name__)


class ApproverResolver:
    """Compute the eligible approver set for a step.

    Resolution is a deterministic function of the step's rule, the snapshot,
    the requester, the directory contents and the delegations active at
    ``at``. The engine freezes the result on the instance when a step is
    entered; re-running it later is only for audit.
    """

    def __init__(
        self,
        directory: Optional[IdentityDirectory] = None,
        delegations: Optional[DelegationBook] = None,
        resolvers: Optional[Dict[str, RuleResolver]] = None,
    ) -> None:
        self.directory = directory or InMemoryDirectory()
        self.delegations = delegations or DelegationBook()
        self._resolvers = resolvers if resolvers is not None else RULE_RESOLVERS

    def _strategy(self, kind: str) -> RuleResolver:
        try:
            return self._resolvers[kind]
        except KeyError:
            raise ValueError(f"No resolver registered for approver rule kind {kind!r}")

    def resolve(
        self,
        step: Step,
        snapshot: Mapping[str, Any],
        requester: Optional[str] = None,
        at: Optional[datetime] = None,
        workflow_code: Optional[str] = None,
    ) -> FrozenSet[str]:
        approvers, _ = self.resolve_with_delegates(
            step, snapshot, requester=requester, at=at, workflow_code=workflow_code
        )
        return approvers

    def resolve_with_delegates(
        self,
        step: Step,
        snapshot: Mapping[str, Any],
        requester: Optional[str] = None,
        at: Optional[datetime] = None,
        workflow_code: Optional[str] = None,
    ) -> Tuple[FrozenSet[str], Dict[str, str]]:
        """Approver set plus the delegate -> delegator map of the delegates in it.

        A delegate acts in the delegator's slot, so the number of distinct
        slots is the size of the set minus the map. An identity the rule
        already names keeps its own slot even when someone delegates to it.
        """
        rule = step.approver_rule
        context = ResolutionContext(
            snapshot=snapshot, directory=self.directory, requester=requester
        )
        principals = set(self._strategy(rule.kind).resolve(rule, context))

        at = at or utcnow()
        delegated_by: Dict[str, str] = {}
        for approver in sorted(principals):
            for delegate in self.delegations.delegates_of(approver, at, workflow_code):
                if delegate in principals or delegate in delegated_by:
                    continue
                logger.debug(f"{delegate} stands in for {approver} on step {step.id}")
                delegated_by[delegate] = approver

        approvers = principals | set(delegated_by)
        logger.debug(f"Resolved approvers for step {step.id}: {sorted(approvers)}")
        return frozenset(approvers), delegated_by

    def static_bound(self, step: Step) -> Optional[int]:
        """Upper bound on the approver set size when it can be known statically."""
        rule = step.approver_rule
        return self._strategy(rule.kind).static_bound(rule)


__all__ = [
    "ApproverResolver",
    "DelegationBook",
    "IdentityDirectory",
    "InMemoryDirectory",
    "ResolutionContext",
    "RuleResolver",
    "register_rule_resolver",
]
