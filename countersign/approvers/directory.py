"""Identity directory and delegation book consulted by the approver resolver."""

from __future__ import annotations

import threading
from collections import defaultdict
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Protocol, Set

from ..models import Delegation


class IdentityDirectory(Protocol):
    """Protocol for looking up organisational structure."""

    def members_of_role(self, role: str) -> Iterable[str]:
        """Identities holding ``role``."""

    def holders_of_permission(self, permission: str) -> Iterable[str]:
        """Identities granted ``permission``."""

    def manager_of(self, identity: str) -> Optional[str]:
        """Direct manager of ``identity`` if any."""


class InMemoryDirectory(IdentityDirectory):
    """Directory kept in local dictionaries.

    Useful for tests and for deployments that sync a small org chart at
    startup.
    """

    def __init__(
        self,
        roles: Optional[Dict[str, Iterable[str]]] = None,
        permissions: Optional[Dict[str, Iterable[str]]] = None,
        managers: Optional[Dict[str, str]] = None,
    ) -> None:
        self._roles: Dict[str, Set[str]] = defaultdict(set)
        self._permissions: Dict[str, Set[str]] = defaultdict(set)
        self._managers: Dict[str, str] = dict(managers or {})
        for role, members in (roles or {}).items():
            self._roles[role].update(members)
        for permission, holders in (permissions or {}).items():
            self._permissions[permission].update(holders)

    def add_role_member(self, role: str, identity: str) -> None:
        self._roles[role].add(identity)

    def grant_permission(self, permission: str, identity: str) -> None:
        self._permissions[permission].add(identity)

    def set_manager(self, identity: str, manager: Optional[str]) -> None:
        if manager is None:
            self._managers.pop(identity, None)
        else:
            self._managers[identity] = manager

    def members_of_role(self, role: str) -> Iterable[str]:
        return sorted(self._roles.get(role, ()))

    def holders_of_permission(self, permission: str) -> Iterable[str]:
        return sorted(self._permissions.get(permission, ()))

    def manager_of(self, identity: str) -> Optional[str]:
        return self._managers.get(identity)


class DelegationBook:
    """Active delegations by delegator."""

    def __init__(self, delegations: Iterable[Delegation] = ()) -> None:
        self._lock = threading.Lock()
        self._delegations: Dict[str, Delegation] = {}
        for delegation in delegations:
            self.add(delegation)

    def add(self, delegation: Delegation) -> Delegation:
        """Record ``delegation``; overlapping active windows for the same scope are refused."""
        with self._lock:
            for existing in self._delegations.values():
                if (
                    existing.active
                    and existing.delegator == delegation.delegator
                    and existing.workflow_code in (None, delegation.workflow_code)
                    and not (
                        existing.ends_at < delegation.starts_at
                        or existing.starts_at > delegation.ends_at
                    )
                ):
                    raise ValueError(
                        f"{delegation.delegator} already delegates during that period"
                    )
            self._delegations[delegation.id] = delegation
        return delegation

    def revoke(self, delegation_id: str) -> None:
        with self._lock:
            current = self._delegations.get(delegation_id)
            if current is not None:
                self._delegations[delegation_id] = current.model_copy(update={"active": False})

    def list_for(self, identity: str) -> List[Delegation]:
        """Delegations where ``identity`` is delegator or delegate."""
        with self._lock:
            return [
                d
                for d in self._delegations.values()
                if identity in (d.delegator, d.delegate)
            ]

    def delegates_of(
        self, identity: str, at: datetime, workflow_code: Optional[str] = None
    ) -> List[str]:
        with self._lock:
            return sorted(
                d.delegate
                for d in self._delegations.values()
                if d.delegator == identity and d.covers(at, workflow_code)
            )
