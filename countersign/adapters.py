"""Entity adapters: how the engine reads the business records it routes."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

from .errors import SnapshotUnavailable

logger = logging.getLogger(__name__)

Snapshot = Dict[str, Any]


class EntityAdapter(Protocol):
    """Source of snapshots for one entity type.

    Implementations must be idempotent and free of side effects.
    """

    def get_snapshot(self, entity_type: str, entity_id: str) -> Mapping[str, Any]:
        """Current scalar fields of the record."""


class StaticEntityAdapter(EntityAdapter):
    """Adapter backed by a dictionary of records, keyed by entity id."""

    def __init__(self, records: Optional[Dict[str, Mapping[str, Any]]] = None) -> None:
        self._lock = threading.Lock()
        self._records: Dict[str, Dict[str, Any]] = {
            str(k): dict(v) for k, v in (records or {}).items()
        }

    def put(self, entity_id: str, fields: Mapping[str, Any]) -> None:
        with self._lock:
            self._records[str(entity_id)] = dict(fields)

    def update(self, entity_id: str, **fields: Any) -> None:
        with self._lock:
            self._records.setdefault(str(entity_id), {}).update(fields)

    def get_snapshot(self, entity_type: str, entity_id: str) -> Mapping[str, Any]:
        with self._lock:
            try:
                return dict(self._records[str(entity_id)])
            except KeyError:
                raise LookupError(f"{entity_type} {entity_id} not found")


class CallableEntityAdapter(EntityAdapter):
    """Wrap a plain ``fn(entity_id) -> mapping`` loader."""

    def __init__(self, loader: Callable[[str], Mapping[str, Any]]) -> None:
        self._loader = loader

    def get_snapshot(self, entity_type: str, entity_id: str) -> Mapping[str, Any]:
        return self._loader(entity_id)


class AdapterRegistry:
    """Lookup table from ``entity_type`` to its adapter.

    The engine never branches on entity type itself; everything it knows
    about a record comes through :meth:`get_snapshot`.
    """

    def __init__(self, adapters: Optional[Dict[str, EntityAdapter]] = None) -> None:
        self._adapters: Dict[str, EntityAdapter] = dict(adapters or {})

    def register(self, entity_type: str, adapter: EntityAdapter) -> None:
        self._adapters[entity_type] = adapter

    def entity_types(self) -> list[str]:
        return sorted(self._adapters)

    def get_snapshot(self, entity_type: str, entity_id: str) -> Snapshot:
        """Capture a snapshot, mapping any adapter failure to ``SnapshotUnavailable``."""
        adapter = self._adapters.get(entity_type)
        if adapter is None:
            raise SnapshotUnavailable(
                f"No entity adapter registered for {entity_type!r}",
                entity_type=entity_type,
                entity_id=entity_id,
            )
        try:
            snapshot = adapter.get_snapshot(entity_type, entity_id)
        except Exception as exc:
            logger.warning(f"Snapshot of {entity_type}:{entity_id} failed: {exc}")
            raise SnapshotUnavailable(
                f"Snapshot of {entity_type}:{entity_id} unavailable: {exc}",
                entity_type=entity_type,
                entity_id=entity_id,
            ) from exc
        if snapshot is None:
            raise SnapshotUnavailable(
                f"Adapter returned no snapshot for {entity_type}:{entity_id}",
                entity_type=entity_type,
                entity_id=entity_id,
            )
        return dict(snapshot)


__all__ = [
    "AdapterRegistry",
    "CallableEntityAdapter",
    "EntityAdapter",
    "Snapshot",
    "StaticEntityAdapter",
]
