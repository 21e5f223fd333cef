"""Read side: pending work per approver and paged history."""

from __future__ import annotations

from typing import List, Optional

from .models import HistoryQuery, Page, WorkflowInstance
from .persistence import WorkflowRepository


class Inbox:
    """Queries over instances. Never mutates anything."""

    def __init__(self, repository: WorkflowRepository) -> None:
        self._repository = repository

    def _pending(self, identity: str, entity_type: Optional[str]) -> List[WorkflowInstance]:
        pending = self._repository.pending_for(identity)
        if entity_type is not None:
            pending = [i for i in pending if i.entity_type == entity_type]
        return pending

    def pending_for(
        self,
        identity: str,
        entity_type: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[WorkflowInstance]:
        """In-progress instances whose current step lists ``identity`` as approver.

        Oldest first. ``entity_type`` narrows the inbox to one kind of record;
        ``limit``/``offset`` page through it.
        """
        if (limit is not None and limit < 0) or offset < 0:
            raise ValueError("limit and offset must not be negative")
        pending = self._pending(identity, entity_type)[offset:]
        return pending if limit is None else pending[:limit]

    def count_pending(self, identity: str, entity_type: Optional[str] = None) -> int:
        return len(self._pending(identity, entity_type))

    def history(self, query: HistoryQuery) -> Page[WorkflowInstance]:
        """Instances matching ``query``, most recently finished or started first."""
        items, total = self._repository.query_instances(query)
        return Page[WorkflowInstance](
            items=items, total=total, page=query.page, page_size=query.page_size
        )
