"""Caller-facing facade over the runtime and read side.

Everything here takes and returns plain pydantic records so that an HTTP or
RPC layer can wrap it without touching engine internals.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel

from .adapters import AdapterRegistry, EntityAdapter
from .approvers import ApproverResolver, DelegationBook, IdentityDirectory
from .conditions import ConditionEvaluator
from .config import CountersignConfig, load_config
from .definitions import DefinitionStore
from .errors import NoApplicableWorkflow
from .history import HistoryLog
from .inbox import Inbox
from .models import Event, HistoryQuery, Page, WorkflowDefinition, WorkflowInstance
from .notify import NotificationHub, get_notifier
from .persistence import WorkflowRepository, get_repository
from .runtime import ApprovalRuntime
from .sweeper import ExpirySweeper

logger = logging.getLogger(__name__)


class StartApprovalRequest(BaseModel):
    entity_type: str
    entity_id: str
    requester: str
    comment: Optional[str] = None
    requested_at: Optional[datetime] = None


class ActionRequest(BaseModel):
    """Approve, reject or cancel an instance on behalf of ``actor``."""

    instance_id: str
    actor: str
    comment: Optional[str] = None
    requested_at: Optional[datetime] = None


class ApprovalService:
    def __init__(
        self,
        runtime: ApprovalRuntime,
        definitions: DefinitionStore,
        inbox: Inbox,
        history: HistoryLog,
        adapters: AdapterRegistry,
        sweeper: Optional[ExpirySweeper] = None,
        notifications: Optional[NotificationHub] = None,
    ) -> None:
        self.runtime = runtime
        self.definitions = definitions
        self.inbox = inbox
        self.history = history
        self.adapters = adapters
        self.sweeper = sweeper
        self.notifications = notifications

    def requires_approval(
        self, entity_type: str, entity_id: str
    ) -> Optional[WorkflowDefinition]:
        """Definition that would govern the entity right now, or None to auto-approve."""
        try:
            self.definitions.lookup(entity_type)
        except NoApplicableWorkflow:
            return None
        snapshot = self.adapters.get_snapshot(entity_type, str(entity_id))
        try:
            return self.definitions.lookup(entity_type, snapshot)
        except NoApplicableWorkflow:
            return None

    def start_approval(self, request: StartApprovalRequest) -> WorkflowInstance:
        return self.runtime.start(
            request.entity_type,
            request.entity_id,
            request.requester,
            comment=request.comment,
            requested_at=request.requested_at,
        )

    def approve(self, request: ActionRequest) -> WorkflowInstance:
        return self.runtime.approve(
            request.instance_id, request.actor, request.comment, request.requested_at
        )

    def reject(self, request: ActionRequest) -> WorkflowInstance:
        return self.runtime.reject(
            request.instance_id, request.actor, request.comment, request.requested_at
        )

    def cancel(self, request: ActionRequest) -> WorkflowInstance:
        return self.runtime.cancel(
            request.instance_id, request.actor, request.comment, request.requested_at
        )

    def get_instance(self, instance_id: str) -> WorkflowInstance:
        return self.runtime.get(instance_id)

    def get_history(self, instance_id: str) -> List[Event]:
        self.runtime.get(instance_id)
        return self.history.replay(instance_id)

    def get_pending_for(
        self,
        identity: str,
        entity_type: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[WorkflowInstance]:
        return self.inbox.pending_for(identity, entity_type, limit=limit, offset=offset)

    def count_pending_for(self, identity: str, entity_type: Optional[str] = None) -> int:
        return self.inbox.count_pending(identity, entity_type)

    def query_history(self, query: Optional[HistoryQuery] = None) -> Page[WorkflowInstance]:
        return self.inbox.history(query or HistoryQuery())

    def close(self) -> None:
        if self.sweeper is not None:
            self.sweeper.stop()
        if self.notifications is not None:
            self.notifications.shutdown()


def build_service(
    config: Optional[CountersignConfig] = None,
    adapters: Optional[Dict[str, EntityAdapter]] = None,
    directory: Optional[IdentityDirectory] = None,
    delegations: Optional[DelegationBook] = None,
    repository: Optional[WorkflowRepository] = None,
) -> ApprovalService:
    """Wire repository, notifier, runtime and read side from configuration."""

    config = config or load_config()
    repository = repository or get_repository(config=config)
    evaluator = ConditionEvaluator()
    definitions = DefinitionStore(repository, evaluator=evaluator)
    registry = AdapterRegistry(adapters)
    notifications = NotificationHub(
        [get_notifier(config=config)], max_workers=config.notifier.max_workers
    )
    runtime = ApprovalRuntime(
        repository,
        definitions,
        registry,
        resolver=ApproverResolver(directory=directory, delegations=delegations),
        evaluator=evaluator,
        notifications=notifications,
        config=config.runtime,
    )
    sweeper = ExpirySweeper(runtime, repository, interval=config.sweeper.interval_seconds)
    logger.info(
        f"Built approval service on {type(repository).__name__} "
        f"with {config.notifier.backend} notifications"
    )
    return ApprovalService(
        runtime,
        definitions,
        Inbox(repository),
        HistoryLog(repository),
        registry,
        sweeper=sweeper,
        notifications=notifications,
    )
