"""countersign: multi-step approval workflows for arbitrary business records."""

from .adapters import AdapterRegistry, CallableEntityAdapter, StaticEntityAdapter
from .approvers import ApproverResolver, DelegationBook, InMemoryDirectory
from .definitions import DefinitionStore, load_definitions
from .history import HistoryLog
from .inbox import Inbox
from .models import (
    Delegation,
    Event,
    HistoryQuery,
    InstanceState,
    Step,
    Transition,
    WorkflowDefinition,
    WorkflowInstance,
)
from .notify import get_notifier
from .persistence import get_repository
from .runtime import ApprovalRuntime
from .service import ActionRequest, ApprovalService, StartApprovalRequest, build_service
from .sweeper import ExpirySweeper
from .validator import DefinitionValidator

__version__ = "0.1.0"
__all__ = [
    "ActionRequest",
    "AdapterRegistry",
    "ApprovalRuntime",
    "ApprovalService",
    "ApproverResolver",
    "CallableEntityAdapter",
    "DefinitionStore",
    "DefinitionValidator",
    "Delegation",
    "DelegationBook",
    "Event",
    "ExpirySweeper",
    "HistoryLog",
    "HistoryQuery",
    "Inbox",
    "InMemoryDirectory",
    "InstanceState",
    "StartApprovalRequest",
    "StaticEntityAdapter",
    "Step",
    "Transition",
    "WorkflowDefinition",
    "WorkflowInstance",
    "build_service",
    "get_notifier",
    "get_repository",
    "load_definitions",
]
