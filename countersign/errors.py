"""Error taxonomy for the approval engine.

Every error carries a machine readable ``code`` and a ``retriable`` flag so a
thin transport layer can map them without inspecting messages.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class CountersignError(Exception):
    """Base class for every error raised by countersign."""

    code: str = "countersign_error"
    retriable: bool = False

    def __init__(self, message: str = "", **details: Any) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        """Plain representation for API responses."""
        return {
            "code": self.code,
            "message": self.message,
            "retriable": self.retriable,
            "details": self.details,
        }


# Configuration errors ---------------------------------------------------------


class ConfigurationError(CountersignError):
    code = "configuration_error"


class InvalidDefinition(ConfigurationError):
    code = "invalid_definition"

    def __init__(self, message: str, errors: Optional[List[str]] = None) -> None:
        super().__init__(message, errors=list(errors or []))
        self.errors = list(errors or [])


class DefinitionNotFound(ConfigurationError):
    code = "definition_not_found"


# Request errors ---------------------------------------------------------------


class RequestError(CountersignError):
    code = "request_error"


class DuplicateInFlight(RequestError):
    code = "duplicate_in_flight"


class NotInProgress(RequestError):
    code = "not_in_progress"


class NotAnApprover(RequestError):
    code = "not_an_approver"


class NoApplicableWorkflow(RequestError):
    code = "no_applicable_workflow"


class InstanceNotFound(RequestError):
    code = "instance_not_found"


class NotExpired(RequestError):
    code = "not_expired"


class NoEligibleApprovers(RequestError):
    code = "no_eligible_approvers"


# Routing errors ---------------------------------------------------------------


class RoutingError(CountersignError):
    code = "routing_error"


class NoEntryStep(RoutingError):
    code = "no_entry_step"


class NoMatchingTransition(RoutingError):
    code = "no_matching_transition"


# Concurrency / collaborators --------------------------------------------------


class ConcurrentModification(CountersignError):
    code = "concurrent_modification"
    retriable = True


class VersionConflict(CountersignError):
    """Raised by repositories when a compare-and-swap write loses."""

    code = "version_conflict"
    retriable = True


class CollaboratorError(CountersignError):
    code = "collaborator_error"
    retriable = True


class SnapshotUnavailable(CollaboratorError):
    code = "snapshot_unavailable"


class DuplicateEvent(CountersignError):
    code = "duplicate_event"


__all__ = [
    "CountersignError",
    "ConfigurationError",
    "InvalidDefinition",
    "DefinitionNotFound",
    "RequestError",
    "DuplicateInFlight",
    "NotInProgress",
    "NotAnApprover",
    "NoApplicableWorkflow",
    "InstanceNotFound",
    "NotExpired",
    "NoEligibleApprovers",
    "RoutingError",
    "NoEntryStep",
    "NoMatchingTransition",
    "ConcurrentModification",
    "VersionConflict",
    "CollaboratorError",
    "SnapshotUnavailable",
    "DuplicateEvent",
]
