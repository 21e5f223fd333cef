"""Definition store: registration, lookup and versioning of workflow definitions."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, List, Mapping, Optional

import yaml

from .conditions import ConditionEvaluator
from .errors import DefinitionNotFound, InvalidDefinition, NoApplicableWorkflow
from .models import ValidationResult, WorkflowDefinition, new_id
from .persistence import WorkflowRepository
from .validator import DefinitionValidator

logger = logging.getLogger(__name__)


class DefinitionStore:
    """Validated, immutable workflow definitions backed by a repository.

    Definitions are never edited in place. ``revise`` stores a new version
    under a new id and retires the old one, which stays resolvable for the
    instances pinned to it.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        validator: Optional[DefinitionValidator] = None,
        evaluator: Optional[ConditionEvaluator] = None,
    ) -> None:
        self._repository = repository
        self._validator = validator or DefinitionValidator()
        self._evaluator = evaluator or ConditionEvaluator()

    def validate(self, definition: WorkflowDefinition) -> ValidationResult:
        return self._validator.validate(definition)

    def _require_valid(self, definition: WorkflowDefinition) -> ValidationResult:
        result = self.validate(definition)
        if not result.valid:
            raise InvalidDefinition(
                f"Workflow {definition.code!r} is invalid: {'; '.join(result.errors)}",
                errors=result.errors,
            )
        for warning in result.warnings:
            logger.warning(f"Workflow {definition.code!r}: {warning}")
        return result

    def register(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Validate and persist ``definition``."""
        self._require_valid(definition)
        self._repository.save_definition(definition)
        logger.info(
            f"Registered workflow {definition.code!r} v{definition.version} "
            f"for {definition.entity_type!r} (active={definition.active})"
        )
        return definition

    def get(self, definition_id: str) -> WorkflowDefinition:
        definition = self._repository.get_definition(definition_id)
        if definition is None:
            raise DefinitionNotFound(f"Workflow definition {definition_id} not found")
        return definition

    def list(self, entity_type: Optional[str] = None) -> List[WorkflowDefinition]:
        return self._repository.list_definitions(entity_type)

    def lookup(
        self, entity_type: str, snapshot: Optional[Mapping[str, Any]] = None
    ) -> WorkflowDefinition:
        """Preferred active definition for ``entity_type``.

        Lowest ``priority`` wins; ties go to code then newest version. When a
        snapshot is given, definitions whose activation condition does not
        hold are skipped. Raises ``NoApplicableWorkflow`` when nothing
        applies, which callers treat as auto-approval.
        """
        candidates = sorted(
            (d for d in self._repository.list_definitions(entity_type) if d.active),
            key=lambda d: (d.priority, d.code, -d.version),
        )
        for definition in candidates:
            if snapshot is None or self._evaluator.evaluate(
                definition.activation_condition, snapshot
            ):
                return definition
        raise NoApplicableWorkflow(
            f"No active workflow applies to {entity_type!r}", entity_type=entity_type
        )

    def activate(self, definition_id: str) -> WorkflowDefinition:
        """Publish a definition after re-validating it."""
        definition = self.get(definition_id)
        self._require_valid(definition)
        self._repository.set_definition_active(definition_id, True)
        logger.info(f"Activated workflow {definition.code!r} v{definition.version}")
        return self.get(definition_id)

    def deactivate(self, definition_id: str) -> WorkflowDefinition:
        definition = self.get(definition_id)
        self._repository.set_definition_active(definition_id, False)
        logger.info(f"Deactivated workflow {definition.code!r} v{definition.version}")
        return self.get(definition_id)

    def _latest_version(self, code: str) -> int:
        versions = [d.version for d in self._repository.list_definitions() if d.code == code]
        return max(versions, default=0)

    def revise(self, definition_id: str, **changes: Any) -> WorkflowDefinition:
        """Store a new version of a definition with ``changes`` applied.

        The new version takes over the previous one's active flag; the
        previous version is deactivated but kept.
        """
        current = self.get(definition_id)
        data = current.model_dump()
        data.update(changes)
        data["id"] = new_id()
        data["code"] = current.code
        data["version"] = self._latest_version(current.code) + 1
        revised = WorkflowDefinition.model_validate(data)
        self.register(revised)
        if current.active:
            self._repository.set_definition_active(current.id, False)
        return revised

    def duplicate(
        self, definition_id: str, code: Optional[str] = None, name: Optional[str] = None
    ) -> WorkflowDefinition:
        """Copy a definition under a new code; the copy starts inactive."""
        current = self.get(definition_id)
        code = code or f"{current.code}_copy"
        if any(d.code == code for d in self._repository.list_definitions()):
            raise InvalidDefinition(f"A workflow with code {code!r} already exists")
        data = current.model_dump()
        data.update(
            id=new_id(),
            code=code,
            name=name or f"{current.name} (copy)",
            version=1,
            active=False,
        )
        return self.register(WorkflowDefinition.model_validate(data))


def parse_definitions(data: Any) -> List[WorkflowDefinition]:
    """Build definitions from already-parsed YAML/JSON content.

    Accepts a single mapping, a list of mappings, or ``{"workflows": [...]}``.
    """
    if isinstance(data, Mapping) and "workflows" in data:
        data = data["workflows"]
    if isinstance(data, Mapping):
        data = [data]
    return [WorkflowDefinition.model_validate(item) for item in data or []]


def load_definitions(path: str | Path) -> List[WorkflowDefinition]:
    """Read workflow definitions from a YAML file."""
    with open(path) as f:
        return parse_definitions(yaml.safe_load(f))
