"""
AgentGate Workflow Registry

Holds validated workflow definitions by id. Definitions are validated on
registration and handed out as copies, so callers can never mutate the
template an instance runs against.
"""

from __future__ import annotations
from typing import Dict, List, Optional
import logging

from .validation import ValidationIssue, validate_definition
from ..schemas.workflow import WorkflowDefinition


logger = logging.getLogger(__name__)


class WorkflowValidationError(ValueError):
    """A definition failed validation; `issues` lists every error found."""

    def __init__(self, definition_id: str, issues: List[ValidationIssue]):
        self.definition_id = definition_id
        self.issues = issues
        summary = "; ".join(str(i) for i in issues)
        super().__init__(f'Invalid workflow definition "{definition_id}": {summary}')


class WorkflowAlreadyRegisteredError(ValueError):
    def __init__(self, definition_id: str):
        self.definition_id = definition_id
        super().__init__(f'Workflow "{definition_id}" is already registered')


class WorkflowNotFoundError(KeyError):
    def __init__(self, definition_id: str):
        self.definition_id = definition_id
        super().__init__(definition_id)

    def __str__(self) -> str:
        return f'Workflow "{self.definition_id}" not found'


class WorkflowRegistry:
    """Registry of workflow definitions keyed by id."""

    def __init__(self, definitions: Optional[List[WorkflowDefinition]] = None):
        self._definitions: Dict[str, WorkflowDefinition] = {}
        for definition in definitions or []:
            self.register(definition)

    def register(self, definition: WorkflowDefinition, replace: bool = False) -> WorkflowDefinition:
        """
        Validate and store a definition.

        Raises:
            WorkflowValidationError: on any blocking validation issue
            WorkflowAlreadyRegisteredError: on a duplicate id unless `replace`
        """
        result = validate_definition(definition)
        if not result.valid:
            raise WorkflowValidationError(definition.id, result.errors)
        for warning in result.warnings:
            logger.warning(f"Workflow {definition.id}: {warning}")

        if definition.id in self._definitions and not replace:
            raise WorkflowAlreadyRegisteredError(definition.id)

        self._definitions[definition.id] = definition.model_copy(deep=True)
        logger.info(f"Registered workflow {definition.id} ({len(definition.steps)} steps)")
        return definition

    def has(self, definition_id: str) -> bool:
        return definition_id in self._definitions

    def get_definition(self, definition_id: str) -> WorkflowDefinition:
        definition = self._definitions.get(definition_id)
        if definition is None:
            raise WorkflowNotFoundError(definition_id)
        return definition.model_copy(deep=True)

    def list_definitions(self) -> List[WorkflowDefinition]:
        return [d.model_copy(deep=True) for d in self._definitions.values()]

    def unregister(self, definition_id: str) -> bool:
        return self._definitions.pop(definition_id, None) is not None

    def __len__(self) -> int:
        return len(self._definitions)
