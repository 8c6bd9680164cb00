"""
AgentGate Workflow Validation

Structural checks run when a workflow definition is registered: references
between steps, per-type configuration, expression syntax, and graph shape.
"""

from __future__ import annotations
from typing import Dict, List, Set, Optional
from dataclasses import dataclass, field
from collections import deque
from enum import Enum

from .expressions import ExpressionSyntaxError, parse_expression
from ..schemas.workflow import (
    WorkflowDefinition,
    WorkflowStep,
    ErrorAction,
    ConditionStepConfig,
    LoopStepConfig,
    ParallelStepConfig,
    HumanApprovalStepConfig,
    TransformStepConfig,
    ApprovalType,
    DataRef,
)


# =============================================================================
# Validation Results
# =============================================================================

class ValidationSeverity(str, Enum):
    """Severity of validation issues."""
    BLOCKING = "blocking"
    WARNING = "warning"


@dataclass
class ValidationIssue:
    """A single validation issue."""
    code: str
    severity: ValidationSeverity
    message: str
    steps: Optional[List[str]] = None

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


@dataclass
class ValidationResult:
    """Result of workflow validation."""
    valid: bool
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)


def _error(code: str, message: str, steps: Optional[List[str]] = None) -> ValidationIssue:
    return ValidationIssue(code=code, severity=ValidationSeverity.BLOCKING, message=message, steps=steps)


def _warning(code: str, message: str, steps: Optional[List[str]] = None) -> ValidationIssue:
    return ValidationIssue(code=code, severity=ValidationSeverity.WARNING, message=message, steps=steps)


# =============================================================================
# Validator
# =============================================================================

class WorkflowValidator:
    """
    Validates workflow definitions.

    Errors block registration; warnings (unreachable steps, cycles) are
    reported but allowed, since loops back through the graph are legal.
    """

    def validate(self, definition: WorkflowDefinition) -> ValidationResult:
        errors: List[ValidationIssue] = []
        warnings: List[ValidationIssue] = []

        if not definition.id.strip():
            errors.append(_error("E_MISSING_ID", "Workflow id is required"))
        if not definition.name.strip():
            errors.append(_error("E_MISSING_NAME", "Workflow name is required"))
        if not definition.steps:
            errors.append(_error("E_NO_STEPS", "Workflow must declare at least one step"))

        step_ids: Set[str] = set()
        for step in definition.steps:
            if step.id in step_ids:
                errors.append(_error("E_DUPLICATE_STEP", f"Duplicate step id: {step.id}", [step.id]))
            step_ids.add(step.id)

        # Nested loop/parallel steps share the id namespace
        nested_ids: Set[str] = set()
        for step in definition.steps:
            for inner in self._nested_steps(step):
                if inner.id in step_ids or inner.id in nested_ids:
                    errors.append(_error(
                        "E_DUPLICATE_STEP", f"Duplicate step id: {inner.id}", [step.id, inner.id]
                    ))
                nested_ids.add(inner.id)

        if definition.entry_point not in step_ids:
            errors.append(_error(
                "E_MISSING_ENTRY",
                f"Entry point '{definition.entry_point}' does not match any step",
            ))

        for step in definition.steps:
            for target in self._targets(step):
                if target not in step_ids:
                    errors.append(_error(
                        "E_MISSING_REF",
                        f"Step '{step.id}' references unknown step '{target}'",
                        [step.id],
                    ))
            errors.extend(self._check_step(step, nested=False))

        if not errors:
            adjacency = {s.id: self._targets(s) for s in definition.steps}

            cycle = self._detect_cycle(adjacency)
            if cycle:
                warnings.append(_warning(
                    "W_CYCLE", f"Cycle in step graph: {' -> '.join(cycle)}", cycle
                ))

            reachable = self._find_reachable(definition.entry_point, adjacency)
            for step in definition.steps:
                if step.id not in reachable:
                    warnings.append(_warning(
                        "W_ORPHAN", f"Step {step.id} is unreachable from the entry point", [step.id]
                    ))

        return ValidationResult(valid=not errors, errors=errors, warnings=warnings)

    # -------------------------------------------------------------------------

    def _nested_steps(self, step: WorkflowStep) -> List[WorkflowStep]:
        config = step.config
        if isinstance(config, LoopStepConfig):
            inner = list(config.body)
        elif isinstance(config, ParallelStepConfig):
            inner = [s for branch in config.branches for s in branch]
        else:
            return []
        return inner + [deep for s in inner for deep in self._nested_steps(s)]

    def _targets(self, step: WorkflowStep) -> List[str]:
        """Step ids this step can hand control to."""
        targets: List[str] = []
        if step.next_step_id:
            targets.append(step.next_step_id)
        targets.extend(b.next_step for b in step.branches)
        if isinstance(step.config, ConditionStepConfig):
            targets.extend(b.next_step for b in step.config.branches)
        if step.on_error and step.on_error.action == ErrorAction.FALLBACK and step.on_error.fallback_step:
            targets.append(step.on_error.fallback_step)
        return targets

    def _check_expression(self, step_id: str, expression: Optional[str]) -> List[ValidationIssue]:
        if not expression:
            return []
        try:
            parse_expression(expression)
        except ExpressionSyntaxError as e:
            return [_error("E_BAD_EXPRESSION", f"Step '{step_id}': {e}", [step_id])]
        return []

    def _check_step(self, step: WorkflowStep, nested: bool) -> List[ValidationIssue]:
        issues: List[ValidationIssue] = []
        config = step.config

        for key, value in step.input_mapping.items():
            if isinstance(value, DataRef) and not value.step_id:
                issues.append(_error("E_BAD_REF", f"Step '{step.id}' input '{key}' has no step_id", [step.id]))

        if step.on_error and step.on_error.action == ErrorAction.FALLBACK and not step.on_error.fallback_step:
            issues.append(_error(
                "E_MISSING_FALLBACK", f"Step '{step.id}' uses fallback without fallback_step", [step.id]
            ))

        for branch in step.branches:
            issues.extend(self._check_expression(step.id, branch.condition))

        if isinstance(config, ConditionStepConfig):
            for branch in config.branches:
                issues.extend(self._check_expression(step.id, branch.condition))

        elif isinstance(config, LoopStepConfig):
            issues.extend(self._check_expression(step.id, config.condition))
            for inner in config.body:
                issues.extend(self._check_step(inner, nested=True))

        elif isinstance(config, ParallelStepConfig):
            for index, branch in enumerate(config.branches):
                if not branch:
                    issues.append(_error(
                        "E_EMPTY_BRANCH", f"Step '{step.id}' parallel branch {index} is empty", [step.id]
                    ))
                for inner in branch:
                    issues.extend(self._check_step(inner, nested=True))

        elif isinstance(config, TransformStepConfig):
            if not config.expression.strip().startswith("$"):
                issues.extend(self._check_expression(step.id, config.expression))

        elif isinstance(config, HumanApprovalStepConfig):
            if nested:
                issues.append(_error(
                    "E_NESTED_APPROVAL",
                    f"Step '{step.id}': human_approval cannot run inside a loop or parallel branch",
                    [step.id],
                ))
            if config.approval_type == ApprovalType.CHOICE and not config.choices:
                issues.append(_error(
                    "E_MISSING_CHOICES", f"Step '{step.id}' uses choice approval without choices", [step.id]
                ))

        return issues

    def _detect_cycle(self, adjacency: Dict[str, List[str]]) -> Optional[List[str]]:
        """Detect cycles using DFS."""
        WHITE, GRAY, BLACK = 0, 1, 2
        color = {uid: WHITE for uid in adjacency}
        parent: Dict[str, Optional[str]] = {uid: None for uid in adjacency}

        def dfs(node: str) -> Optional[List[str]]:
            color[node] = GRAY
            for neighbor in adjacency.get(node, []):
                if color.get(neighbor) == GRAY:
                    cycle = [neighbor, node]
                    current = node
                    while parent[current] != neighbor and parent[current] is not None:
                        current = parent[current]
                        cycle.append(current)
                    return cycle
                elif color.get(neighbor) == WHITE:
                    parent[neighbor] = node
                    result = dfs(neighbor)
                    if result:
                        return result
            color[node] = BLACK
            return None

        for uid in adjacency:
            if color[uid] == WHITE:
                result = dfs(uid)
                if result:
                    return result
        return None

    def _find_reachable(self, start: str, adjacency: Dict[str, List[str]]) -> Set[str]:
        """Find all steps reachable from start using BFS."""
        visited = {start}
        queue = deque([start])
        while queue:
            node = queue.popleft()
            for neighbor in adjacency.get(node, []):
                if neighbor not in visited:
                    visited.add(neighbor)
                    queue.append(neighbor)
        return visited


# Singleton instance
workflow_validator = WorkflowValidator()


def validate_definition(definition: WorkflowDefinition) -> ValidationResult:
    return workflow_validator.validate(definition)
