"""AgentGate Core Module - Workflow engine, expressions, validation and registries."""

from .executor import (
    WorkflowEngine,
    InstanceNotFoundError,
    InvalidInstanceStateError,
    InvalidApprovalError,
    WorkflowExecutionError,
)
from .expressions import ExpressionSyntaxError, evaluate_condition, evaluate_transform, get_value_by_path
from .registry import (
    WorkflowRegistry,
    WorkflowValidationError,
    WorkflowAlreadyRegisteredError,
    WorkflowNotFoundError,
)
from .step_handlers import StepExecutionContext, StepHandler, StepHandlers
from .tools import ToolRegistry, ToolNotFoundError
from .validation import ValidationIssue, ValidationResult, ValidationSeverity, validate_definition
from .builtin_workflows import BUILTIN_WORKFLOWS, register_builtin_workflows

__all__ = [
    "WorkflowEngine",
    "InstanceNotFoundError",
    "InvalidInstanceStateError",
    "InvalidApprovalError",
    "WorkflowExecutionError",
    "ExpressionSyntaxError",
    "evaluate_condition",
    "evaluate_transform",
    "get_value_by_path",
    "WorkflowRegistry",
    "WorkflowValidationError",
    "WorkflowAlreadyRegisteredError",
    "WorkflowNotFoundError",
    "StepExecutionContext",
    "StepHandler",
    "StepHandlers",
    "ToolRegistry",
    "ToolNotFoundError",
    "ValidationIssue",
    "ValidationResult",
    "ValidationSeverity",
    "validate_definition",
    "BUILTIN_WORKFLOWS",
    "register_builtin_workflows",
]
