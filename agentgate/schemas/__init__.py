"""AgentGate Schemas Package - Node config, workflow and execution schemas."""

from .node_config import (
    AiProviderType,
    AiProviderConfig,
    AiDataPolicyConfig,
    AiConfig,
    NodeConfig,
    merge_ai_config,
)
from .workflow import (
    WorkflowDefinition,
    WorkflowStep,
    WorkflowBranch,
    StepType,
    ErrorAction,
    ErrorHandler,
    RetryConfig,
    DataRef,
    ParallelWaitFor,
    ApprovalType,
)
from .execution import (
    AuthContext,
    ExecutionContext,
    Initiator,
    InitiatorType,
    InstanceFilters,
    StepStatus,
    SuspendedStep,
    WorkflowError,
    WorkflowErrorCode,
    WorkflowEvent,
    WorkflowEventType,
    WorkflowInstance,
    WorkflowStatus,
    WorkflowStepResult,
)

__all__ = [
    # Node config
    "AiProviderType",
    "AiProviderConfig",
    "AiDataPolicyConfig",
    "AiConfig",
    "NodeConfig",
    "merge_ai_config",
    # Workflow
    "WorkflowDefinition",
    "WorkflowStep",
    "WorkflowBranch",
    "StepType",
    "ErrorAction",
    "ErrorHandler",
    "RetryConfig",
    "DataRef",
    "ParallelWaitFor",
    "ApprovalType",
    # Execution
    "AuthContext",
    "ExecutionContext",
    "Initiator",
    "InitiatorType",
    "InstanceFilters",
    "StepStatus",
    "SuspendedStep",
    "WorkflowError",
    "WorkflowErrorCode",
    "WorkflowEvent",
    "WorkflowEventType",
    "WorkflowInstance",
    "WorkflowStatus",
    "WorkflowStepResult",
]
