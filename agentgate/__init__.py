"""
AgentGate - Policy-gated AI workflow engine

AgentGate runs multi-step AI workflows for a social platform node:
- Sequencing AI actions, tool calls, conditions, loops and parallel branches
- Pausing for human approval and resuming
- Enforcing the node's data disclosure policy on every AI provider call

AgentGate does NOT:
- Render UI
- Implement the social-network domain operations it calls as tools
"""

__version__ = "0.1.0"

from .core.executor import WorkflowEngine
from .core.registry import WorkflowRegistry
from .core.tools import ToolRegistry
from .actions.registry import AiActionRegistry, dispatch_ai_action
from .providers.registry import AiProviderRegistry, build_ai_provider_registry
from .policy.data_policy import DataPolicyViolation
from .schemas.execution import ExecutionContext, WorkflowInstance, WorkflowStatus
from .schemas.node_config import NodeConfig
from .schemas.workflow import WorkflowDefinition, WorkflowStep, StepType
from .runtime import AgentRuntime, build_runtime

__all__ = [
    # Engine
    "WorkflowEngine",
    "WorkflowRegistry",
    "ToolRegistry",
    # AI
    "AiActionRegistry",
    "dispatch_ai_action",
    "AiProviderRegistry",
    "build_ai_provider_registry",
    "DataPolicyViolation",
    # Execution
    "ExecutionContext",
    "WorkflowInstance",
    "WorkflowStatus",
    # Schemas
    "NodeConfig",
    "WorkflowDefinition",
    "WorkflowStep",
    "StepType",
    # Runtime
    "AgentRuntime",
    "build_runtime",
]
