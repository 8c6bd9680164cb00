"""
AgentGate Workflow Schema

Workflow definitions: immutable graphs of typed steps. Each step carries a
config variant tagged by its `type`, an input mapping that pulls values
from the workflow input or earlier step outputs, and a `next` pointer that
is either a step id or an ordered list of conditional branches.
"""

from __future__ import annotations
from typing import Dict, List, Any, Optional, Union, Literal, Annotated
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from enum import Enum

from .node_config import AiDataPolicyConfig


# =============================================================================
# Enums
# =============================================================================

class StepType(str, Enum):
    """Kinds of workflow steps."""
    AI_ACTION = "ai_action"
    TOOL_CALL = "tool_call"
    CONDITION = "condition"
    LOOP = "loop"
    PARALLEL = "parallel"
    HUMAN_APPROVAL = "human_approval"
    TRANSFORM = "transform"


class ErrorAction(str, Enum):
    """What to do once a step has exhausted its attempts."""
    FAIL = "fail"          # Fail the instance
    RETRY = "retry"        # Retry with default settings, then fail
    SKIP = "skip"          # Continue with the plain `next` step
    FALLBACK = "fallback"  # Jump to `fallback_step`


class ParallelWaitFor(str, Enum):
    ALL = "all"
    ANY = "any"
    NONE = "none"


class ApprovalType(str, Enum):
    APPROVE_REJECT = "approve_reject"
    CHOICE = "choice"


INPUT_STEP_ID = "input"


# =============================================================================
# Step Building Blocks
# =============================================================================

class DataRef(BaseModel):
    """Reference to workflow input (step_id="input") or a prior step's output."""
    type: Literal["ref"] = "ref"
    step_id: str
    path: str = ""


class WorkflowBranch(BaseModel):
    condition: str = Field(..., min_length=1)
    next_step: str = Field(..., min_length=1)


class ErrorHandler(BaseModel):
    action: ErrorAction = ErrorAction.FAIL
    fallback_step: Optional[str] = None
    message: Optional[str] = None


class RetryConfig(BaseModel):
    max_attempts: int = Field(default=1, ge=1, le=100)
    delay_ms: int = Field(default=1000, ge=0, le=3600000)
    backoff_multiplier: float = Field(default=2.0, ge=1.0, le=10.0)

    def delay_before(self, attempt: int) -> float:
        """Seconds to wait before the given 1-based attempt; the first never waits."""
        if attempt <= 1:
            return 0.0
        return self.delay_ms * (self.backoff_multiplier ** (attempt - 2)) / 1000.0


# =============================================================================
# Step Configs (tagged by `type`)
# =============================================================================

class AiActionStepConfig(BaseModel):
    type: Literal["ai_action"] = "ai_action"
    action_id: str = Field(..., min_length=1)
    input: Dict[str, Any] = Field(default_factory=dict)
    provider_id: Optional[str] = None


class ToolCallStepConfig(BaseModel):
    type: Literal["tool_call"] = "tool_call"
    tool_name: str = Field(..., min_length=1)
    input: Dict[str, Any] = Field(default_factory=dict)


class ConditionStepConfig(BaseModel):
    """Branches are tried in order; the first true condition selects its step."""
    type: Literal["condition"] = "condition"
    branches: List[WorkflowBranch] = Field(..., min_length=1)


class LoopStepConfig(BaseModel):
    """Runs `body` until `condition` is false, never more than `max_iterations` times."""
    type: Literal["loop"] = "loop"
    max_iterations: int = Field(..., ge=1, le=10000)
    condition: Optional[str] = None
    body: List[WorkflowStep] = Field(..., min_length=1)


class ParallelStepConfig(BaseModel):
    type: Literal["parallel"] = "parallel"
    branches: List[List[WorkflowStep]] = Field(..., min_length=1)
    wait_for: ParallelWaitFor = ParallelWaitFor.ALL


class HumanApprovalStepConfig(BaseModel):
    type: Literal["human_approval"] = "human_approval"
    message: str = ""
    approval_type: ApprovalType = ApprovalType.APPROVE_REJECT
    choices: List[str] = Field(default_factory=list)
    timeout: Optional[int] = Field(default=None, ge=1)  # ms, informational


class TransformStepConfig(BaseModel):
    """`$` or `$.path` selects from the input; anything else is evaluated as an expression."""
    type: Literal["transform"] = "transform"
    expression: str = Field(..., min_length=1)


StepConfig = Annotated[
    Union[
        AiActionStepConfig,
        ToolCallStepConfig,
        ConditionStepConfig,
        LoopStepConfig,
        ParallelStepConfig,
        HumanApprovalStepConfig,
        TransformStepConfig,
    ],
    Field(discriminator="type"),
]


# =============================================================================
# Workflow Step
# =============================================================================

class WorkflowStep(BaseModel):
    """
    A node in the step graph.

    `config.type` may be omitted in input data; it is taken from `type`.
    """
    id: str = Field(..., min_length=1)
    type: StepType
    name: Optional[str] = None
    description: Optional[str] = None
    input_mapping: Dict[str, Any] = Field(default_factory=dict)
    config: StepConfig
    next: Optional[Union[str, List[WorkflowBranch]]] = None
    on_error: Optional[ErrorHandler] = None
    retry: Optional[RetryConfig] = None
    timeout: Optional[int] = Field(default=None, ge=1)  # ms, enforced by the handler

    @model_validator(mode="before")
    @classmethod
    def tag_config(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("config"), dict):
            config = data["config"]
            if "type" not in config and data.get("type") is not None:
                step_type = data["type"]
                data = {**data, "config": {**config, "type": getattr(step_type, "value", step_type)}}
        return data

    @model_validator(mode="after")
    def check_config_type(self) -> "WorkflowStep":
        if self.config.type != self.type.value:
            raise ValueError(
                f"Step '{self.id}' has type '{self.type.value}' but config for '{self.config.type}'"
            )
        return self

    @field_validator("input_mapping", mode="before")
    @classmethod
    def parse_refs(cls, v: Any) -> Any:
        if not isinstance(v, dict):
            return v
        return {
            key: DataRef.model_validate(value)
            if isinstance(value, dict) and value.get("type") == "ref"
            else value
            for key, value in v.items()
        }

    @property
    def branches(self) -> List[WorkflowBranch]:
        return self.next if isinstance(self.next, list) else []

    @property
    def next_step_id(self) -> Optional[str]:
        return self.next if isinstance(self.next, str) else None


LoopStepConfig.model_rebuild()
ParallelStepConfig.model_rebuild()
WorkflowStep.model_rebuild()


# =============================================================================
# Workflow Definition
# =============================================================================

class WorkflowDefinition(BaseModel):
    """
    Immutable workflow template, looked up by id.

    `data_policy` declares which payload categories the workflow may need;
    its ai_action steps are still checked individually at dispatch.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=1000)
    version: str = "1.0.0"
    entry_point: str = Field(..., min_length=1)
    steps: List[WorkflowStep] = Field(..., min_length=1)
    input_schema: Dict[str, Any] = Field(default_factory=dict)
    output_schema: Dict[str, Any] = Field(default_factory=dict)
    data_policy: AiDataPolicyConfig = Field(default_factory=AiDataPolicyConfig)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def get_step(self, step_id: str) -> Optional[WorkflowStep]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None
