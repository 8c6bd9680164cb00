"""
AgentGate Execution Schemas

Runtime state of workflow instances: statuses, step results, structured
errors, the per-run execution context, and the event stream types.
"""

from __future__ import annotations
from typing import Dict, List, Any, Optional, ClassVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from .node_config import NodeConfig


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# =============================================================================
# Statuses
# =============================================================================

class WorkflowStatus(str, Enum):
    """Status of a workflow instance."""
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StepStatus(str, Enum):
    """Status of a single step within an instance."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class InitiatorType(str, Enum):
    USER = "user"
    SYSTEM = "system"
    AGENT = "agent"


class WorkflowErrorCode(str, Enum):
    """Instance-level failure codes."""
    STEP_NOT_FOUND = "STEP_NOT_FOUND"
    STEP_FAILED = "STEP_FAILED"
    EXECUTION_ERROR = "EXECUTION_ERROR"


# =============================================================================
# Execution Context
# =============================================================================

@dataclass
class AuthContext:
    """Who is running the workflow. Only the fields the engine needs."""
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    is_authenticated: bool = False
    roles: List[str] = field(default_factory=list)
    agent_type: Optional[str] = None


@dataclass
class Initiator:
    type: InitiatorType
    id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "id": self.id}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Initiator":
        return cls(type=InitiatorType(data["type"]), id=data.get("id"))


@dataclass
class ExecutionContext:
    """
    Everything a run needs besides its input.

    env holds secrets (provider credentials) and is never persisted.
    """
    node_config: NodeConfig = field(default_factory=NodeConfig)
    auth: AuthContext = field(default_factory=AuthContext)
    env: Dict[str, str] = field(default_factory=dict)
    initiator: Optional[Initiator] = None

    def resolve_initiator(self) -> Initiator:
        if self.initiator is not None:
            return self.initiator
        if self.auth.user_id:
            return Initiator(type=InitiatorType.USER, id=self.auth.user_id)
        return Initiator(type=InitiatorType.SYSTEM)


# =============================================================================
# Step Results / Errors
# =============================================================================

@dataclass
class WorkflowStepResult:
    """Outcome of one step. Owned by its instance."""
    step_id: str
    status: StepStatus = StepStatus.PENDING
    output: Any = None
    error: Optional[str] = None
    attempts: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_id": self.step_id,
            "status": self.status.value,
            "output": self.output,
            "error": self.error,
            "attempts": self.attempts,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowStepResult":
        return cls(
            step_id=data["step_id"],
            status=StepStatus(data.get("status", "pending")),
            output=data.get("output"),
            error=data.get("error"),
            attempts=data.get("attempts", 0),
            started_at=_parse_dt(data.get("started_at")),
            completed_at=_parse_dt(data.get("completed_at")),
        )


@dataclass
class WorkflowError:
    """Structured instance-level failure."""
    code: WorkflowErrorCode
    message: str
    step_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_id": self.step_id,
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowError":
        return cls(
            code=WorkflowErrorCode(data["code"]),
            message=data.get("message", ""),
            step_id=data.get("step_id"),
            details=data.get("details"),
        )


@dataclass
class SuspendedStep:
    """Continuation record of a paused instance: where to pick up after approval."""
    step_id: str
    message: str = ""
    approval_type: str = "approve_reject"
    choices: List[str] = field(default_factory=list)
    paused_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_id": self.step_id,
            "message": self.message,
            "approval_type": self.approval_type,
            "choices": list(self.choices),
            "paused_at": _iso(self.paused_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SuspendedStep":
        return cls(
            step_id=data["step_id"],
            message=data.get("message", ""),
            approval_type=data.get("approval_type", "approve_reject"),
            choices=list(data.get("choices") or []),
            paused_at=_parse_dt(data.get("paused_at")) or utcnow(),
        )


# =============================================================================
# Workflow Instance
# =============================================================================

@dataclass
class WorkflowInstance:
    """
    Mutable execution state of one workflow run.

    Only the engine's run loop for this instance writes to it; step results
    are added as steps execute and never removed.
    """
    id: str
    definition_id: str
    initiator: Initiator
    status: WorkflowStatus = WorkflowStatus.PENDING
    input: Dict[str, Any] = field(default_factory=dict)
    current_step_id: Optional[str] = None
    step_results: Dict[str, WorkflowStepResult] = field(default_factory=dict)
    history: List[str] = field(default_factory=list)
    output: Any = None
    error: Optional[WorkflowError] = None
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    suspended: Optional[SuspendedStep] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage and API responses."""
        return {
            "id": self.id,
            "definition_id": self.definition_id,
            "status": self.status.value,
            "input": self.input,
            "current_step_id": self.current_step_id,
            "step_results": {k: r.to_dict() for k, r in self.step_results.items()},
            "history": list(self.history),
            "output": self.output,
            "error": self.error.to_dict() if self.error else None,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "initiator": self.initiator.to_dict(),
            "suspended": self.suspended.to_dict() if self.suspended else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowInstance":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            definition_id=data["definition_id"],
            initiator=Initiator.from_dict(data["initiator"]),
            status=WorkflowStatus(data["status"]),
            input=data.get("input") or {},
            current_step_id=data.get("current_step_id"),
            step_results={
                k: WorkflowStepResult.from_dict(v)
                for k, v in (data.get("step_results") or {}).items()
            },
            history=list(data.get("history") or []),
            output=data.get("output"),
            error=WorkflowError.from_dict(data["error"]) if data.get("error") else None,
            started_at=_parse_dt(data.get("started_at")) or utcnow(),
            completed_at=_parse_dt(data.get("completed_at")),
            suspended=SuspendedStep.from_dict(data["suspended"]) if data.get("suspended") else None,
        )


@dataclass
class InstanceFilters:
    """Filters for listing instances. limit=None means the configured default."""
    definition_id: Optional[str] = None
    status: Optional[List[WorkflowStatus]] = None
    initiator_type: Optional[InitiatorType] = None
    initiator_id: Optional[str] = None
    started_after: Optional[datetime] = None
    started_before: Optional[datetime] = None
    limit: Optional[int] = None
    offset: int = 0

    def __post_init__(self):
        # Naive bounds are read as UTC; started_at is always aware
        self.started_after = _as_utc(self.started_after)
        self.started_before = _as_utc(self.started_before)

    def matches(self, instance: WorkflowInstance) -> bool:
        if self.definition_id and instance.definition_id != self.definition_id:
            return False
        if self.status and instance.status not in self.status:
            return False
        if self.initiator_type and instance.initiator.type != self.initiator_type:
            return False
        if self.initiator_id and instance.initiator.id != self.initiator_id:
            return False
        if self.started_after and instance.started_at < self.started_after:
            return False
        if self.started_before and instance.started_at > self.started_before:
            return False
        return True

    def apply(self, instances: List[WorkflowInstance], default_limit: int = 50) -> List[WorkflowInstance]:
        """Filter, then page with offset/limit."""
        matched = [i for i in instances if self.matches(i)]
        limit = self.limit if self.limit is not None else default_limit
        return matched[self.offset:self.offset + limit]


# =============================================================================
# Workflow Events
# =============================================================================

class WorkflowEventType(str, Enum):
    STARTED = "started"
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    APPROVAL_REQUIRED = "approval_required"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class WorkflowEvent:
    """Base class for workflow events."""
    type: ClassVar[WorkflowEventType]
    instance_id: str
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class WorkflowStartedEvent(WorkflowEvent):
    """Emitted when an instance is created."""
    type: ClassVar[WorkflowEventType] = WorkflowEventType.STARTED
    definition_id: str = ""
    input: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StepStartedEvent(WorkflowEvent):
    type: ClassVar[WorkflowEventType] = WorkflowEventType.STEP_STARTED
    step_id: str = ""
    step_type: str = ""


@dataclass
class StepCompletedEvent(WorkflowEvent):
    type: ClassVar[WorkflowEventType] = WorkflowEventType.STEP_COMPLETED
    step_id: str = ""
    output: Any = None
    attempts: int = 0


@dataclass
class StepFailedEvent(WorkflowEvent):
    type: ClassVar[WorkflowEventType] = WorkflowEventType.STEP_FAILED
    step_id: str = ""
    error: str = ""
    attempts: int = 0


@dataclass
class ApprovalRequiredEvent(WorkflowEvent):
    """Emitted when a human_approval step pauses the instance."""
    type: ClassVar[WorkflowEventType] = WorkflowEventType.APPROVAL_REQUIRED
    step_id: str = ""
    message: str = ""
    approval_type: str = "approve_reject"
    choices: List[str] = field(default_factory=list)


@dataclass
class WorkflowCompletedEvent(WorkflowEvent):
    type: ClassVar[WorkflowEventType] = WorkflowEventType.COMPLETED
    output: Any = None


@dataclass
class WorkflowFailedEvent(WorkflowEvent):
    type: ClassVar[WorkflowEventType] = WorkflowEventType.FAILED
    error: Optional[WorkflowError] = None


@dataclass
class WorkflowCancelledEvent(WorkflowEvent):
    type: ClassVar[WorkflowEventType] = WorkflowEventType.CANCELLED
