"""
AgentGate API Routes

FastAPI endpoints over one node's runtime:
- Action and workflow catalog
- Start / inspect / list instances
- Resume, approve and cancel
"""

from __future__ import annotations
from typing import Dict, Any, Optional, List
from datetime import datetime
from fastapi import APIRouter, HTTPException, Depends, Query, Request
from pydantic import BaseModel, Field

from .. import __version__
from ..actions.registry import AiActionError
from ..core.executor import InstanceNotFoundError, InvalidApprovalError, InvalidInstanceStateError
from ..core.registry import WorkflowNotFoundError
from ..policy.data_policy import DataPolicyViolation
from ..runtime import AgentRuntime
from ..schemas.execution import (
    AuthContext,
    ExecutionContext,
    Initiator,
    InitiatorType,
    InstanceFilters,
    WorkflowStatus,
    utcnow,
)


# =============================================================================
# API Models
# =============================================================================

class AuthPayload(BaseModel):
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    is_authenticated: bool = False
    roles: List[str] = Field(default_factory=list)
    agent_type: Optional[str] = None


class StartWorkflowRequest(BaseModel):
    """Request to start a workflow instance."""
    input: Dict[str, Any] = Field(default_factory=dict, description="Workflow input")
    auth: Optional[AuthPayload] = Field(default=None, description="Caller identity")
    initiator_type: Optional[InitiatorType] = None
    initiator_id: Optional[str] = None

    model_config = {
        "json_schema_extra": {
            "example": {
                "input": {"content": "Check out my new post!"},
                "auth": {"user_id": "user_abc", "is_authenticated": True},
            }
        }
    }


class ResumeRequest(BaseModel):
    approval_input: Optional[Dict[str, Any]] = None
    continue_execution: Optional[bool] = None


class ApprovalRequest(BaseModel):
    step_id: str = Field(..., min_length=1)
    approved: bool
    choice: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    timestamp: str
    ai_enabled: bool
    providers: List[Dict[str, Any]] = Field(default_factory=list)


# =============================================================================
# Router
# =============================================================================

router = APIRouter(prefix="/api/v1", tags=["AgentGate"])


def get_runtime(request: Request) -> AgentRuntime:
    """The runtime attached to the app at startup."""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Runtime not initialized")
    return runtime


def _http_error(error: Exception) -> HTTPException:
    if isinstance(error, (WorkflowNotFoundError, InstanceNotFoundError)):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, InvalidInstanceStateError):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, DataPolicyViolation):
        return HTTPException(status_code=403, detail=error.to_dict())
    if isinstance(error, AiActionError):
        return HTTPException(status_code=403, detail={"code": getattr(error, "code", None), "message": str(error)})
    if isinstance(error, (InvalidApprovalError, ValueError)):
        return HTTPException(status_code=422, detail=str(error))
    return HTTPException(status_code=500, detail=str(error))


# =============================================================================
# Endpoints
# =============================================================================

@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health Check",
)
async def health_check(runtime: AgentRuntime = Depends(get_runtime)):
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        version=__version__,
        timestamp=utcnow().isoformat(),
        ai_enabled=runtime.node_config.ai.enabled,
        providers=[p.describe() for p in runtime.providers.list()],
    )


@router.get("/actions", summary="List AI Actions")
async def list_actions(runtime: AgentRuntime = Depends(get_runtime)):
    """Registered AI actions and whether this node enables them."""
    enabled = set(runtime.node_config.ai.enabled_actions) if runtime.node_config.ai.enabled else set()
    return [
        {**definition.to_dict(), "enabled": definition.id in enabled}
        for definition in runtime.actions.list_actions()
    ]


@router.get("/workflows", summary="List Workflows")
async def list_workflows(runtime: AgentRuntime = Depends(get_runtime)):
    return [
        {
            "id": d.id,
            "name": d.name,
            "description": d.description,
            "version": d.version,
            "steps": len(d.steps),
        }
        for d in runtime.workflows.list_definitions()
    ]


@router.get("/workflows/{definition_id}", summary="Get Workflow")
async def get_workflow(definition_id: str, runtime: AgentRuntime = Depends(get_runtime)):
    try:
        definition = runtime.workflows.get_definition(definition_id)
    except WorkflowNotFoundError as e:
        raise _http_error(e)
    return definition.model_dump(mode="json")


@router.post(
    "/workflows/{definition_id}/start",
    status_code=202,
    summary="Start Workflow",
    description="Start a workflow instance. Returns immediately; poll the instance for progress.",
)
async def start_workflow(
    definition_id: str,
    request: StartWorkflowRequest,
    runtime: AgentRuntime = Depends(get_runtime),
):
    auth = AuthContext(**request.auth.model_dump()) if request.auth else AuthContext()
    initiator = None
    if request.initiator_type is not None:
        initiator = Initiator(type=request.initiator_type, id=request.initiator_id)
    context = ExecutionContext(
        node_config=runtime.node_config,
        auth=auth,
        env=runtime.env,
        initiator=initiator,
    )
    try:
        instance = await runtime.engine.start(definition_id, request.input, context)
    except WorkflowNotFoundError as e:
        raise _http_error(e)
    return instance.to_dict()


@router.get("/instances", summary="List Instances")
async def list_instances(
    definition_id: Optional[str] = None,
    status: Optional[List[WorkflowStatus]] = Query(default=None),
    initiator_type: Optional[InitiatorType] = None,
    initiator_id: Optional[str] = None,
    started_after: Optional[datetime] = None,
    started_before: Optional[datetime] = None,
    limit: Optional[int] = Query(default=None, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    runtime: AgentRuntime = Depends(get_runtime),
):
    filters = InstanceFilters(
        definition_id=definition_id,
        status=status,
        initiator_type=initiator_type,
        initiator_id=initiator_id,
        started_after=started_after,
        started_before=started_before,
        limit=limit,
        offset=offset,
    )
    return [i.to_dict() for i in await runtime.engine.list_instances(filters)]


@router.get("/instances/{instance_id}", summary="Get Instance")
async def get_instance(instance_id: str, runtime: AgentRuntime = Depends(get_runtime)):
    instance = await runtime.engine.get_instance(instance_id)
    if instance is None:
        raise HTTPException(status_code=404, detail="Instance not found")
    return instance.to_dict()


@router.post("/instances/{instance_id}/resume", summary="Resume Instance")
async def resume_instance(
    instance_id: str,
    request: ResumeRequest,
    runtime: AgentRuntime = Depends(get_runtime),
):
    try:
        instance = await runtime.engine.resume(
            instance_id,
            request.approval_input,
            continue_execution=request.continue_execution,
        )
    except Exception as e:
        raise _http_error(e)
    return instance.to_dict()


@router.post("/instances/{instance_id}/approval", summary="Submit Approval")
async def submit_approval(
    instance_id: str,
    request: ApprovalRequest,
    runtime: AgentRuntime = Depends(get_runtime),
):
    try:
        instance = await runtime.engine.submit_approval(
            instance_id, request.step_id, request.approved, request.choice,
        )
    except Exception as e:
        raise _http_error(e)
    return instance.to_dict()


@router.post("/instances/{instance_id}/cancel", summary="Cancel Instance")
async def cancel_instance(instance_id: str, runtime: AgentRuntime = Depends(get_runtime)):
    try:
        instance = await runtime.engine.cancel(instance_id)
    except Exception as e:
        raise _http_error(e)
    return instance.to_dict()
