"""
AgentGate Step Handlers

Handlers for the leaf step types: ai_action, tool_call and transform.
Control-flow steps (condition, loop, parallel, human_approval) need the
run loop and live on the engine.

Every handler has the same shape: (step, resolved_input, step_context)
returning the step's output.
"""

from __future__ import annotations
from typing import Dict, Any, Optional, Callable, Awaitable
from dataclasses import dataclass
import logging

from async_timeout import timeout as async_timeout

from .expressions import evaluate_transform
from .tools import ToolRegistry
from ..actions.registry import AiActionContext, AiActionRegistry, dispatch_ai_action
from ..providers.registry import AiProviderRegistry
from ..schemas.execution import ExecutionContext, WorkflowInstance
from ..schemas.workflow import (
    WorkflowDefinition,
    WorkflowStep,
    StepType,
    AiActionStepConfig,
    ToolCallStepConfig,
    TransformStepConfig,
)


logger = logging.getLogger(__name__)


# =============================================================================
# Step Execution Context
# =============================================================================

@dataclass
class StepExecutionContext:
    """What a handler may see of the run it belongs to."""
    instance: WorkflowInstance
    definition: WorkflowDefinition
    context: ExecutionContext


StepHandler = Callable[[WorkflowStep, Dict[str, Any], StepExecutionContext], Awaitable[Any]]


class StepConfigError(TypeError):
    """A handler received a step whose config is for another type."""


def _expect(step: WorkflowStep, config_type: type):
    if not isinstance(step.config, config_type):
        raise StepConfigError(f"Step {step.id} has no {config_type.__name__}")
    return step.config


# =============================================================================
# Step Handlers
# =============================================================================

class StepHandlers:
    """
    Leaf step handlers.

    AI actions always go through dispatch_ai_action, so enablement,
    allow-listing and data policy are checked on every step.
    """

    def __init__(
        self,
        actions: AiActionRegistry,
        tools: Optional[ToolRegistry] = None,
        providers: Optional[AiProviderRegistry] = None,
        audit: Optional[Callable[[Any], Any]] = None,
    ):
        self._actions = actions
        self._tools = tools or ToolRegistry()
        self._providers = providers
        self._audit = audit

    def as_map(self) -> Dict[StepType, StepHandler]:
        return {
            StepType.AI_ACTION: self.handle_ai_action,
            StepType.TOOL_CALL: self.handle_tool_call,
            StepType.TRANSFORM: self.handle_transform,
        }

    async def handle_ai_action(
        self,
        step: WorkflowStep,
        input: Dict[str, Any],
        sctx: StepExecutionContext,
    ) -> Any:
        config = _expect(step, AiActionStepConfig)
        merged = {**config.input, **input}
        action_context = AiActionContext(
            node_config=sctx.context.node_config,
            auth=sctx.context.auth,
            env=sctx.context.env,
            providers=self._providers,
            audit=self._audit,
            provider_id=config.provider_id,
            instance_id=sctx.instance.id,
            step_id=step.id,
            timeout_ms=step.timeout,
        )
        return await dispatch_ai_action(self._actions, config.action_id, action_context, merged)

    async def handle_tool_call(
        self,
        step: WorkflowStep,
        input: Dict[str, Any],
        sctx: StepExecutionContext,
    ) -> Any:
        config = _expect(step, ToolCallStepConfig)
        merged = {**config.input, **input}
        logger.info(f"Executing tool {config.tool_name} for {sctx.instance.id}")
        # timeout=None means no limit
        async with async_timeout(step.timeout / 1000.0 if step.timeout else None):
            return await self._tools.invoke(config.tool_name, sctx.context.auth, merged)

    async def handle_transform(
        self,
        step: WorkflowStep,
        input: Dict[str, Any],
        sctx: StepExecutionContext,
    ) -> Any:
        config = _expect(step, TransformStepConfig)
        return evaluate_transform(config.expression, input)
