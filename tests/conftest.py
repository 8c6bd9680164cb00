"""
Shared fixtures for AgentGate tests.
"""

from typing import Any, Dict, List

import pytest

from agentgate.actions import AiAction, AiActionDefinition, AiActionRegistry, register_builtin_actions
from agentgate.audit import AiAuditLog
from agentgate.config import AgentGateConfig, ExecutionLimits, PersistenceConfig, reset_config
from agentgate.core import ToolRegistry, WorkflowEngine, WorkflowRegistry
from agentgate.persistence import InMemoryInstanceStore
from agentgate.schemas import AiConfig, ExecutionContext, NodeConfig, WorkflowDefinition


ALL_BUILTIN_ACTIONS = [
    "ai.chat",
    "ai.summary",
    "ai.tag-suggest",
    "ai.translation",
    "ai.dm-moderator",
    "ai.content-moderator",
]


@pytest.fixture(autouse=True)
def clean_config():
    """Each test starts from a fresh settings singleton."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def settings() -> AgentGateConfig:
    return AgentGateConfig(
        limits=ExecutionLimits(retry_delay_ms=10, retry_backoff_multiplier=2.0, on_error_retry_attempts=3),
        persistence=PersistenceConfig(),
        resume_continues=True,
    )


def make_node_config(**ai: Any) -> NodeConfig:
    base: Dict[str, Any] = {
        "enabled": True,
        "enabled_actions": list(ALL_BUILTIN_ACTIONS),
        "data_policy": {
            "send_public_posts": True,
            "send_community_posts": True,
            "send_dm": True,
            "send_profile": False,
        },
    }
    base.update(ai)
    return NodeConfig(ai=AiConfig.model_validate(base))


@pytest.fixture
def node_config() -> NodeConfig:
    return make_node_config()


@pytest.fixture
def context(node_config) -> ExecutionContext:
    return ExecutionContext(node_config=node_config)


@pytest.fixture
def actions() -> AiActionRegistry:
    registry = AiActionRegistry()
    register_builtin_actions(registry)
    return registry


@pytest.fixture
def tools() -> ToolRegistry:
    return ToolRegistry()


@pytest.fixture
def workflows() -> WorkflowRegistry:
    return WorkflowRegistry()


@pytest.fixture
def store() -> InMemoryInstanceStore:
    return InMemoryInstanceStore()


@pytest.fixture
def audit() -> AiAuditLog:
    return AiAuditLog()


@pytest.fixture
def engine(workflows, actions, tools, store, settings, audit) -> WorkflowEngine:
    return WorkflowEngine(
        workflows=workflows,
        actions=actions,
        tools=tools,
        audit=audit,
        store=store,
        settings=settings,
    )


def register_action(
    registry: AiActionRegistry,
    action_id: str,
    handler,
    data_policy: Dict[str, Any] = None,
) -> None:
    registry.register(AiAction(
        definition=AiActionDefinition(
            id=action_id,
            provider_capabilities=["chat"],
            data_policy=data_policy or {},
        ),
        handler=handler,
    ))


def definition(steps: List[Dict[str, Any]], entry_point: str = None, **extra: Any) -> WorkflowDefinition:
    return WorkflowDefinition.model_validate({
        "id": extra.pop("id", "wf.test"),
        "name": extra.pop("name", "Test Workflow"),
        "entry_point": entry_point or steps[0]["id"],
        "steps": steps,
        **extra,
    })


def ref(step_id: str, path: str = "") -> Dict[str, Any]:
    return {"type": "ref", "step_id": step_id, "path": path}


def tool_step(step_id: str, tool_name: str, next_step: str = None, **extra: Any) -> Dict[str, Any]:
    step = {"id": step_id, "type": "tool_call", "config": {"tool_name": tool_name}, **extra}
    if next_step:
        step["next"] = next_step
    return step


def transform_step(
    step_id: str,
    mapping: Dict[str, Any] = None,
    expression: str = "$",
    next_step: str = None,
) -> Dict[str, Any]:
    step = {
        "id": step_id,
        "type": "transform",
        "config": {"expression": expression},
        "input_mapping": mapping or {},
    }
    if next_step:
        step["next"] = next_step
    return step


async def run(engine, workflows, wf, input=None, context=None):
    """Register, start and wait for a workflow run to settle."""
    workflows.register(wf, replace=True)
    started = await engine.start(wf.id, input or {}, context)
    return await engine.wait(started.id, timeout=5)
