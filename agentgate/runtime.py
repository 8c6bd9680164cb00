"""
AgentGate Runtime

Composition root: builds the registries, the provider set and the engine
for one node, and wires them together explicitly.
"""

from __future__ import annotations
from typing import Any, Callable, Dict, Mapping, Optional
from dataclasses import dataclass
import logging
import os

from .actions import AiActionRegistry, ActionNotAllowedError, assert_actions_in_allowlist, register_builtin_actions
from .audit import AiAuditLog
from .config import AgentGateConfig, get_config, load_node_config
from .core.builtin_workflows import register_builtin_workflows
from .core.executor import WorkflowEngine
from .core.registry import WorkflowRegistry
from .core.tools import ToolRegistry
from .persistence import InstanceStore, get_instance_store
from .providers import AiProviderRegistry, build_ai_provider_registry
from .schemas.node_config import NodeConfig


logger = logging.getLogger(__name__)


@dataclass
class AgentRuntime:
    """Everything one node needs to run AI actions and workflows."""
    node_config: NodeConfig
    env: Dict[str, str]
    providers: AiProviderRegistry
    actions: AiActionRegistry
    tools: ToolRegistry
    workflows: WorkflowRegistry
    audit: AiAuditLog
    engine: WorkflowEngine


def build_runtime(
    node_config: Optional[NodeConfig] = None,
    env: Optional[Mapping[str, str]] = None,
    store: Optional[InstanceStore] = None,
    settings: Optional[AgentGateConfig] = None,
    tools: Optional[Dict[str, Callable[..., Any]]] = None,
) -> AgentRuntime:
    """
    Build a runtime.

    Args:
        node_config: Node configuration (default: AGENTGATE_NODE_CONFIG file)
        env: Secret lookup for provider credentials (default: os.environ)
        store: Instance store (default: from AGENTGATE_PERSISTENCE_BACKEND)
        settings: Process settings (default: get_config())
        tools: Tool functions for tool_call steps, keyed by name

    Raises:
        ProviderConfigurationError: a declared provider cannot be resolved
    """
    settings = settings or get_config()
    node_config = node_config or load_node_config(settings.node_config_path)
    env = dict(os.environ if env is None else env)

    providers = build_ai_provider_registry(node_config.ai, env)
    audit = AiAuditLog()

    actions = AiActionRegistry()
    register_builtin_actions(actions)

    try:
        assert_actions_in_allowlist(
            node_config.ai.enabled_actions,
            [a.id for a in actions.list_actions()],
        )
    except ActionNotAllowedError as e:
        logger.warning(f"enabled_actions lists unregistered actions: {', '.join(e.action_ids)}")

    tool_registry = ToolRegistry()
    for name, fn in (tools or {}).items():
        tool_registry.register(name, fn)

    workflows = WorkflowRegistry()
    register_builtin_workflows(workflows)

    engine = WorkflowEngine(
        workflows=workflows,
        actions=actions,
        tools=tool_registry,
        providers=providers,
        audit=audit,
        store=store if store is not None else get_instance_store(settings),
        settings=settings,
    )

    logger.info(
        f"AgentGate runtime ready: ai_enabled={node_config.ai.enabled} "
        f"providers={[p.id for p in providers.list()]} actions={len(actions.list_actions())} "
        f"workflows={len(workflows)} tools={tool_registry.names()}"
    )
    return AgentRuntime(
        node_config=node_config,
        env=env,
        providers=providers,
        actions=actions,
        tools=tool_registry,
        workflows=workflows,
        audit=audit,
        engine=engine,
    )
