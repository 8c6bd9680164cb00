"""
AgentGate Action Registry

Catalog of named AI actions and the policy-enforced dispatch entry point.

An action is registered once per id. Dispatch checks, in order:
1. the AI feature is enabled for the node
2. the action id is on the node's enabled-actions list
3. the action's declared data policy fits under the node policy
and only then runs the handler.
"""

from __future__ import annotations
from typing import Dict, List, Any, Optional, Callable, Awaitable, Iterable
from dataclasses import dataclass, field, replace
import copy
import logging

from ..policy.data_policy import EffectiveAiDataPolicy, enforce_policy, normalize_policy
from ..providers.registry import AiProviderRegistry
from ..schemas.execution import AuthContext
from ..schemas.node_config import NodeConfig


logger = logging.getLogger(__name__)


PROVIDER_CAPABILITIES = frozenset({"chat", "completion", "embedding"})


# =============================================================================
# Errors
# =============================================================================

class AiActionError(Exception):
    """Base class for action registration and dispatch errors."""
    code = "AI_ACTION_ERROR"


class ActionRegistrationError(AiActionError):
    code = "ACTION_REGISTRATION"


class UnknownActionError(AiActionError):
    code = "UNKNOWN_ACTION"

    def __init__(self, action_id: str):
        self.action_id = action_id
        super().__init__(f"Unknown AI action: {action_id}")


class ActionNotEnabledError(AiActionError):
    code = "ACTION_NOT_ENABLED"

    def __init__(self, action_id: str):
        self.action_id = action_id
        super().__init__(f'AI action "{action_id}" is not enabled for this node')


class AiDisabledError(AiActionError):
    code = "AI_DISABLED"

    def __init__(self):
        super().__init__("AI is disabled for this node")


class MissingNodeConfigError(AiActionError):
    code = "NODE_CONFIG_REQUIRED"

    def __init__(self):
        super().__init__("node_config is required to dispatch an AI action")


class ActionNotAllowedError(AiActionError):
    code = "ACTION_NOT_ALLOWED"

    def __init__(self, action_ids: List[str]):
        self.action_ids = list(action_ids)
        super().__init__(f"AI actions not in allowlist: {', '.join(self.action_ids)}")


# =============================================================================
# Action Types
# =============================================================================

@dataclass
class AiActionContext:
    """What a handler receives besides its input."""
    node_config: Optional[NodeConfig] = None
    auth: AuthContext = field(default_factory=AuthContext)
    env: Dict[str, str] = field(default_factory=dict)
    providers: Optional[AiProviderRegistry] = None
    audit: Optional[Callable[[Any], Any]] = None
    data_policy: Optional[EffectiveAiDataPolicy] = None
    provider_id: Optional[str] = None
    instance_id: Optional[str] = None
    step_id: Optional[str] = None
    timeout_ms: Optional[int] = None


AiActionHandler = Callable[[AiActionContext, Dict[str, Any]], Awaitable[Any]]


@dataclass
class AiActionDefinition:
    """Public description of an action."""
    id: str
    provider_capabilities: List[str]
    data_policy: Dict[str, Any] = field(default_factory=dict)
    label: str = ""
    description: str = ""
    input_schema: Dict[str, Any] = field(default_factory=dict)
    output_schema: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "description": self.description,
            "provider_capabilities": list(self.provider_capabilities),
            "data_policy": dict(self.data_policy),
            "input_schema": self.input_schema,
            "output_schema": self.output_schema,
        }


@dataclass
class AiAction:
    definition: AiActionDefinition
    handler: AiActionHandler


# =============================================================================
# Registry
# =============================================================================

class AiActionRegistry:
    """Write-once catalog of AI actions keyed by id."""

    def __init__(self):
        self._actions: Dict[str, AiAction] = {}

    def register(self, action: AiAction) -> None:
        """Register an action. Duplicate ids are rejected."""
        definition = action.definition
        action_id = (definition.id or "").strip()
        if not action_id:
            raise ActionRegistrationError("AI action id is required")

        capabilities = list(definition.provider_capabilities or [])
        if not capabilities:
            raise ActionRegistrationError(f'AI action "{action_id}" must declare provider_capabilities')
        unknown = [c for c in capabilities if c not in PROVIDER_CAPABILITIES]
        if unknown:
            raise ActionRegistrationError(
                f'AI action "{action_id}" declares unknown provider capabilities: {", ".join(unknown)}'
            )

        if action_id in self._actions:
            raise ActionRegistrationError(f'AI action "{action_id}" is already registered')

        stored = AiAction(
            definition=replace(copy.deepcopy(definition), id=action_id),
            handler=action.handler,
        )
        self._actions[action_id] = stored
        logger.debug(f"Registered AI action {action_id}")

    def has(self, action_id: str) -> bool:
        return (action_id or "").strip() in self._actions

    def get_action(self, action_id: str) -> Optional[AiAction]:
        """Copy of the registered action, or None."""
        action = self._actions.get((action_id or "").strip())
        if action is None:
            return None
        return AiAction(definition=copy.deepcopy(action.definition), handler=action.handler)

    def list_actions(self) -> List[AiActionDefinition]:
        return [copy.deepcopy(a.definition) for a in self._actions.values()]


# =============================================================================
# Enforcement / Dispatch
# =============================================================================

def ensure_action_allowed(
    definition: AiActionDefinition,
    node_config: NodeConfig,
    provider_id: Optional[str] = None,
) -> EffectiveAiDataPolicy:
    """
    Check node enablement, the allow-list and the data policy.

    Returns the combined policy; raises AiDisabledError,
    ActionNotEnabledError or DataPolicyViolation.
    """
    ai = node_config.ai
    if not ai.enabled:
        raise AiDisabledError()

    if definition.id not in ai.enabled_actions:
        raise ActionNotEnabledError(definition.id)

    return enforce_policy(
        normalize_policy(ai.data_policy),
        definition.data_policy,
        action_id=definition.id,
        provider_id=provider_id,
    )


async def dispatch_ai_action(
    registry: AiActionRegistry,
    action_id: str,
    context: AiActionContext,
    input: Optional[Dict[str, Any]] = None,
) -> Any:
    """
    Sole entry point for running a registered AI action.

    The handler's return value is passed through unchanged.
    """
    action_id = (action_id or "").strip()
    if not action_id:
        raise ValueError("action_id is required")

    action = registry.get_action(action_id)
    if action is None:
        raise UnknownActionError(action_id)

    if context.node_config is None:
        raise MissingNodeConfigError()

    provider_id = context.provider_id
    if provider_id is None and context.providers is not None:
        provider_id = context.providers.default_provider_id

    policy = ensure_action_allowed(action.definition, context.node_config, provider_id)
    if context.data_policy is None:
        context = replace(context, data_policy=policy)

    logger.info(f"Dispatching AI action {action_id}")
    return await action.handler(context, dict(input or {}))


def assert_actions_in_allowlist(action_ids: Iterable[str], allowlist: Iterable[str]) -> None:
    """Raise naming every action id missing from the allowlist."""
    allowed = {a.strip() for a in allowlist if a}
    missing = [a for a in action_ids if a.strip() not in allowed]
    if missing:
        raise ActionNotAllowedError(missing)
