"""AgentGate Actions Module - AI action catalog and policy-enforced dispatch."""

from .registry import (
    AiAction,
    AiActionContext,
    AiActionDefinition,
    AiActionRegistry,
    AiActionError,
    ActionRegistrationError,
    ActionNotEnabledError,
    ActionNotAllowedError,
    AiDisabledError,
    MissingNodeConfigError,
    UnknownActionError,
    ensure_action_allowed,
    dispatch_ai_action,
    assert_actions_in_allowlist,
)
from .builtin import register_builtin_actions

__all__ = [
    "AiAction",
    "AiActionContext",
    "AiActionDefinition",
    "AiActionRegistry",
    "AiActionError",
    "ActionRegistrationError",
    "ActionNotEnabledError",
    "ActionNotAllowedError",
    "AiDisabledError",
    "MissingNodeConfigError",
    "UnknownActionError",
    "ensure_action_allowed",
    "dispatch_ai_action",
    "assert_actions_in_allowlist",
    "register_builtin_actions",
]
