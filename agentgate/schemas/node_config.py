"""
AgentGate Node Configuration Schema

Operator-facing configuration of a node's AI capability: which providers
exist, which actions are enabled, and the node-level data policy ceiling.
Keys follow the on-disk JSON layout (snake_case).
"""

from __future__ import annotations
from typing import Dict, List, Any, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator
from enum import Enum


class AiProviderType(str, Enum):
    """Supported provider API families."""
    OPENAI = "openai"
    CLAUDE = "claude"
    GEMINI = "gemini"
    OPENROUTER = "openrouter"
    OPENAI_COMPATIBLE = "openai-compatible"


class AiProviderConfig(BaseModel):
    """Declarative provider entry; credentials are read from `api_key_env`."""
    type: AiProviderType
    base_url: Optional[str] = None
    model: Optional[str] = None
    api_key_env: Optional[str] = None


class AiDataPolicyConfig(BaseModel):
    """Partial policy: unset flags stay None until normalized."""
    send_public_posts: Optional[bool] = None
    send_community_posts: Optional[bool] = None
    send_dm: Optional[bool] = None
    send_profile: Optional[bool] = None
    notes: Optional[str] = None


class AiConfig(BaseModel):
    """The `ai` block of a node configuration."""
    enabled: bool = False
    requires_external_network: bool = True
    default_provider: Optional[str] = None
    enabled_actions: List[str] = Field(default_factory=list)
    providers: Dict[str, AiProviderConfig] = Field(default_factory=dict)
    data_policy: AiDataPolicyConfig = Field(default_factory=AiDataPolicyConfig)

    @field_validator("enabled_actions")
    @classmethod
    def strip_action_ids(cls, v: List[str]) -> List[str]:
        return [a.strip() for a in v if a and a.strip()]


class NodeConfig(BaseModel):
    """Node configuration; only the `ai` block is interpreted here."""
    model_config = ConfigDict(extra="allow")

    ai: AiConfig = Field(default_factory=AiConfig)


DEFAULT_AI_CONFIG = AiConfig(
    enabled=False,
    requires_external_network=True,
    enabled_actions=[],
    providers={},
    data_policy=AiDataPolicyConfig(
        send_public_posts=False,
        send_community_posts=False,
        send_dm=False,
        send_profile=False,
    ),
)


def merge_ai_config(base: Optional[AiConfig], patch: Optional[Dict[str, Any]]) -> AiConfig:
    """
    Overlay a partial `ai` block onto a base config.

    `providers` and `data_policy` merge key by key; every other key,
    including `enabled_actions`, is replaced outright.
    """
    merged = (base or DEFAULT_AI_CONFIG).model_dump(mode="json")
    for key, value in (patch or {}).items():
        if key in ("providers", "data_policy") and isinstance(value, dict):
            section = dict(merged.get(key) or {})
            for sub_key, sub_value in value.items():
                if key == "providers" and isinstance(sub_value, dict) and sub_key in section:
                    section[sub_key] = {**section[sub_key], **sub_value}
                else:
                    section[sub_key] = sub_value
            merged[key] = section
        else:
            merged[key] = value
    return AiConfig.model_validate(merged)
