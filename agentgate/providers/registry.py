"""
AgentGate Provider Registry

Resolves configured AI backends (endpoint, credential, auth headers) from the
node configuration and a secret environment, and is the single choke point
through which provider calls receive their policy-checked payload.

A registry is either fully usable or not constructed: every configuration
problem is collected and raised together at construction time.
"""

from __future__ import annotations
from typing import Dict, List, Any, Optional, Mapping, Callable, Awaitable
from dataclasses import dataclass, field
from types import MappingProxyType
import logging

from ..policy.data_policy import (
    EffectiveAiDataPolicy,
    DataPolicyViolation,
    Redaction,
    RedactionResult,
    normalize_policy,
    combine_policies,
    redact_payload,
    enforce_policy,
)
from ..schemas.node_config import AiConfig, AiProviderConfig, AiProviderType


logger = logging.getLogger(__name__)


DEFAULT_BASE_URLS: Dict[str, str] = {
    AiProviderType.OPENAI.value: "https://api.openai.com/v1",
    AiProviderType.CLAUDE.value: "https://api.anthropic.com/v1",
    AiProviderType.GEMINI.value: "https://generativelanguage.googleapis.com/v1beta",
    AiProviderType.OPENROUTER.value: "https://openrouter.ai/api/v1",
}


def build_auth_headers(provider_type: str, api_key: str) -> Dict[str, str]:
    """Auth header shape per provider family."""
    if provider_type == AiProviderType.CLAUDE.value:
        return {"x-api-key": api_key}
    if provider_type == AiProviderType.GEMINI.value:
        return {"x-goog-api-key": api_key}
    return {"Authorization": f"Bearer {api_key}"}


# =============================================================================
# Errors
# =============================================================================

class ProviderConfigurationError(Exception):
    """One or more declared providers could not be resolved."""
    code = "AI_PROVIDER_CONFIG"

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__(f"AI provider configuration error: {'; '.join(self.errors)}")


class ProviderNotConfiguredError(Exception):
    """A provider was requested that the registry does not hold."""
    code = "AI_PROVIDER_NOT_CONFIGURED"

    def __init__(self, provider_id: Optional[str]):
        self.provider_id = provider_id
        if provider_id:
            message = f'AI provider "{provider_id}" is not configured'
        else:
            message = "No default AI provider is configured"
        super().__init__(message)


# =============================================================================
# Resolved Types
# =============================================================================

@dataclass(frozen=True)
class AiProviderClient:
    """A resolved provider. Read-only after construction."""
    id: str
    type: str
    base_url: str
    api_key: str = field(repr=False)
    model: Optional[str] = None
    headers: Mapping[str, str] = field(default_factory=dict, repr=False)

    def __post_init__(self):
        object.__setattr__(self, "headers", MappingProxyType(dict(self.headers)))

    def describe(self) -> Dict[str, Any]:
        """Public view without credentials."""
        return {"id": self.id, "type": self.type, "base_url": self.base_url, "model": self.model}


@dataclass
class ProviderResolution:
    """Outcome of resolving the `ai.providers` block."""
    providers: Dict[str, AiProviderClient] = field(default_factory=dict)
    default_provider_id: Optional[str] = None
    policy: EffectiveAiDataPolicy = field(default_factory=EffectiveAiDataPolicy)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def _resolve_provider(
    provider_id: str,
    config: AiProviderConfig,
    env: Mapping[str, str],
) -> AiProviderClient:
    provider_type = config.type.value
    base_url = (config.base_url or DEFAULT_BASE_URLS.get(provider_type) or "").strip()
    if not base_url:
        raise ValueError(f'ai.providers.{provider_id}.base_url is required for type "{provider_type}"')

    env_name = (config.api_key_env or "").strip()
    if not env_name:
        raise ValueError(f"ai.providers.{provider_id}.api_key_env is required to resolve credentials")

    api_key = (env.get(env_name) or "").strip()
    if not api_key:
        raise ValueError(f'ai.providers.{provider_id}.api_key_env environment variable "{env_name}" is missing')

    return AiProviderClient(
        id=provider_id,
        type=provider_type,
        base_url=base_url.rstrip("/"),
        api_key=api_key,
        model=config.model,
        headers=build_auth_headers(provider_type, api_key),
    )


def resolve_ai_providers(
    ai_config: Optional[AiConfig],
    env: Mapping[str, str],
) -> ProviderResolution:
    """Resolve every declared provider, collecting errors instead of stopping at the first."""
    ai_config = ai_config or AiConfig()
    resolution = ProviderResolution(policy=normalize_policy(ai_config.data_policy))

    for provider_id, provider_config in ai_config.providers.items():
        try:
            resolution.providers[provider_id] = _resolve_provider(provider_id, provider_config, env)
        except ValueError as e:
            resolution.errors.append(str(e))

    default_id = ai_config.default_provider
    if default_id and default_id not in resolution.providers:
        if default_id not in ai_config.providers:
            resolution.errors.append(f'ai.default_provider "{default_id}" is not defined')
        default_id = None

    if not default_id and resolution.providers:
        default_id = next(iter(resolution.providers))
        if len(resolution.providers) > 1:
            resolution.warnings.append(
                f'ai.default_provider is not set; using "{default_id}" as default'
            )

    resolution.default_provider_id = default_id
    return resolution


# =============================================================================
# Call Options / Results
# =============================================================================

@dataclass
class AiPolicyOptions:
    """
    Options for a policy-checked provider call.

    strict: raise DataPolicyViolation for requested-but-forbidden slices
    instead of redacting them.
    """
    payload: Dict[str, Any] = field(default_factory=dict)
    action_policy: Any = None
    provider_id: Optional[str] = None
    action_id: Optional[str] = None
    strict: bool = False
    on_redaction: Optional[Callable[[RedactionResult], Any]] = None
    on_violation: Optional[Callable[[DataPolicyViolation], Any]] = None


@dataclass
class PreparedCall:
    """What an executor receives: the provider and the redacted payload."""
    provider: AiProviderClient
    payload: Dict[str, Any]
    policy: EffectiveAiDataPolicy
    redacted: List[Redaction] = field(default_factory=list)


@dataclass
class AiCallResult(PreparedCall):
    """Executor result merged with policy and redaction metadata."""
    result: Any = None


AiCallExecutor = Callable[[PreparedCall], Awaitable[Any]]


# =============================================================================
# Registry
# =============================================================================

class AiProviderRegistry:
    """
    Immutable set of resolved providers plus the node data policy.

    Safe to share across concurrently running workflow instances.
    """

    def __init__(self, resolution: ProviderResolution):
        if resolution.errors:
            raise ProviderConfigurationError(resolution.errors)
        self._providers = dict(resolution.providers)
        self._default_id = resolution.default_provider_id
        self._policy = resolution.policy
        self.warnings = list(resolution.warnings)
        for warning in self.warnings:
            logger.warning(warning)

    @property
    def policy(self) -> EffectiveAiDataPolicy:
        return self._policy

    @property
    def default_provider_id(self) -> Optional[str]:
        return self._default_id

    def list(self) -> List[AiProviderClient]:
        return list(self._providers.values())

    def get(self, provider_id: Optional[str] = None) -> Optional[AiProviderClient]:
        key = provider_id or self._default_id
        if not key:
            return None
        return self._providers.get(key)

    def require(self, provider_id: Optional[str] = None) -> AiProviderClient:
        provider = self.get(provider_id)
        if provider is None:
            raise ProviderNotConfiguredError(provider_id or self._default_id)
        return provider

    def combine_policy(self, action_policy: Any = None) -> EffectiveAiDataPolicy:
        return combine_policies(self._policy, action_policy)

    def redact(self, payload: Mapping[str, Any], action_policy: Any = None) -> RedactionResult:
        return redact_payload(payload, self.combine_policy(action_policy))

    def prepare_call(self, options: AiPolicyOptions) -> PreparedCall:
        """
        Resolve the provider and compute the redacted payload.

        Runs before any network traffic. In strict mode a requested but
        forbidden slice raises DataPolicyViolation after notifying
        `on_violation`.
        """
        provider = self.require(options.provider_id)

        if options.strict:
            try:
                enforce_policy(self._policy, options.action_policy, options.action_id, provider.id)
            except DataPolicyViolation as violation:
                if options.on_violation is not None:
                    try:
                        options.on_violation(violation)
                    except Exception:
                        logger.exception("on_violation observer failed")
                raise

        redaction = self.redact(options.payload, options.action_policy)

        if redaction.redacted and options.on_redaction is not None:
            try:
                options.on_redaction(redaction)
            except Exception:
                logger.exception("on_redaction observer failed")

        return PreparedCall(
            provider=provider,
            payload=redaction.payload,
            policy=redaction.policy,
            redacted=redaction.redacted,
        )

    async def call_with_policy(
        self,
        options: AiPolicyOptions,
        execute: AiCallExecutor,
    ) -> AiCallResult:
        """Prepare the call, run the executor on the redacted payload, attach metadata."""
        prepared = self.prepare_call(options)
        result = await execute(prepared)
        return AiCallResult(
            provider=prepared.provider,
            payload=prepared.payload,
            policy=prepared.policy,
            redacted=prepared.redacted,
            result=result,
        )


def build_ai_provider_registry(
    ai_config: Optional[AiConfig],
    env: Mapping[str, str],
) -> AiProviderRegistry:
    """Resolve and construct in one step; raises ProviderConfigurationError."""
    return AiProviderRegistry(resolve_ai_providers(ai_config, env))
