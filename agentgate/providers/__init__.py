"""AgentGate Providers Module - AI backend resolution and HTTP adapters."""

from .registry import (
    AiProviderClient,
    AiProviderRegistry,
    AiPolicyOptions,
    AiCallResult,
    PreparedCall,
    ProviderResolution,
    ProviderConfigurationError,
    ProviderNotConfiguredError,
    resolve_ai_providers,
    build_ai_provider_registry,
)
from .adapters import (
    ChatMessage,
    ChatCompletionOptions,
    ChatCompletionResult,
    ProviderRequestError,
    chat_completion,
)

__all__ = [
    "AiProviderClient",
    "AiProviderRegistry",
    "AiPolicyOptions",
    "AiCallResult",
    "PreparedCall",
    "ProviderResolution",
    "ProviderConfigurationError",
    "ProviderNotConfiguredError",
    "resolve_ai_providers",
    "build_ai_provider_registry",
    "ChatMessage",
    "ChatCompletionOptions",
    "ChatCompletionResult",
    "ProviderRequestError",
    "chat_completion",
]
