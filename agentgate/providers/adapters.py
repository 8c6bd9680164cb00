"""
AgentGate Provider Adapters

HTTP adapters that translate a common chat-completion request into each
provider family's wire format and normalize the response back.

Supported families:
- OpenAI (also OpenRouter and OpenAI-compatible endpoints)
- Claude (Anthropic Messages API)
- Gemini (Google generateContent)
"""

from __future__ import annotations
from typing import Dict, List, Any, Optional
from dataclasses import dataclass, field
import logging
import uuid

import aiohttp
from async_timeout import timeout as async_timeout

from .registry import AiProviderClient
from ..schemas.node_config import AiProviderType


logger = logging.getLogger(__name__)

CLAUDE_API_VERSION = "2023-06-01"
CLAUDE_DEFAULT_MAX_TOKENS = 4096
DEFAULT_REQUEST_TIMEOUT = 60.0


# =============================================================================
# Common Types
# =============================================================================

@dataclass
class ChatMessage:
    role: str  # system | user | assistant
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class ChatCompletionOptions:
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None


@dataclass
class ChatCompletionChoice:
    index: int
    message: ChatMessage
    finish_reason: Optional[str] = None


@dataclass
class ChatCompletionUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass
class ChatCompletionResult:
    """Provider-neutral completion result."""
    id: str
    provider: str
    model: str
    choices: List[ChatCompletionChoice] = field(default_factory=list)
    usage: Optional[ChatCompletionUsage] = None
    raw: Any = None

    @property
    def content(self) -> Optional[str]:
        """Text of the first choice, if any."""
        if not self.choices:
            return None
        return self.choices[0].message.content


@dataclass
class ProviderRequest:
    """A fully built HTTP request, ready to send."""
    url: str
    headers: Dict[str, str]
    body: Dict[str, Any]


class ProviderRequestError(Exception):
    """Non-2xx response from a provider API."""

    def __init__(self, provider: str, status: int, detail: str = ""):
        self.provider = provider
        self.status = status
        super().__init__(f"{provider} API error ({status}): {detail}")


def _require_model(client: AiProviderClient, options: ChatCompletionOptions, family: str) -> str:
    model = options.model or client.model
    if not model:
        raise ValueError(f"Model is required for {family} chat completion")
    return model


# =============================================================================
# Adapters
# =============================================================================

class OpenAiAdapter:
    """OpenAI chat/completions format."""
    family = "OpenAI"

    def build_request(
        self,
        client: AiProviderClient,
        messages: List[ChatMessage],
        options: ChatCompletionOptions,
    ) -> ProviderRequest:
        body: Dict[str, Any] = {
            "model": _require_model(client, options, self.family),
            "messages": [m.to_dict() for m in messages],
            "stream": False,
        }
        if options.temperature is not None:
            body["temperature"] = options.temperature
        if options.max_tokens is not None:
            body["max_tokens"] = options.max_tokens
        if options.top_p is not None:
            body["top_p"] = options.top_p

        return ProviderRequest(
            url=f"{client.base_url.rstrip('/')}/chat/completions",
            headers={"Content-Type": "application/json", **client.headers},
            body=body,
        )

    def parse_response(
        self,
        client: AiProviderClient,
        data: Dict[str, Any],
        model: str,
    ) -> ChatCompletionResult:
        choices = [
            ChatCompletionChoice(
                index=choice.get("index", i),
                message=ChatMessage(
                    role=(choice.get("message") or {}).get("role", "assistant"),
                    content=(choice.get("message") or {}).get("content") or "",
                ),
                finish_reason=choice.get("finish_reason"),
            )
            for i, choice in enumerate(data.get("choices") or [])
        ]
        usage = data.get("usage")
        return ChatCompletionResult(
            id=data.get("id") or f"chatcmpl-{uuid.uuid4().hex[:12]}",
            provider=client.id,
            model=data.get("model") or model,
            choices=choices,
            usage=ChatCompletionUsage(
                prompt_tokens=usage.get("prompt_tokens", 0),
                completion_tokens=usage.get("completion_tokens", 0),
                total_tokens=usage.get("total_tokens", 0),
            ) if usage else None,
            raw=data,
        )


class ClaudeAdapter:
    """Anthropic Messages API. System prompts travel outside the message list."""
    family = "Claude"

    def build_request(
        self,
        client: AiProviderClient,
        messages: List[ChatMessage],
        options: ChatCompletionOptions,
    ) -> ProviderRequest:
        system_prompt = None
        claude_messages = []
        for m in messages:
            if m.role == "system":
                system_prompt = m.content
            else:
                claude_messages.append(m.to_dict())

        body: Dict[str, Any] = {
            "model": _require_model(client, options, self.family),
            "messages": claude_messages,
            "max_tokens": options.max_tokens or CLAUDE_DEFAULT_MAX_TOKENS,
            "stream": False,
        }
        if system_prompt:
            body["system"] = system_prompt
        if options.temperature is not None:
            body["temperature"] = options.temperature
        if options.top_p is not None:
            body["top_p"] = options.top_p

        return ProviderRequest(
            url=f"{client.base_url.rstrip('/')}/messages",
            headers={
                "Content-Type": "application/json",
                "anthropic-version": CLAUDE_API_VERSION,
                **client.headers,
            },
            body=body,
        )

    def parse_response(
        self,
        client: AiProviderClient,
        data: Dict[str, Any],
        model: str,
    ) -> ChatCompletionResult:
        text = "".join(
            block.get("text", "")
            for block in data.get("content") or []
            if block.get("type") == "text"
        )
        usage = data.get("usage")
        return ChatCompletionResult(
            id=data.get("id") or f"msg-{uuid.uuid4().hex[:12]}",
            provider=client.id,
            model=data.get("model") or model,
            choices=[ChatCompletionChoice(
                index=0,
                message=ChatMessage(role="assistant", content=text),
                finish_reason=data.get("stop_reason"),
            )],
            usage=ChatCompletionUsage(
                prompt_tokens=usage.get("input_tokens", 0),
                completion_tokens=usage.get("output_tokens", 0),
                total_tokens=usage.get("input_tokens", 0) + usage.get("output_tokens", 0),
            ) if usage else None,
            raw=data,
        )


class GeminiAdapter:
    """Google generateContent. Assistant turns use the `model` role."""
    family = "Gemini"

    def build_request(
        self,
        client: AiProviderClient,
        messages: List[ChatMessage],
        options: ChatCompletionOptions,
    ) -> ProviderRequest:
        model = _require_model(client, options, self.family)
        system_parts = []
        contents = []
        for m in messages:
            if m.role == "system":
                system_parts.append({"text": m.content})
            else:
                role = "model" if m.role == "assistant" else "user"
                contents.append({"role": role, "parts": [{"text": m.content}]})

        generation_config: Dict[str, Any] = {}
        if options.temperature is not None:
            generation_config["temperature"] = options.temperature
        if options.max_tokens is not None:
            generation_config["maxOutputTokens"] = options.max_tokens
        if options.top_p is not None:
            generation_config["topP"] = options.top_p

        body: Dict[str, Any] = {"contents": contents}
        if system_parts:
            body["systemInstruction"] = {"parts": system_parts}
        if generation_config:
            body["generationConfig"] = generation_config

        return ProviderRequest(
            url=f"{client.base_url.rstrip('/')}/models/{model}:generateContent",
            headers={"Content-Type": "application/json", **client.headers},
            body=body,
        )

    def parse_response(
        self,
        client: AiProviderClient,
        data: Dict[str, Any],
        model: str,
    ) -> ChatCompletionResult:
        choices = []
        for i, candidate in enumerate(data.get("candidates") or []):
            parts = (candidate.get("content") or {}).get("parts") or []
            choices.append(ChatCompletionChoice(
                index=candidate.get("index", i),
                message=ChatMessage(
                    role="assistant",
                    content="".join(p.get("text", "") for p in parts),
                ),
                finish_reason=candidate.get("finishReason"),
            ))
        usage = data.get("usageMetadata")
        return ChatCompletionResult(
            id=data.get("responseId") or f"gemini-{uuid.uuid4().hex[:12]}",
            provider=client.id,
            model=data.get("modelVersion") or model,
            choices=choices,
            usage=ChatCompletionUsage(
                prompt_tokens=usage.get("promptTokenCount", 0),
                completion_tokens=usage.get("candidatesTokenCount", 0),
                total_tokens=usage.get("totalTokenCount", 0),
            ) if usage else None,
            raw=data,
        )


_ADAPTERS = {
    AiProviderType.OPENAI.value: OpenAiAdapter(),
    AiProviderType.OPENROUTER.value: OpenAiAdapter(),
    AiProviderType.OPENAI_COMPATIBLE.value: OpenAiAdapter(),
    AiProviderType.CLAUDE.value: ClaudeAdapter(),
    AiProviderType.GEMINI.value: GeminiAdapter(),
}


def get_adapter(provider_type: str):
    adapter = _ADAPTERS.get(provider_type)
    if adapter is None:
        raise ValueError(f"Unsupported AI provider type: {provider_type}")
    return adapter


# =============================================================================
# Chat Completion
# =============================================================================

async def chat_completion(
    client: AiProviderClient,
    messages: List[ChatMessage],
    options: Optional[ChatCompletionOptions] = None,
    session: Optional[aiohttp.ClientSession] = None,
    timeout: float = DEFAULT_REQUEST_TIMEOUT,
) -> ChatCompletionResult:
    """
    Send a chat completion to the client's provider.

    Uses the given session when supplied, otherwise a short-lived one.
    """
    options = options or ChatCompletionOptions()
    adapter = get_adapter(client.type)
    request = adapter.build_request(client, messages, options)
    model = request.body.get("model") or options.model or client.model or ""

    logger.debug(f"POST {request.url} provider={client.id} model={model}")

    async def _send(http: aiohttp.ClientSession) -> Dict[str, Any]:
        async with http.post(request.url, json=request.body, headers=request.headers) as response:
            if response.status >= 400:
                detail = await response.text()
                raise ProviderRequestError(adapter.family, response.status, detail or response.reason or "")
            return await response.json()

    async with async_timeout(timeout):
        if session is not None:
            data = await _send(session)
        else:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as http:
                data = await _send(http)

    return adapter.parse_response(client, data, model)
