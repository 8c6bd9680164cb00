"""
AgentGate Built-in AI Actions

Actions shipped with every node:
- ai.chat              general chat completion with optional context slices
- ai.summary           summarize text
- ai.tag-suggest       hashtag suggestions
- ai.translation       translate text
- ai.dm-moderator      safety review of a DM conversation
- ai.content-moderator safety review of a public/community post

Each handler calls its provider through the registry's strict policy path
and falls back to a deterministic offline result when no provider is
configured or the call fails. Policy violations are never masked by a
fallback.
"""

from __future__ import annotations
from typing import Dict, List, Any, Optional, Callable
from collections import Counter
import json
import logging
import re

from .registry import AiAction, AiActionContext, AiActionDefinition, AiActionRegistry
from ..audit import AiAuditEvent, AiAuditStatus
from ..config import get_config
from ..policy.data_policy import DataPolicyViolation, policy_from_payload
from ..providers.adapters import ChatMessage, ChatCompletionOptions, ChatCompletionResult, chat_completion
from ..providers.registry import AiCallResult, AiPolicyOptions, PreparedCall


logger = logging.getLogger(__name__)


CHAT_ACTION_ID = "ai.chat"
SUMMARY_ACTION_ID = "ai.summary"
TAG_SUGGEST_ACTION_ID = "ai.tag-suggest"
TRANSLATION_ACTION_ID = "ai.translation"
DM_MODERATOR_ACTION_ID = "ai.dm-moderator"
CONTENT_MODERATOR_ACTION_ID = "ai.content-moderator"

STOP_WORDS = frozenset({
    "a", "an", "and", "are", "as", "at", "be", "by", "for", "from", "has",
    "in", "is", "it", "of", "on", "or", "that", "the", "to", "was", "were",
    "will", "with",
})

RED_FLAGS = ("scam", "spam", "abuse", "threat", "violence", "phish")
LONG_MESSAGE_CHARS = 1000

MODERATION_PROMPT = (
    "You are a content moderation assistant. Analyze the content for safety issues "
    "such as scams or phishing, harassment or threats, spam, and harmful content. "
    'Respond with JSON only: {"flagged": true/false, "reasons": ["..."], "summary": "..."}. '
    "Only flag content with clear safety issues."
)


# =============================================================================
# Text Helpers
# =============================================================================

def _clamp(value: float, low: float, high: float) -> float:
    return min(max(value, low), high)


def _int_option(value: Any, default: int, low: int, high: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        number = 0
    return int(_clamp(number or default, low, high))


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _input_text(input: Dict[str, Any]) -> str:
    """`text`, or the texts of a `posts` list (strings or {text|content} dicts) joined."""
    text = _text(input.get("text"))
    if text:
        return text
    parts = []
    for post in input.get("posts") or []:
        if isinstance(post, dict):
            post = post.get("text") or post.get("content")
        if _text(post):
            parts.append(_text(post))
    return "\n\n".join(parts)


def _content_slice(input: Dict[str, Any]) -> str:
    return "communityPosts" if input.get("community_id") else "publicPosts"


def split_sentences(text: str) -> List[str]:
    return [part.strip() for part in re.split(r"(?<=[.!?])\s+", text) if part.strip()]


def summary_fallback(text: str, max_sentences: int) -> Dict[str, Any]:
    chosen = split_sentences(text)[:max_sentences] or [text[:240].strip()]
    return {
        "summary": " ".join(chosen),
        "sentences": chosen,
        "original_length": len(text),
        "used_ai": False,
    }


def pick_tags(text: str, max_tags: int) -> List[str]:
    """Explicit hashtags first, then the most frequent meaningful words."""
    hashtags = [m.lower() for m in re.findall(r"#([a-zA-Z0-9_]{2,})", text)]
    words = [
        w for w in re.split(r"[^a-z0-9_]+", text.lower())
        if len(w) > 2 and w not in STOP_WORDS
    ]
    ranked = [word for word, _ in Counter(words).most_common()]
    tags: List[str] = []
    for tag in hashtags + ranked:
        if tag not in tags:
            tags.append(tag)
    return tags[:max_tags]


def moderation_reasons(texts: List[str]) -> List[str]:
    """Keyword red flags plus overly long messages."""
    reasons: List[str] = []
    for text in texts:
        lowered = text.lower()
        for flag in RED_FLAGS:
            if flag in lowered and flag not in reasons:
                reasons.append(flag)
        if len(text) > LONG_MESSAGE_CHARS and "very_long_message" not in reasons:
            reasons.append("very_long_message")
    return reasons


def _parse_verdict(content: Optional[str]) -> Optional[Dict[str, Any]]:
    if not content:
        return None
    match = re.search(r"\{[\s\S]*\}", content)
    if not match:
        return None
    try:
        parsed = json.loads(match.group(0))
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _merge_verdict(
    quick_reasons: List[str],
    content: Optional[str],
    fallback_summary: str,
) -> Optional[Dict[str, Any]]:
    verdict = _parse_verdict(content)
    if verdict is None:
        return None
    reasons = list(quick_reasons)
    for reason in verdict.get("reasons") or []:
        if reason not in reasons:
            reasons.append(reason)
    return {
        "flagged": verdict.get("flagged") is True or bool(quick_reasons),
        "reasons": reasons,
        "summary": verdict.get("summary") or fallback_summary,
        "used_ai": True,
    }


# =============================================================================
# Provider Call
# =============================================================================

def _audit(ctx: AiActionContext, event: AiAuditEvent) -> None:
    if ctx.audit is None:
        return
    try:
        ctx.audit(event)
    except Exception:
        logger.exception("AI audit sink failed")


async def call_provider(
    ctx: AiActionContext,
    action_id: str,
    payload: Dict[str, Any],
    declared_policy: Dict[str, Any],
    build_messages: Callable[[Dict[str, Any]], List[ChatMessage]],
    options: Optional[ChatCompletionOptions] = None,
    provider_id: Optional[str] = None,
) -> Optional[AiCallResult]:
    """
    Policy-checked, audited completion call.

    Returns None when no provider is available. Messages are built from the
    redacted payload only.
    """
    providers = ctx.providers
    provider_id = provider_id or ctx.provider_id
    if providers is None or providers.get(provider_id) is None:
        return None

    action_policy = policy_from_payload(payload, declared_policy)
    user_id = ctx.auth.user_id
    model = options.model if options else None
    timeout = (ctx.timeout_ms / 1000.0) if ctx.timeout_ms else get_config().limits.provider_timeout_seconds

    def on_violation(violation: DataPolicyViolation) -> None:
        _audit(ctx, AiAuditEvent(
            action_id=action_id,
            provider_id=violation.provider_id or provider_id or "(unknown)",
            status=AiAuditStatus.BLOCKED,
            model=model,
            policy=violation.policy.to_dict() if violation.policy else {},
            user_id=user_id,
            error="DataPolicyViolation",
        ))

    async def execute(prepared: PreparedCall) -> ChatCompletionResult:
        _audit(ctx, AiAuditEvent(
            action_id=action_id,
            provider_id=prepared.provider.id,
            status=AiAuditStatus.ATTEMPT,
            model=model or prepared.provider.model,
            policy=prepared.policy.to_dict(),
            redacted=[r.to_dict() for r in prepared.redacted],
            user_id=user_id,
        ))
        return await chat_completion(
            prepared.provider,
            build_messages(prepared.payload),
            options,
            timeout=timeout,
        )

    try:
        call = await providers.call_with_policy(
            AiPolicyOptions(
                payload=payload,
                action_policy=action_policy,
                provider_id=provider_id,
                action_id=action_id,
                strict=True,
                on_violation=on_violation,
            ),
            execute,
        )
    except DataPolicyViolation:
        raise
    except Exception as e:
        _audit(ctx, AiAuditEvent(
            action_id=action_id,
            provider_id=provider_id or "(unknown)",
            status=AiAuditStatus.ERROR,
            model=model,
            policy=providers.combine_policy(action_policy).to_dict(),
            user_id=user_id,
            error=str(e),
        ))
        raise

    _audit(ctx, AiAuditEvent(
        action_id=action_id,
        provider_id=call.provider.id,
        status=AiAuditStatus.SUCCESS,
        model=getattr(call.result, "model", None) or model or call.provider.model,
        policy=call.policy.to_dict(),
        redacted=[r.to_dict() for r in call.redacted],
        user_id=user_id,
    ))
    return call


async def _try_provider(ctx: AiActionContext, action_id: str, *args, **kwargs) -> Optional[AiCallResult]:
    """call_provider, but provider failures degrade to None."""
    try:
        return await call_provider(ctx, action_id, *args, **kwargs)
    except DataPolicyViolation:
        raise
    except Exception as e:
        logger.warning(f"{action_id} provider call failed, using fallback: {e}")
        return None


def _content(call: Optional[AiCallResult]) -> Optional[str]:
    if call is None or call.result is None:
        return None
    return call.result.content


# =============================================================================
# Handlers
# =============================================================================

async def chat_handler(ctx: AiActionContext, input: Dict[str, Any]) -> Dict[str, Any]:
    messages = []
    for item in input.get("messages") or []:
        if not isinstance(item, dict):
            continue
        role = _text(item.get("role")).lower()
        content = _text(item.get("content"))
        if role in ("user", "assistant", "system") and content:
            messages.append(ChatMessage(role=role, content=content))
    system = _text(input.get("system"))
    if system:
        messages.insert(0, ChatMessage(role="system", content=system))
    if not messages:
        raise ValueError("messages are required for ai.chat")

    model = _text(input.get("model")) or None
    temperature = input.get("temperature")
    max_tokens = input.get("max_tokens")
    options = ChatCompletionOptions(
        model=model,
        temperature=_clamp(float(temperature), 0, 2) if isinstance(temperature, (int, float)) else None,
        max_tokens=int(_clamp(int(max_tokens), 1, 8192)) if isinstance(max_tokens, (int, float)) else None,
    )

    payload = {
        "publicPosts": input.get("publicPosts", input.get("public_posts")),
        "communityPosts": input.get("communityPosts", input.get("community_posts")),
        "dmMessages": input.get("dmMessages", input.get("dm_messages")),
        "profile": input.get("profile"),
    }
    payload = {k: v for k, v in payload.items() if v is not None}

    def build_messages(prepared_payload: Dict[str, Any]) -> List[ChatMessage]:
        if not prepared_payload:
            return messages
        context = ChatMessage(role="system", content=f"Context: {json.dumps(prepared_payload, default=str)}")
        return [context] + messages

    call = await _try_provider(
        ctx, CHAT_ACTION_ID, payload, {}, build_messages,
        options=options, provider_id=_text(input.get("provider")) or None,
    )
    if call is not None and call.result is not None:
        completion = call.result
        first = completion.choices[0].message if completion.choices else None
        return {
            "provider": completion.provider or call.provider.id,
            "model": completion.model or model or call.provider.model,
            "message": first.to_dict() if first else None,
            "usage": vars(completion.usage) if completion.usage else None,
            "redacted": [r.to_dict() for r in call.redacted],
            "used_ai": True,
        }

    last_user = next((m for m in reversed(messages) if m.role == "user"), None)
    reply = f"AI provider unavailable. Echoing: {last_user.content[:240]}" if last_user else "AI provider unavailable."
    return {
        "provider": None,
        "model": model,
        "message": {"role": "assistant", "content": reply},
        "used_ai": False,
    }


async def summary_handler(ctx: AiActionContext, input: Dict[str, Any]) -> Dict[str, Any]:
    text = _input_text(input)
    if not text:
        raise ValueError("text is required for ai.summary")
    max_sentences = _int_option(input.get("max_sentences"), 3, 1, 6)
    language = _text(input.get("language"))
    language_hint = f" Respond in {language}." if language else ""
    slice_name = _content_slice(input)

    def build_messages(payload: Dict[str, Any]) -> List[ChatMessage]:
        return [
            ChatMessage(role="system", content=(
                "You are a helpful assistant that summarizes content concisely. "
                f"Provide a summary in {max_sentences} sentences or less.{language_hint} "
                "Return only the summary text."
            )),
            ChatMessage(role="user", content="\n\n".join(payload.get(slice_name) or [])),
        ]

    call = await _try_provider(
        ctx, SUMMARY_ACTION_ID, {slice_name: [text]}, {"send_public_posts": True}, build_messages,
        options=ChatCompletionOptions(temperature=0.7, max_tokens=1024),
    )
    content = _content(call)
    if content:
        sentences = split_sentences(content)[:max_sentences] or [content.strip()]
        return {
            "summary": " ".join(sentences),
            "sentences": sentences,
            "original_length": len(text),
            "used_ai": True,
        }
    return summary_fallback(text, max_sentences)


async def tag_suggest_handler(ctx: AiActionContext, input: Dict[str, Any]) -> Dict[str, Any]:
    text = _input_text(input)
    if not text:
        raise ValueError("text is required for ai.tag-suggest")
    max_tags = _int_option(input.get("max_tags"), 5, 1, 12)
    slice_name = _content_slice(input)

    def build_messages(payload: Dict[str, Any]) -> List[ChatMessage]:
        return [
            ChatMessage(role="system", content=(
                "You suggest relevant hashtags for social media posts. "
                f"Suggest up to {max_tags} hashtags, one per line, without the # symbol."
            )),
            ChatMessage(role="user", content="\n\n".join(payload.get(slice_name) or [])),
        ]

    call = await _try_provider(
        ctx, TAG_SUGGEST_ACTION_ID, {slice_name: [text]}, {"send_public_posts": True}, build_messages,
        options=ChatCompletionOptions(temperature=0.7, max_tokens=256),
    )
    content = _content(call)
    if content:
        tags = [line.strip().lstrip("#").strip() for line in content.splitlines()]
        tags = [t for t in tags if t][:max_tags]
        if tags:
            return {"tags": tags, "used_ai": True}
    return {"tags": pick_tags(text, max_tags), "used_ai": False}


async def translation_handler(ctx: AiActionContext, input: Dict[str, Any]) -> Dict[str, Any]:
    text = _text(input.get("text"))
    if not text:
        raise ValueError("text is required for ai.translation")

    target = _text(input.get("target_language"))
    languages = input.get("target_languages")
    iteration = input.get("iteration")
    if not target and isinstance(languages, list) and isinstance(iteration, int) and 0 <= iteration < len(languages):
        target = _text(languages[iteration])
    if not target:
        raise ValueError("target_language is required for ai.translation")
    source = _text(input.get("source_language")) or None

    def build_messages(payload: Dict[str, Any]) -> List[ChatMessage]:
        source_hint = f" from {source}" if source else ""
        return [
            ChatMessage(role="system", content=(
                f"Translate the user's text{source_hint} to {target}. "
                "Return only the translation."
            )),
            ChatMessage(role="user", content="\n\n".join(payload.get("publicPosts") or [])),
        ]

    call = await _try_provider(
        ctx, TRANSLATION_ACTION_ID, {"publicPosts": [text]}, {"send_public_posts": True}, build_messages,
        options=ChatCompletionOptions(temperature=0.3, max_tokens=2048),
    )
    content = _content(call)
    return {
        "translated_text": content.strip() if content else text,
        "source_language": source,
        "target_language": target,
        "used_ai": bool(content),
    }


async def dm_moderator_handler(ctx: AiActionContext, input: Dict[str, Any]) -> Dict[str, Any]:
    messages = []
    for item in input.get("messages") or []:
        if isinstance(item, dict) and _text(item.get("text")):
            messages.append({"from": _text(item.get("from")) or None, "text": _text(item.get("text"))})
    if not messages:
        raise ValueError("messages are required for ai.dm-moderator")

    texts = [m["text"] for m in messages]
    quick_reasons = moderation_reasons(texts)
    summary = " / ".join(t[:140] for t in texts[-3:])

    def build_messages(payload: Dict[str, Any]) -> List[ChatMessage]:
        conversation = "\n".join(
            f"{m.get('from') or 'Unknown'}: {m.get('text')}" for m in payload.get("dmMessages") or []
        )
        return [
            ChatMessage(role="system", content=MODERATION_PROMPT),
            ChatMessage(role="user", content=f"Analyze this conversation:\n\n{conversation}"),
        ]

    call = await _try_provider(
        ctx, DM_MODERATOR_ACTION_ID, {"dmMessages": messages}, {"send_dm": True}, build_messages,
        options=ChatCompletionOptions(temperature=0.2, max_tokens=512),
    )
    merged = _merge_verdict(quick_reasons, _content(call), summary)
    if merged is not None:
        return merged
    return {"flagged": bool(quick_reasons), "reasons": quick_reasons, "summary": summary, "used_ai": False}


async def content_moderator_handler(ctx: AiActionContext, input: Dict[str, Any]) -> Dict[str, Any]:
    content = _text(input.get("content")) or _text(input.get("text"))
    if not content:
        raise ValueError("content is required for ai.content-moderator")
    slice_name = "communityPosts" if input.get("community_id") else "publicPosts"
    quick_reasons = moderation_reasons([content])
    summary = content[:140]

    def build_messages(payload: Dict[str, Any]) -> List[ChatMessage]:
        return [
            ChatMessage(role="system", content=MODERATION_PROMPT),
            ChatMessage(role="user", content="\n\n".join(payload.get(slice_name) or [])),
        ]

    call = await _try_provider(
        ctx, CONTENT_MODERATOR_ACTION_ID, {slice_name: [content]}, {}, build_messages,
        options=ChatCompletionOptions(temperature=0.2, max_tokens=512),
    )
    merged = _merge_verdict(quick_reasons, _content(call), summary)
    if merged is not None:
        return merged
    return {"flagged": bool(quick_reasons), "reasons": quick_reasons, "summary": summary, "used_ai": False}


# =============================================================================
# Registration
# =============================================================================

def _chat_capable(action_id: str, label: str, description: str, policy: Dict[str, Any], handler) -> AiAction:
    return AiAction(
        definition=AiActionDefinition(
            id=action_id,
            label=label,
            description=description,
            provider_capabilities=["chat"],
            data_policy=policy,
        ),
        handler=handler,
    )


BUILTIN_ACTIONS: List[AiAction] = [
    _chat_capable(
        CHAT_ACTION_ID, "AI chat",
        "General chat completion with optional context slices checked per call.",
        {"notes": "Context slices are optional and checked per call."},
        chat_handler,
    ),
    _chat_capable(
        SUMMARY_ACTION_ID, "Summarize content",
        "Summarize public posts into a short digest.",
        {"send_public_posts": True},
        summary_handler,
    ),
    _chat_capable(
        TAG_SUGGEST_ACTION_ID, "Hashtag suggestions",
        "Suggest hashtags for a draft post.",
        {"send_public_posts": True},
        tag_suggest_handler,
    ),
    _chat_capable(
        TRANSLATION_ACTION_ID, "Translate content",
        "Translate text to a target language.",
        {"send_public_posts": True},
        translation_handler,
    ),
    _chat_capable(
        DM_MODERATOR_ACTION_ID, "DM safety review",
        "Review a direct-message conversation for safety issues.",
        {"send_dm": True, "notes": "DM content is sent to the AI provider for safety analysis."},
        dm_moderator_handler,
    ),
    _chat_capable(
        CONTENT_MODERATOR_ACTION_ID, "Content safety review",
        "Review a public or community post for safety issues.",
        {"send_public_posts": True},
        content_moderator_handler,
    ),
]


def register_builtin_actions(registry: AiActionRegistry) -> None:
    """Register every built-in action, skipping ids already present."""
    for action in BUILTIN_ACTIONS:
        if registry.has(action.definition.id):
            continue
        registry.register(action)
