"""
Built-in workflow templates registered on every node.
"""

from __future__ import annotations
from typing import Any, Dict, List
import logging

from .registry import WorkflowRegistry
from ..schemas.workflow import WorkflowDefinition


logger = logging.getLogger(__name__)


def _ref(step_id: str, path: str = "") -> Dict[str, Any]:
    return {"type": "ref", "step_id": step_id, "path": path}


CONTENT_MODERATION = WorkflowDefinition.model_validate({
    "id": "workflow.content_moderation",
    "name": "Content Moderation",
    "description": "Analyze content for safety issues and hold flagged posts for review",
    "entry_point": "analyze_content",
    "data_policy": {"send_public_posts": True, "send_community_posts": True},
    "input_schema": {
        "type": "object",
        "properties": {
            "content": {"type": "string"},
            "content_type": {"type": "string", "enum": ["post", "comment", "bio"]},
            "community_id": {"type": "string"},
        },
        "required": ["content"],
    },
    "output_schema": {
        "type": "object",
        "properties": {
            "flagged": {"type": "boolean"},
            "reasons": {"type": "array", "items": {"type": "string"}},
            "review_approved": {"type": ["boolean", "null"]},
        },
    },
    "steps": [
        {
            "id": "analyze_content",
            "type": "ai_action",
            "name": "Analyze Content Safety",
            "config": {"action_id": "ai.content-moderator"},
            "input_mapping": {
                "content": _ref("input", "content"),
                "community_id": _ref("input", "community_id"),
            },
            "next": "check_flags",
        },
        {
            "id": "check_flags",
            "type": "condition",
            "name": "Check Safety Flags",
            "config": {
                "branches": [
                    {"condition": "analyze_content.output.flagged == true", "next_step": "require_review"},
                    {"condition": "true", "next_step": "final_decision"},
                ],
            },
        },
        {
            "id": "require_review",
            "type": "human_approval",
            "name": "Manual Review Required",
            "config": {
                "message": "Content flagged for review. Please approve or reject.",
                "approval_type": "approve_reject",
                "timeout": 86400000,
            },
            "next": "final_decision",
        },
        {
            "id": "final_decision",
            "type": "transform",
            "name": "Final Decision",
            "input_mapping": {
                "flagged": _ref("analyze_content", "flagged"),
                "reasons": _ref("analyze_content", "reasons"),
                "review_approved": _ref("require_review", "approved"),
            },
            "config": {"expression": "$"},
        },
    ],
    "metadata": {"tags": ["moderation", "safety"]},
})


POST_ENHANCEMENT = WorkflowDefinition.model_validate({
    "id": "workflow.post_enhancement",
    "name": "Post Enhancement",
    "description": "Enhance posts with generated tags and a summary",
    "entry_point": "generate_summary",
    "data_policy": {"send_public_posts": True},
    "input_schema": {
        "type": "object",
        "properties": {"content": {"type": "string"}, "language": {"type": "string"}},
        "required": ["content"],
    },
    "steps": [
        {
            "id": "generate_summary",
            "type": "ai_action",
            "name": "Generate Summary",
            "config": {"action_id": "ai.summary", "input": {"max_sentences": 2}},
            "input_mapping": {
                "text": _ref("input", "content"),
                "language": _ref("input", "language"),
            },
            "next": "suggest_tags",
        },
        {
            "id": "suggest_tags",
            "type": "ai_action",
            "name": "Suggest Hashtags",
            "config": {"action_id": "ai.tag-suggest", "input": {"max_tags": 5}},
            "input_mapping": {"text": _ref("input", "content")},
            "next": "combine_results",
        },
        {
            "id": "combine_results",
            "type": "transform",
            "name": "Combine Results",
            "input_mapping": {
                "content": _ref("input", "content"),
                "summary": _ref("generate_summary", "summary"),
                "tags": _ref("suggest_tags", "tags"),
            },
            "config": {"expression": "$"},
        },
    ],
    "metadata": {"tags": ["enhancement", "automation"]},
})


TRANSLATION_CHAIN = WorkflowDefinition.model_validate({
    "id": "workflow.translation_chain",
    "name": "Translation Chain",
    "description": "Translate content to several target languages in turn",
    "entry_point": "translate_loop",
    "data_policy": {"send_public_posts": True},
    "input_schema": {
        "type": "object",
        "properties": {
            "content": {"type": "string"},
            "target_languages": {"type": "array", "items": {"type": "string"}},
        },
        "required": ["content", "target_languages"],
    },
    "steps": [
        {
            "id": "translate_loop",
            "type": "loop",
            "name": "Translate to Each Language",
            "input_mapping": {
                "text": _ref("input", "content"),
                "target_languages": _ref("input", "target_languages"),
            },
            "config": {
                "max_iterations": 10,
                "condition": "iteration < target_languages.length",
                "body": [
                    {
                        "id": "translate_single",
                        "type": "ai_action",
                        "name": "Translate",
                        "config": {"action_id": "ai.translation"},
                    },
                ],
            },
            "next": "collect_translations",
        },
        {
            "id": "collect_translations",
            "type": "transform",
            "name": "Collect Translations",
            "input_mapping": {"translations": _ref("translate_loop", "results")},
            "config": {"expression": "$"},
        },
    ],
    "metadata": {"tags": ["translation", "i18n"]},
})


DM_SAFETY_CHECK = WorkflowDefinition.model_validate({
    "id": "workflow.dm_safety_check",
    "name": "DM Safety Check",
    "description": "Analyze DM conversations for safety issues",
    "entry_point": "analyze_messages",
    "data_policy": {"send_dm": True},
    "input_schema": {
        "type": "object",
        "properties": {
            "conversation_id": {"type": "string"},
            "messages": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {"from": {"type": "string"}, "text": {"type": "string"}},
                },
            },
        },
        "required": ["messages"],
    },
    "steps": [
        {
            "id": "analyze_messages",
            "type": "ai_action",
            "name": "Analyze DM Safety",
            "config": {"action_id": "ai.dm-moderator"},
            "input_mapping": {"messages": _ref("input", "messages")},
            "next": "determine_action",
        },
        {
            "id": "determine_action",
            "type": "condition",
            "name": "Determine Action",
            "config": {
                "branches": [
                    {"condition": "analyze_messages.output.flagged == true", "next_step": "flag_conversation"},
                    {"condition": "true", "next_step": "report"},
                ],
            },
        },
        {
            "id": "flag_conversation",
            "type": "transform",
            "name": "Flag Conversation",
            "input_mapping": {
                "conversation_id": _ref("input", "conversation_id"),
                "reasons": _ref("analyze_messages", "reasons"),
                "recommendation": "review",
            },
            "config": {"expression": "$"},
            "next": "report",
        },
        {
            "id": "report",
            "type": "transform",
            "name": "Report",
            "input_mapping": {
                "flagged": _ref("analyze_messages", "flagged"),
                "reasons": _ref("analyze_messages", "reasons"),
                "summary": _ref("analyze_messages", "summary"),
                "flag": _ref("flag_conversation"),
            },
            "config": {"expression": "$"},
        },
    ],
    "metadata": {"tags": ["dm", "safety", "moderation"]},
})


COMMUNITY_DIGEST = WorkflowDefinition.model_validate({
    "id": "workflow.community_digest",
    "name": "Community Digest",
    "description": "Generate a digest of recent community posts",
    "entry_point": "gather_posts",
    "data_policy": {"send_public_posts": True, "send_community_posts": True},
    "input_schema": {
        "type": "object",
        "properties": {
            "community_id": {"type": "string"},
            "since": {"type": "string"},
            "max_posts": {"type": "number"},
        },
        "required": ["community_id"],
    },
    "steps": [
        {
            "id": "gather_posts",
            "type": "tool_call",
            "name": "Gather Community Posts",
            "config": {"tool_name": "communities.listPosts"},
            "input_mapping": {
                "community_id": _ref("input", "community_id"),
                "since": _ref("input", "since"),
                "limit": _ref("input", "max_posts"),
            },
            "next": "summarize_posts",
        },
        {
            "id": "summarize_posts",
            "type": "ai_action",
            "name": "Summarize Posts",
            "config": {"action_id": "ai.summary", "input": {"max_sentences": 5}},
            "input_mapping": {
                "posts": _ref("gather_posts", "posts"),
                "community_id": _ref("input", "community_id"),
            },
            "next": "extract_highlights",
        },
        {
            "id": "extract_highlights",
            "type": "ai_action",
            "name": "Extract Highlights",
            "config": {"action_id": "ai.tag-suggest", "input": {"max_tags": 10}},
            "input_mapping": {
                "posts": _ref("gather_posts", "posts"),
                "community_id": _ref("input", "community_id"),
            },
            "next": "format_digest",
        },
        {
            "id": "format_digest",
            "type": "transform",
            "name": "Format Digest",
            "input_mapping": {
                "digest": _ref("summarize_posts", "summary"),
                "highlights": _ref("extract_highlights", "tags"),
                "post_count": _ref("gather_posts", "posts.length"),
            },
            "config": {"expression": "$"},
        },
    ],
    "metadata": {"tags": ["community", "digest", "summary"]},
})


BUILTIN_WORKFLOWS: List[WorkflowDefinition] = [
    CONTENT_MODERATION,
    POST_ENHANCEMENT,
    TRANSLATION_CHAIN,
    DM_SAFETY_CHECK,
    COMMUNITY_DIGEST,
]


def register_builtin_workflows(registry: WorkflowRegistry) -> None:
    """Register every built-in workflow, skipping ids already present."""
    for definition in BUILTIN_WORKFLOWS:
        if registry.has(definition.id):
            logger.debug(f"Workflow {definition.id} already registered, skipping")
            continue
        registry.register(definition)
