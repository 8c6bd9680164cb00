"""AgentGate Policy Module - AI data disclosure rules."""

from .data_policy import (
    EffectiveAiDataPolicy,
    DataPolicyViolation,
    Redaction,
    RedactionResult,
    normalize_policy,
    combine_policies,
    redact_payload,
    enforce_policy,
    find_policy_violations,
    policy_from_payload,
)

__all__ = [
    "EffectiveAiDataPolicy",
    "DataPolicyViolation",
    "Redaction",
    "RedactionResult",
    "normalize_policy",
    "combine_policies",
    "redact_payload",
    "enforce_policy",
    "find_policy_violations",
    "policy_from_payload",
]
