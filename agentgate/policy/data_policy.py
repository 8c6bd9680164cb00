"""
AgentGate Data Policy

Decides which payload slices may cross the boundary to an external AI provider.

Two levels exist:
- node policy: the operator-configured ceiling
- action policy: what a single action or workflow asks for

The effective policy for a call is the per-field AND of both levels.
"""

from __future__ import annotations
from typing import Dict, List, Any, Optional, Mapping
from dataclasses import dataclass, field, asdict
import logging


logger = logging.getLogger(__name__)


# =============================================================================
# Policy Fields
# =============================================================================

POLICY_FIELDS = (
    "send_public_posts",
    "send_community_posts",
    "send_dm",
    "send_profile",
)

# Payload slice -> policy flag that governs it
PAYLOAD_SLICES: Dict[str, str] = {
    "publicPosts": "send_public_posts",
    "communityPosts": "send_community_posts",
    "dmMessages": "send_dm",
    "profile": "send_profile",
}


@dataclass(frozen=True)
class EffectiveAiDataPolicy:
    """Fully resolved disclosure flags. Missing flags are always False."""
    send_public_posts: bool = False
    send_community_posts: bool = False
    send_dm: bool = False
    send_profile: bool = False
    notes: Optional[str] = None

    def allows(self, flag: str) -> bool:
        return bool(getattr(self, flag))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _policy_items(policy: Any) -> Dict[str, Any]:
    """Read the explicitly-set keys of a partial policy (dict, dataclass or pydantic model)."""
    if policy is None:
        return {}
    if isinstance(policy, EffectiveAiDataPolicy):
        return policy.to_dict()
    if hasattr(policy, "model_dump"):
        return policy.model_dump(exclude_none=True)
    if isinstance(policy, Mapping):
        return {k: v for k, v in policy.items() if v is not None}
    raise TypeError(f"Unsupported data policy type: {type(policy).__name__}")


# =============================================================================
# Normalize / Combine
# =============================================================================

def normalize_policy(policy: Any = None) -> EffectiveAiDataPolicy:
    """Fill missing flags with False, keeping optional notes."""
    items = _policy_items(policy)
    return EffectiveAiDataPolicy(
        **{name: bool(items.get(name, False)) for name in POLICY_FIELDS},
        notes=items.get("notes"),
    )


def combine_policies(
    node_policy: Any,
    action_policy: Any = None,
) -> EffectiveAiDataPolicy:
    """
    Combine a node ceiling with an action request.

    A flag the action does not mention counts as requested, so the result
    for that flag is whatever the node allows.
    """
    node = normalize_policy(node_policy)
    requested = _policy_items(action_policy)

    flags = {}
    for name in POLICY_FIELDS:
        wanted = requested.get(name)
        flags[name] = node.allows(name) and (True if wanted is None else bool(wanted))

    return EffectiveAiDataPolicy(
        **flags,
        notes=requested.get("notes") or node.notes,
    )


def find_policy_violations(node_policy: Any, action_policy: Any) -> List[str]:
    """Flags the action explicitly requests but the node forbids."""
    node = normalize_policy(node_policy)
    requested = _policy_items(action_policy)
    return [
        name for name in POLICY_FIELDS
        if requested.get(name) is True and not node.allows(name)
    ]


# =============================================================================
# Redaction
# =============================================================================

@dataclass
class Redaction:
    """One payload slice removed before an external call."""
    field: str
    reason: str

    def to_dict(self) -> Dict[str, str]:
        return {"field": self.field, "reason": self.reason}


@dataclass
class RedactionResult:
    """Redacted copy of a payload plus what was removed."""
    payload: Dict[str, Any]
    policy: EffectiveAiDataPolicy
    redacted: List[Redaction] = field(default_factory=list)

    @property
    def redacted_fields(self) -> List[str]:
        return [r.field for r in self.redacted]


def redact_payload(
    payload: Mapping[str, Any],
    policy: EffectiveAiDataPolicy,
) -> RedactionResult:
    """
    Remove the payload slices whose policy flag is False.

    Works on a shallow copy; the caller's payload is never modified.
    Running it again on its own output removes nothing further.
    """
    clone = dict(payload or {})
    redacted: List[Redaction] = []

    for slice_name, flag in PAYLOAD_SLICES.items():
        if policy.allows(flag) or slice_name not in clone:
            continue
        del clone[slice_name]
        redacted.append(Redaction(field=slice_name, reason=f"{flag} not allowed by policy"))

    if redacted:
        logger.debug(f"Redacted payload slices: {[r.field for r in redacted]}")

    return RedactionResult(payload=clone, policy=policy, redacted=redacted)


def has_payload_slice(value: Any) -> bool:
    """True when a payload slice carries actual content."""
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) > 0
    return True


def policy_from_payload(
    payload: Mapping[str, Any],
    base_policy: Any = None,
) -> Dict[str, Any]:
    """
    Build a per-call action policy: declared flags win, the rest are
    requested only when the matching slice is present in the payload.
    """
    declared = _policy_items(base_policy)
    dynamic = dict(declared)
    for slice_name, flag in PAYLOAD_SLICES.items():
        if declared.get(flag) is None:
            dynamic[flag] = has_payload_slice(payload.get(slice_name))
    return dynamic


# =============================================================================
# Violations
# =============================================================================

class DataPolicyViolation(Exception):
    """An action requested payload slices that the node policy forbids."""
    code = "DATA_POLICY_VIOLATION"

    def __init__(
        self,
        fields: List[str],
        action_id: Optional[str] = None,
        provider_id: Optional[str] = None,
        policy: Optional[EffectiveAiDataPolicy] = None,
    ):
        self.fields = list(fields)
        self.action_id = action_id
        self.provider_id = provider_id
        self.policy = policy
        verb = "is" if len(self.fields) == 1 else "are"
        super().__init__(
            f"DataPolicyViolation: {', '.join(self.fields)} {verb} not allowed by node policy"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": "DataPolicyViolation",
            "code": self.code,
            "fields": list(self.fields),
            "action_id": self.action_id,
            "provider_id": self.provider_id,
        }


def enforce_policy(
    node_policy: Any,
    action_policy: Any,
    action_id: Optional[str] = None,
    provider_id: Optional[str] = None,
) -> EffectiveAiDataPolicy:
    """
    Strict check: raise instead of redacting when the action requests a
    slice the node forbids. Returns the combined policy when clean.
    """
    combined = combine_policies(node_policy, action_policy)
    blocked = find_policy_violations(node_policy, action_policy)
    if blocked:
        logger.warning(
            f"Blocked AI call: fields={blocked} action={action_id or '(unknown)'} "
            f"provider={provider_id or '(unknown)'}"
        )
        raise DataPolicyViolation(blocked, action_id=action_id, provider_id=provider_id, policy=combined)
    return combined
