"""
AgentGate AI Audit Trail

Records every AI provider call an action makes: the attempt, its outcome,
the effective policy and any redactions. Records are logged and kept in a
bounded in-memory trail for inspection.
"""

from __future__ import annotations
from typing import Dict, List, Any, Optional, Deque
from dataclasses import dataclass, field
from collections import deque
from datetime import datetime, timezone
from enum import Enum
import logging


logger = logging.getLogger(__name__)


class AiAuditStatus(str, Enum):
    """Lifecycle of one provider call."""
    ATTEMPT = "attempt"
    SUCCESS = "success"
    ERROR = "error"
    BLOCKED = "blocked"


@dataclass
class AiAuditEvent:
    """One audited provider call."""
    action_id: str
    provider_id: str
    status: AiAuditStatus
    model: Optional[str] = None
    policy: Dict[str, Any] = field(default_factory=dict)
    redacted: List[Dict[str, str]] = field(default_factory=list)
    user_id: Optional[str] = None
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action_id": self.action_id,
            "provider_id": self.provider_id,
            "status": self.status.value,
            "model": self.model,
            "policy": self.policy,
            "redacted": self.redacted,
            "user_id": self.user_id,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }


class AiAuditLog:
    """
    Callable audit sink.

    Pass an instance wherever an audit callback is expected; each call logs
    the event and appends it to a bounded trail.
    """

    def __init__(self, max_events: int = 1000):
        self._events: Deque[AiAuditEvent] = deque(maxlen=max_events)

    def __call__(self, event: AiAuditEvent) -> None:
        self.record(event)

    def record(self, event: AiAuditEvent) -> None:
        self._events.append(event)
        message = (
            f"[ai-audit] {event.action_id} provider={event.provider_id} "
            f"status={event.status.value} redacted={[r.get('field') for r in event.redacted]}"
        )
        if event.status in (AiAuditStatus.ERROR, AiAuditStatus.BLOCKED):
            logger.warning(f"{message} error={event.error}")
        else:
            logger.info(message)

    def events(
        self,
        action_id: Optional[str] = None,
        status: Optional[AiAuditStatus] = None,
    ) -> List[AiAuditEvent]:
        """Recorded events, oldest first, optionally filtered."""
        return [
            e for e in self._events
            if (action_id is None or e.action_id == action_id)
            and (status is None or e.status == status)
        ]

    def clear(self) -> None:
        """Drop all recorded events (for testing)."""
        self._events.clear()
