"""Agent lifecycle event types."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping


class EventKind(str, Enum):
    """Every signal the event bus records."""

    TASK_STARTED = "task_started"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    TASK_BLOCKED = "task_blocked"
    TASK_STATUS_CHANGE = "task_status_change"

    AGENT_HEARTBEAT = "agent_heartbeat"
    AGENT_ERROR = "agent_error"
    AGENT_COMPLETE = "agent_complete"
    AGENT_STALE = "agent_stale"

    HOOK_PASSED = "hook_passed"
    HOOK_FAILED = "hook_failed"

    EXECUTOR_PAUSED = "executor_paused"
    EXECUTOR_RESUMED = "executor_resumed"

    AUTO_RETRY = "auto_retry"
    AUTO_REVIEW = "auto_review"
    AUTO_COOLDOWN = "auto_cooldown"
    AUTO_BLOCK = "auto_block"

    ERROR_CLASSIFIED = "error_classified"
    ERROR_PATTERN_DETECTED = "error_pattern_detected"
    ERROR_THRESHOLD_REACHED = "error_threshold_reached"

    OWNERSHIP_CONFLICT = "ownership_conflict"


@dataclass(frozen=True)
class AgentEvent:
    """An immutable record in the event log."""

    type: EventKind
    task_id: str
    payload: Mapping[str, Any] = field(default_factory=dict)
    timestamp: float = 0.0

    def __post_init__(self) -> None:
        # Freeze the payload view so listeners cannot rewrite history.
        object.__setattr__(self, "payload", MappingProxyType(dict(self.payload)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "task_id": self.task_id,
            "payload": dict(self.payload),
            "timestamp": self.timestamp,
        }
