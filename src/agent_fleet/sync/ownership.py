"""Task ownership resolution and conflict detection.

A task's local owner is, in order of authority:

1. ``shared_state_owner_id``
2. ``meta["sharedState"]["ownerId"]`` (or ``owner_id``)
3. ``claimed_by`` (legacy)
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Union

SHARED_STATE_KEY = "sharedState"


def _field(task: Any, name: str) -> Any:
    if isinstance(task, Mapping):
        return task.get(name)
    return getattr(task, name, None)


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def get_shared_owner_id(state: Optional[Mapping[str, Any]]) -> Optional[str]:
    """Owner id from a shared-state blob, accepting both key spellings."""
    if not isinstance(state, Mapping):
        return None
    return _clean(state.get("ownerId")) or _clean(state.get("owner_id"))


def normalize_shared_state(state: Any) -> Optional[dict]:
    """Copy of ``state`` with snake_case aliases folded into the camelCase keys."""
    if not isinstance(state, Mapping):
        return None
    normalized = dict(state)
    for camel, snake in (
        ("ownerId", "owner_id"),
        ("attemptToken", "attempt_token"),
        ("attemptStarted", "attempt_started"),
        ("heartbeat", "ownerHeartbeat"),
        ("retryCount", "retry_count"),
    ):
        if not normalized.get(camel) and normalized.get(snake) is not None:
            normalized[camel] = normalized[snake]
    if not normalized.get("status") and normalized.get("attemptStatus") in ("claimed", "working", "stale"):
        normalized["status"] = normalized["attemptStatus"]
    return normalized


def resolve_local_owner(task: Any) -> Optional[str]:
    """Resolve the single local owner of ``task``, or None."""
    if task is None:
        return None
    owner = _clean(_field(task, "shared_state_owner_id"))
    if owner:
        return owner
    meta = _field(task, "meta")
    if isinstance(meta, Mapping):
        owner = get_shared_owner_id(meta.get(SHARED_STATE_KEY))
        if owner:
            return owner
    return _clean(_field(task, "claimed_by"))


def _parse_timestamp(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, datetime):
        moment = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return moment.timestamp()
    try:
        moment = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.timestamp()


def last_owner_activity(task: Any) -> Optional[float]:
    """Most recent of the shared-state heartbeat and ``claimed_at``, in epoch seconds."""
    candidates = [_parse_timestamp(_field(task, "claimed_at"))]
    meta = _field(task, "meta")
    if isinstance(meta, Mapping):
        state = normalize_shared_state(meta.get(SHARED_STATE_KEY))
        if state:
            candidates.append(_parse_timestamp(state.get("heartbeat")))
    known = [c for c in candidates if c is not None]
    return max(known) if known else None


def is_claim_stale(task: Any, now: float, ttl: Union[int, float]) -> bool:
    """True when the local claim is known to be stale.

    Stale means the shared state says so explicitly, or the last owner
    activity is older than ``ttl`` seconds. A task with no recorded
    activity is not stale.
    """
    if task is None:
        return False
    meta = _field(task, "meta")
    if isinstance(meta, Mapping):
        state = normalize_shared_state(meta.get(SHARED_STATE_KEY)) or {}
        if state.get("status") == "stale":
            return True
    activity = last_owner_activity(task)
    if activity is None:
        return False
    return now - activity > ttl


def has_owner_conflict(local_owner: Optional[str], remote_owner: Optional[str], stale: bool = False) -> bool:
    """Conflict only when both owners are known, they differ, and the local claim is live."""
    if stale:
        return False
    local_owner = _clean(local_owner)
    remote_owner = _clean(remote_owner)
    return bool(local_owner and remote_owner and local_owner != remote_owner)
