"""Tests for task ownership resolution and conflict detection."""

from __future__ import annotations

from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from agent_fleet.sync.ownership import (
    get_shared_owner_id,
    has_owner_conflict,
    is_claim_stale,
    last_owner_activity,
    normalize_shared_state,
    resolve_local_owner,
)

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc).timestamp()


# -----------------------------------------------------------------------------
# Tests for resolve_local_owner()
# -----------------------------------------------------------------------------


class TestResolveLocalOwner:
    """Tests for the owner precedence chain."""

    def test_shared_state_owner_id_wins(self) -> None:
        """Verify the authoritative column beats meta and the legacy claim."""
        task = {
            "shared_state_owner_id": "agent-a",
            "meta": {"sharedState": {"ownerId": "agent-b"}},
            "claimed_by": "agent-c",
        }

        assert resolve_local_owner(task) == "agent-a"

    def test_meta_shared_state_next(self) -> None:
        """Verify the shared-state blob is used when the column is empty."""
        task = {"shared_state_owner_id": "  ", "meta": {"sharedState": {"owner_id": "agent-b"}}, "claimed_by": "agent-c"}

        assert resolve_local_owner(task) == "agent-b"

    def test_legacy_claim_last(self) -> None:
        """Verify claimed_by is the final fallback and objects are accepted."""
        task = SimpleNamespace(shared_state_owner_id=None, meta={}, claimed_by="agent-c")

        assert resolve_local_owner(task) == "agent-c"

    def test_no_owner(self) -> None:
        """Verify None when nothing names an owner."""
        assert resolve_local_owner({"meta": None}) is None
        assert resolve_local_owner(None) is None


# -----------------------------------------------------------------------------
# Tests for shared-state helpers
# -----------------------------------------------------------------------------


class TestSharedState:
    """Tests for get_shared_owner_id() and normalize_shared_state()."""

    def test_get_shared_owner_id(self) -> None:
        """Verify both key spellings and non-mappings."""
        assert get_shared_owner_id({"ownerId": "a"}) == "a"
        assert get_shared_owner_id({"owner_id": " b "}) == "b"
        assert get_shared_owner_id("nope") is None

    def test_normalize_folds_aliases(self) -> None:
        """Verify snake_case and legacy keys are folded into camelCase."""
        state = normalize_shared_state(
            {"owner_id": "a", "attempt_token": "tok", "ownerHeartbeat": "2026-03-01T11:00:00Z", "attemptStatus": "working"}
        )

        assert state["ownerId"] == "a"
        assert state["attemptToken"] == "tok"
        assert state["heartbeat"] == "2026-03-01T11:00:00Z"
        assert state["status"] == "working"

    def test_normalize_keeps_existing_camel_case(self) -> None:
        """Verify camelCase values are not overwritten by aliases."""
        state = normalize_shared_state({"ownerId": "a", "owner_id": "b"})

        assert state["ownerId"] == "a"
        assert normalize_shared_state(None) is None


# -----------------------------------------------------------------------------
# Tests for staleness
# -----------------------------------------------------------------------------


class TestClaimStaleness:
    """Tests for last_owner_activity() and is_claim_stale()."""

    def test_explicit_stale_status(self) -> None:
        """Verify a shared state marked stale is stale regardless of time."""
        task = {"meta": {"sharedState": {"ownerId": "a", "status": "stale"}}}

        assert is_claim_stale(task, NOW, 3600) is True

    def test_old_claim_is_stale(self) -> None:
        """Verify a claim older than the TTL is stale."""
        task = {"claimed_at": datetime(2026, 3, 1, 10, 0, 0), "meta": {}}

        assert is_claim_stale(task, NOW, 3600) is True

    def test_recent_heartbeat_keeps_claim_live(self) -> None:
        """Verify the newest of claim time and heartbeat is used."""
        task = {
            "claimed_at": datetime(2026, 3, 1, 10, 0, 0),
            "meta": {"sharedState": {"ownerId": "a", "heartbeat": "2026-03-01T11:50:00Z"}},
        }

        assert last_owner_activity(task) == NOW - 600
        assert is_claim_stale(task, NOW, 3600) is False

    def test_no_activity_is_not_stale(self) -> None:
        """Verify tasks without any recorded activity are not stale."""
        assert is_claim_stale({"meta": {}}, NOW, 3600) is False
        assert is_claim_stale(None, NOW, 3600) is False

    def test_unparseable_heartbeat_is_ignored(self) -> None:
        """Verify garbage timestamps do not count as activity."""
        task = {"meta": {"sharedState": {"ownerId": "a", "heartbeat": "yesterday"}}}

        assert last_owner_activity(task) is None


# -----------------------------------------------------------------------------
# Tests for has_owner_conflict()
# -----------------------------------------------------------------------------


class TestHasOwnerConflict:
    """Tests for the conflict predicate."""

    @pytest.mark.parametrize(
        "local,remote,stale,expected",
        [
            ("agent-a", "agent-b", False, True),
            ("agent-a", "agent-a", False, False),
            ("agent-a", "agent-b", True, False),
            (None, "agent-b", False, False),
            ("agent-a", None, False, False),
            ("  ", "agent-b", False, False),
        ],
    )
    def test_cases(self, local, remote, stale: bool, expected: bool) -> None:
        """Verify conflicts need two known, different owners and a live claim."""
        assert has_owner_conflict(local, remote, stale) is expected
