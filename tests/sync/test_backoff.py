"""Tests for persisted board backoff state.

Covers the process-wide rate-limit deadline, per-command failure windows
that double per failure, the payload warning throttle, and merging with
state written by another process.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from agent_fleet.sync.backoff import BackoffState, normalize_command_key


# -----------------------------------------------------------------------------
# Fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
def state_path(tmp_path: Path) -> Path:
    return tmp_path / "gh-backoff.json"


@pytest.fixture
def backoff(state_path: Path, clock) -> BackoffState:
    """Create a file-backed backoff state on the fake clock."""
    return BackoffState(state_path, clock=clock, warning_throttle_seconds=60, max_backoff_seconds=600)


# -----------------------------------------------------------------------------
# Tests for the rate-limit deadline
# -----------------------------------------------------------------------------


class TestRateLimit:
    """Tests for record_rate_limit() and rate_limit_remaining()."""

    def test_deadline_and_remaining(self, backoff: BackoffState, clock) -> None:
        """Verify the deadline counts down with the clock."""
        deadline = backoff.record_rate_limit(60)

        assert deadline == clock.now + 60
        clock.advance(45)
        assert backoff.rate_limit_remaining() == pytest.approx(15)
        clock.advance(30)
        assert backoff.rate_limit_remaining() == 0.0

    def test_shorter_window_does_not_shrink_deadline(self, backoff: BackoffState, clock) -> None:
        """Verify a later, shorter rate limit keeps the longer deadline."""
        backoff.record_rate_limit(120)

        assert backoff.record_rate_limit(10) == clock.now + 120

    def test_persists_across_instances(self, backoff: BackoffState, state_path: Path, clock) -> None:
        """Verify a new process sees the established window."""
        backoff.record_rate_limit(60)

        reloaded = BackoffState(state_path, clock=clock)

        assert reloaded.rate_limit_remaining() == pytest.approx(60)


# -----------------------------------------------------------------------------
# Tests for command failure windows
# -----------------------------------------------------------------------------


class TestCommandBackoff:
    """Tests for per-command failure backoff."""

    def test_window_doubles_per_failure(self, backoff: BackoffState, clock) -> None:
        """Verify consecutive failures double the window up to the cap."""
        windows = []
        for _ in range(6):
            until = backoff.record_command_failure("project-item-list:7", backoff_seconds=60, error="HTTP 500")
            windows.append(until - clock.now)

        assert windows == [60, 120, 240, 480, 600, 600]
        assert backoff.command_failures("project-item-list:7") == 6

    def test_remaining_and_expiry(self, backoff: BackoffState, clock) -> None:
        """Verify the window expires with the clock."""
        backoff.record_command_failure("k", backoff_seconds=60)

        assert backoff.command_backoff_remaining("k") == pytest.approx(60)
        clock.advance(61)
        assert backoff.command_backoff_remaining("k") == 0.0

    def test_success_clears(self, backoff: BackoffState, state_path: Path, clock) -> None:
        """Verify success forgets the failure, also on disk."""
        backoff.record_command_failure("k", backoff_seconds=60)

        backoff.record_command_success("k")

        assert backoff.command_failures("k") == 0
        assert BackoffState(state_path, clock=clock).command_failures("k") == 0

    def test_keys_are_normalized(self, backoff: BackoffState) -> None:
        """Verify keys ignore whitespace and case."""
        backoff.record_command_failure("Project Item-List : 7", backoff_seconds=60)

        assert normalize_command_key("Project Item-List : 7") == "projectitem-list:7"
        assert backoff.command_failures("projectitem-list:7") == 1

    def test_reason_and_error_are_recorded(self, backoff: BackoffState, state_path: Path) -> None:
        """Verify the persisted entry carries reason and a truncated error."""
        backoff.record_command_failure("k", backoff_seconds=60, error="x" * 800, reason="invalid_payload")

        data = json.loads(state_path.read_text())
        entry = data["commands"]["k"]
        assert entry["reason"] == "invalid_payload"
        assert len(entry["last_error"]) == 500
        assert data["version"] == 1


# -----------------------------------------------------------------------------
# Tests for the warning throttle
# -----------------------------------------------------------------------------


class TestWarningThrottle:
    """Tests for should_warn()."""

    def test_throttles_per_key(self, backoff: BackoffState, clock) -> None:
        """Verify each role/name/reason warns at most once per window."""
        assert backoff.should_warn("project", "7", "object(empty)") is True
        assert backoff.should_warn("project", "7", "object(empty)") is False
        assert backoff.should_warn("project", "8", "object(empty)") is True

        clock.advance(61)
        assert backoff.should_warn("project", "7", "object(empty)") is True

    def test_reset_payload_warnings(self, backoff: BackoffState) -> None:
        """Verify resetting the throttle re-enables warnings."""
        backoff.should_warn("issues", "acme/widgets", "null")

        backoff.reset_payload_warnings()

        assert backoff.should_warn("issues", "acme/widgets", "null") is True


# -----------------------------------------------------------------------------
# Tests for persistence and reset
# -----------------------------------------------------------------------------


class TestPersistence:
    """Tests for load/save merging and reset()."""

    def test_save_merges_other_writers(self, backoff: BackoffState, state_path: Path, clock) -> None:
        """Verify entries written by another process survive our save."""
        other = BackoffState(state_path, clock=clock)
        other.record_command_failure("other-key", backoff_seconds=60)

        backoff.record_command_failure("mine", backoff_seconds=60)

        reloaded = BackoffState(state_path, clock=clock)
        assert reloaded.command_failures("other-key") == 1
        assert reloaded.command_failures("mine") == 1

    def test_corrupt_file_is_ignored(self, state_path: Path, clock) -> None:
        """Verify an unreadable state file starts clean."""
        state_path.write_text("{corrupt")

        state = BackoffState(state_path, clock=clock)

        assert state.rate_limit_remaining() == 0.0
        assert state.commands == {}

    def test_bad_values_are_skipped(self, state_path: Path, clock) -> None:
        """Verify entries with unusable values are dropped instead of failing the load."""
        state_path.write_text(
            json.dumps(
                {
                    "rate_limit_until": "soon",
                    "commands": {
                        "broken": {"failures": "x"},
                        "also-broken": {"until": [1, 2]},
                        "issuelist": {"failures": 2, "until": clock.now + 30},
                    },
                    "payload_warnings": {"w": "never"},
                }
            )
        )

        state = BackoffState(state_path, clock=clock)

        assert state.rate_limit_remaining() == 0.0
        assert set(state.commands) == {"issuelist"}
        assert state.command_failures("issue list") == 2
        assert state.payload_warnings == {}

    def test_reset(self, backoff: BackoffState, state_path: Path, clock) -> None:
        """Verify reset clears memory and disk."""
        backoff.record_rate_limit(60)
        backoff.record_command_failure("k", backoff_seconds=60)

        backoff.reset()

        assert backoff.rate_limit_remaining() == 0.0
        reloaded = BackoffState(state_path, clock=clock)
        assert reloaded.rate_limit_remaining() == 0.0
        assert reloaded.command_failures("k") == 0

    def test_in_memory_state(self, clock) -> None:
        """Verify a pathless state works and save reports False."""
        state = BackoffState(clock=clock)
        state.record_command_failure("k", backoff_seconds=5)

        assert state.command_failures("k") == 1
        assert state.save() is False
