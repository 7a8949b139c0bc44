"""Tests for stream retry helpers."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from agent_fleet.core.retry import (
    MAX_STREAM_RETRIES,
    RetryConfig,
    is_transient_stream_error,
    stream_retry_delay,
)


# -----------------------------------------------------------------------------
# Tests for is_transient_stream_error()
# -----------------------------------------------------------------------------


class TestIsTransientStreamError:
    """Tests for transient stream fault detection."""

    @pytest.mark.parametrize(
        "message",
        [
            "stream disconnected before completion",
            "Error: read ECONNRESET",
            "socket hang up",
            "upstream returned 502 Bad Gateway",
            "HTTP 529 overloaded",
            "overloaded_error: try again",
        ],
    )
    def test_transient(self, message: str) -> None:
        """Verify transport faults are retryable."""
        assert is_transient_stream_error(RuntimeError(message)) is True

    def test_status_code_with_invalid_request(self) -> None:
        """Verify a status code alone is not enough when the request was invalid."""
        assert is_transient_stream_error("503 invalid_request_error: bad schema") is False

    def test_marker_beats_invalid_request(self) -> None:
        """Verify explicit stream markers win over the invalid_request guard."""
        assert is_transient_stream_error("stream disconnected; invalid_request") is True

    def test_not_transient(self) -> None:
        """Verify ordinary errors and empty input are not retryable."""
        assert is_transient_stream_error("permission denied") is False
        assert is_transient_stream_error(None) is False
        assert is_transient_stream_error("") is False


# -----------------------------------------------------------------------------
# Tests for RetryConfig and stream_retry_delay()
# -----------------------------------------------------------------------------


class TestRetryConfig:
    """Tests for RetryConfig defaults and from_dict()."""

    def test_defaults(self) -> None:
        """Verify default values."""
        config = RetryConfig()

        assert config.max_retries == MAX_STREAM_RETRIES == 5
        assert config.base_delay_seconds == 2.0
        assert config.max_delay_seconds == 32.0

    def test_from_dict(self) -> None:
        """Verify partial dictionaries fall back to defaults."""
        config = RetryConfig.from_dict({"max_retries": 2, "jitter_seconds": 0})

        assert config.max_retries == 2
        assert config.jitter_seconds == 0
        assert config.base_delay_seconds == 2.0


class TestStreamRetryDelay:
    """Tests for the exponential delay schedule."""

    def test_doubles_and_caps(self) -> None:
        """Verify 2s, 4s, 8s ... capped at the maximum."""
        config = RetryConfig(jitter_seconds=0.0)

        delays = [stream_retry_delay(attempt, config) for attempt in range(6)]

        assert delays == [2.0, 4.0, 8.0, 16.0, 32.0, 32.0]

    def test_jitter_is_added(self) -> None:
        """Verify jitter scales with random()."""
        with patch("agent_fleet.core.retry.random.random", return_value=0.5):
            assert stream_retry_delay(0, RetryConfig(jitter_seconds=1.0)) == 2.5

    def test_negative_attempt_treated_as_first(self) -> None:
        """Verify negative attempts do not shrink the base delay."""
        assert stream_retry_delay(-3, RetryConfig(jitter_seconds=0.0)) == 2.0
