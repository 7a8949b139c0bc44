"""Stream-level retry helpers for executor turns."""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Optional, Union

MAX_STREAM_RETRIES = 5

# Substrings of transport faults that are safe to retry on the same session.
TRANSIENT_STREAM_MARKERS = (
    "stream disconnected",
    "response.failed",
    "stream closed before",
    "stream ended before",
    "turn.failed",
    "connection reset",
    "econnreset",
    "socket hang up",
    "network socket disconnected",
    "etimedout",
    "epipe",
    "socket timeout",
    "bad gateway",
    "service temporarily unavailable",
    "service_unavailable",
    "rate_limit_exceeded",
    "overloaded_error",
)

# HTTP status codes that are transient unless the body says the request was invalid.
TRANSIENT_STATUS_CODES = ("502", "503", "504", "529")


def is_transient_stream_error(error: Union[BaseException, str, None]) -> bool:
    """Return True for network or stream faults worth retrying."""
    if error is None:
        return False
    message = str(error).lower()
    if not message:
        return False
    if any(marker in message for marker in TRANSIENT_STREAM_MARKERS):
        return True
    if "invalid_request" in message:
        return False
    return any(code in message for code in TRANSIENT_STATUS_CODES)


@dataclass
class RetryConfig:
    """Configuration for stream retry behavior."""

    max_retries: int = MAX_STREAM_RETRIES  # Retries after the first attempt
    base_delay_seconds: float = 2.0
    max_delay_seconds: float = 32.0
    jitter_seconds: float = 1.0

    @classmethod
    def from_dict(cls, config: dict) -> "RetryConfig":
        """Create RetryConfig from a dictionary."""
        return cls(
            max_retries=config.get("max_retries", MAX_STREAM_RETRIES),
            base_delay_seconds=config.get("base_delay_seconds", 2.0),
            max_delay_seconds=config.get("max_delay_seconds", 32.0),
            jitter_seconds=config.get("jitter_seconds", 1.0),
        )


def stream_retry_delay(attempt: int, config: Optional[RetryConfig] = None) -> float:
    """Delay before retry ``attempt`` (0-indexed): 2s, 4s, 8s ... capped, plus jitter."""
    cfg = config or RetryConfig()
    delay = min(cfg.base_delay_seconds * (2 ** max(attempt, 0)), cfg.max_delay_seconds)
    return delay + random.random() * cfg.jitter_seconds
