"""Failure taxonomy for board CLI calls."""

from __future__ import annotations

import re
from typing import Optional, Sequence, Union

RATE_LIMIT_MARKERS = (
    "rate limit",
    "secondary rate",
    "abuse detection",
    "too many requests",
    "retry after",
)

TRANSIENT_MARKERS = (
    "bad gateway",
    "service unavailable",
    "gateway timeout",
    "connection reset",
    "connection refused",
    "connection timed out",
    "econnreset",
    "econnrefused",
    "etimedout",
    "socket hang up",
    "i/o timeout",
    "tls handshake timeout",
)

OWNER_TYPE_MARKERS = (
    "unknown owner type",
    "could not resolve to a projectv2 owner",
    "could not resolve to an owner",
    "could not resolve to a user",
    "could not resolve to an organization",
    "project not found",
)

_HTTP_404 = re.compile(r"\b404\b|http 404|status 404", re.IGNORECASE)
_GRAPHQL_UNRESOLVED = "could not resolve to an issue or pull request"
_ISSUE_FIELDS = ("(repository.issue)", "(repository.pullrequest)", "(repository.issueorpullrequest)")

ErrorLike = Union[BaseException, str, None]


class GhCommandError(RuntimeError):
    """A ``gh`` invocation failed."""

    def __init__(
        self,
        message: str,
        *,
        args: Sequence[str] = (),
        stderr: str = "",
        returncode: Optional[int] = None,
    ):
        super().__init__(message)
        self.command_args = tuple(args)
        self.stderr = stderr
        self.returncode = returncode

    def __str__(self) -> str:
        base = super().__str__()
        if self.stderr and self.stderr not in base:
            return f"{base}: {self.stderr.strip()}"
        return base


class RateLimitedError(GhCommandError):
    """The board API is throttling us; nothing should be sent before ``retry_after``."""

    def __init__(self, message: str, *, retry_after: float, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class CommandBackoffError(GhCommandError):
    """A project command is inside its persisted failure backoff window."""

    def __init__(self, message: str, *, retry_after: float, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


def _text(error: ErrorLike) -> str:
    if error is None:
        return ""
    return str(error).lower()


def is_rate_limit_error(error: ErrorLike) -> bool:
    text = _text(error)
    if not text:
        return False
    if any(marker in text for marker in RATE_LIMIT_MARKERS):
        return True
    return "403" in text and "limit" in text


def is_transient_error(error: ErrorLike) -> bool:
    text = _text(error)
    if not text:
        return False
    if any(marker in text for marker in TRANSIENT_MARKERS):
        return True
    return bool(re.search(r"\b(?:502|503|504)\b", text))


def is_not_found_error(error: ErrorLike) -> bool:
    """True when the remote object is gone.

    GraphQL "could not resolve" errors count only when scoped to the
    issue or pull request field; any other GraphQL failure is a real error.
    """
    text = _text(error)
    if not text:
        return False
    if _GRAPHQL_UNRESOLVED in text:
        return any(scope in text for scope in _ISSUE_FIELDS)
    if "could not resolve" in text:
        return False
    return bool(_HTTP_404.search(text))


def is_owner_type_error(error: ErrorLike) -> bool:
    text = _text(error)
    return bool(text) and any(marker in text for marker in OWNER_TYPE_MARKERS)
