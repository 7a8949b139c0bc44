"""Pattern library for classifying raw agent output.

Groups are evaluated top to bottom and the first group with a matching
regex wins. Order encodes priority: failures that retrying can never fix
come first so they short-circuit every retry path, then transient
infrastructure faults, then workflow failures, then behavioral stalls.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Pattern, Tuple


class PatternName(str, Enum):
    """Closed set of error and behavior categories."""

    AUTH_ERROR = "auth_error"
    MODEL_ERROR = "model_error"
    CONTENT_POLICY = "content_policy"
    RATE_LIMITED = "rate_limited"
    API_ERROR = "api_error"
    TOKEN_OVERFLOW = "token_overflow"
    SESSION_EXPIRED = "session_expired"
    REQUEST_ERROR = "request_error"
    CODEX_SANDBOX = "codex_sandbox"
    OOM_KILL = "oom_kill"
    OOM = "oom"
    PUSH_FAILURE = "push_failure"
    GIT_CONFLICT = "git_conflict"
    TEST_FAILURE = "test_failure"
    LINT_FAILURE = "lint_failure"
    BUILD_FAILURE = "build_failure"
    PLAN_STUCK = "plan_stuck"
    PERMISSION_WAIT = "permission_wait"
    EMPTY_RESPONSE = "empty_response"

    # Only produced by message sequence analysis
    TOOL_LOOP = "tool_loop"
    ANALYSIS_PARALYSIS = "analysis_paralysis"
    NEEDS_CLARIFICATION = "needs_clarification"
    FALSE_COMPLETION = "false_completion"
    COMMITS_NO_PUSH = "commits_no_push"
    ERROR_LOOP = "error_loop"
    NO_PROGRESS = "no_progress"

    UNKNOWN = "unknown"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


def _compile(*patterns: str, flags: int = re.IGNORECASE) -> Tuple[Pattern[str], ...]:
    return tuple(re.compile(p, flags) for p in patterns)


AUTH_ERROR_PATTERNS = _compile(
    r"invalid.?api.?key|incorrect.?api.?key",
    r"authentication_error|permission_error",
    r"authentication.*failed|unauthenticated",
    r"401 Unauthorized|403 Forbidden",
    r"invalid.*credentials|bad.*credentials",
    r"billing_hard_limit_reached|insufficient_quota",
    r"access.?denied|not.?authorized",
    r"OPENAI_API_KEY.*invalid|ANTHROPIC_API_KEY.*invalid",
)

MODEL_ERROR_PATTERNS = _compile(
    r"model.*not.*found|model.*not.*supported",
    r"invalid.*model|model.*does.*not.*exist",
    r"not_found_error.*model",
    r"model.*deprecated|model.*unavailable",
    r"engine.*not.*found|deployment.*not.*found",
)

CONTENT_POLICY_PATTERNS = _compile(
    r"content_policy_violation|content.?filter",
    r"safety_system|safety.*filter",
    r"flagged.*content|unsafe.*content",
    r"output.*blocked|response.*blocked",
    r"responsible.?ai|content.?management",
)

# Token-size complaints are left to TOKEN_OVERFLOW_PATTERNS.
RATE_LIMIT_PATTERNS = _compile(
    r"\b429\b|rate.?limit|too many requests",
    r"quota exceeded|billing.*limit",
    r"tokens per minute|TPM.*limit",
    r"resource.?exhausted|(?:at|over) capacity",
    r"please try again later",
)

API_ERROR_PATTERNS = _compile(
    r"ECONNREFUSED|ETIMEDOUT|ENOTFOUND|ECONNRESET",
    r"500 Internal Server Error",
    r"502 Bad Gateway|503 Service Unavailable|504 Gateway Timeout",
    r"408 Request Timeout",
    r"network.*(?:error|failure|unreachable)",
    r"fetch failed|request failed",
    r"overloaded_error|server_error|engine_overloaded",
)

TOKEN_OVERFLOW_PATTERNS = _compile(
    r"context.*(?:too long|exceeded|overflow|maximum)",
    r"max.*(?:context|token|length).*exceeded",
    r"conversation.*too.*long",
    r"input.*too.*large",
    r"reduce.*(?:context|input|message)",
    r"413 Payload Too Large",
    r"context_length_exceeded",
    r"prompt.*(?:too long|too large)|prompt_too_long",
    r"token_budget.*exceeded",
    r"turn_limit_reached",
    r"string_above_max_length",
    r"maximum.*number.*tokens|Request too large",
)

SESSION_EXPIRED_PATTERNS = _compile(
    r"session.*expired|invalid.*session",
    r"thread.*not.*found|conversation.*not.*found",
    r"token.*expired|invalid.*token",
)

REQUEST_ERROR_PATTERNS = _compile(
    r"400 Bad Request",
    r"invalid_request_error",
    r"malformed.*request|malformed.*json|invalid.*json",
    r"422 Unprocessable Entity",
    r"validation.*failed|invalid.*parameter|missing.*parameter",
    r"payload.*too.*large",
    r"404 Not Found",
    r"invalid.*endpoint|endpoint.*not.*found",
    r"Failed to parse request body as json",
)

CODEX_SANDBOX_PATTERNS = _compile(
    r"sandbox.*fail|sandbox.*error",
    r"bubblewrap.*error|bwrap.*(?:error|fail)",
    r"EPERM.*operation.*not.*permitted",
    r"writable_roots",
    r"codex.*(?:segfault|killed|crash)",
    r"namespace.*error|unshare.*fail",
)

OOM_KILL_PATTERNS = (
    re.compile(r"SIGKILL"),
    re.compile(r"killed.*out.?of.?memory|oom.?kill", re.IGNORECASE),
    re.compile(r"out of memory: kill process", re.IGNORECASE),
)

OOM_PATTERNS = _compile(
    r"heap out of memory|javascript heap",
    r"fatal error.*allocation failed|allocation failure",
    r"process out of memory|MemoryError",
)

PUSH_FAILURE_PATTERNS = _compile(
    r"git push.*fail|rejected.*push|push.*rejected",
    r"pre-push hook.*fail",
    r"remote.*rejected|remote:.*error",
    r"failed to push|push.*error",
    r"non-fast-forward|fetch first|stale info",
)

GIT_CONFLICT_PATTERNS = _compile(
    r"merge conflict|CONFLICT.*Merge",
    r"rebase.*conflict",
    r"cannot.*merge|unable to merge",
    r"both modified",
    r"cannot rebase|rebase failed",
)

TEST_FAILURE_PATTERNS = (
    re.compile(r"^FAIL\s+\S+", re.MULTILINE),
    re.compile(r"\btests?\b.*\bfail|tests? failed", re.IGNORECASE),
    re.compile(r"--- FAIL:"),
    re.compile(r"✗|✘|\bFAILED\b"),
    re.compile(r"AssertionError|assertion failed", re.IGNORECASE),
    re.compile(r"expected.*but got|expected.*received", re.IGNORECASE),
)

LINT_FAILURE_PATTERNS = _compile(
    r"golangci-lint.*error",
    r"eslint.*error|prettier.*error",
    r"lint.*failed|linting.*error",
    r"gofmt.*differ|goimports.*differ",
    r"ruff.*(?:error|failed)|flake8.*error",
)

BUILD_FAILURE_PATTERNS = _compile(
    r"go build.*failed|compilation (?:error|failed)",
    r"build failed|failed to build",
    r"npm ERR|pnpm.*error",
    r"cargo build.*error|error\[E\d+\]",
)

PLAN_STUCK_PATTERNS = (
    re.compile(r"ready to (?:start|begin|implement)", re.IGNORECASE),
    re.compile(r"would you like me to (?:proceed|start|implement|continue)", re.IGNORECASE),
    re.compile(r"shall i (?:start|begin|implement|proceed)", re.IGNORECASE),
    re.compile(r"here'?s the plan", re.IGNORECASE),
    re.compile(r"created plan at", re.IGNORECASE),
    re.compile(r"plan\.md$", re.MULTILINE),
    re.compile(r"I'?ve (?:created|outlined|prepared) a plan", re.IGNORECASE),
    re.compile(r"awaiting (?:your|further) (?:input|instructions|confirmation)", re.IGNORECASE),
)

PERMISSION_WAIT_PATTERNS = _compile(
    r"waiting for.*input|waiting for.*response",
    r"please provide|please specify|please confirm",
    r"do you want me to|should I\b",
    r"what would you prefer",
    r"which option|which approach",
    r"I need your.*input|I need.*confirmation",
)

EMPTY_RESPONSE_PATTERNS = _compile(
    r"\A\s*\Z",
    r"no output|empty response|blank response",
    r"agent produced no output",
)


@dataclass(frozen=True)
class PatternGroup:
    """One row of the priority table."""

    name: PatternName
    confidence: float
    regexes: Tuple[Pattern[str], ...]

    def first_match(self, text: str) -> Optional["re.Match[str]"]:
        for regex in self.regexes:
            match = regex.search(text)
            if match:
                return match
        return None


PATTERN_GROUPS: Tuple[PatternGroup, ...] = (
    # Never fixable by retrying
    PatternGroup(PatternName.AUTH_ERROR, 0.97, AUTH_ERROR_PATTERNS),
    PatternGroup(PatternName.MODEL_ERROR, 0.92, MODEL_ERROR_PATTERNS),
    PatternGroup(PatternName.CONTENT_POLICY, 0.96, CONTENT_POLICY_PATTERNS),
    # Transient infrastructure
    PatternGroup(PatternName.RATE_LIMITED, 0.95, RATE_LIMIT_PATTERNS),
    PatternGroup(PatternName.API_ERROR, 0.90, API_ERROR_PATTERNS),
    PatternGroup(PatternName.TOKEN_OVERFLOW, 0.90, TOKEN_OVERFLOW_PATTERNS),
    PatternGroup(PatternName.SESSION_EXPIRED, 0.90, SESSION_EXPIRED_PATTERNS),
    PatternGroup(PatternName.REQUEST_ERROR, 0.91, REQUEST_ERROR_PATTERNS),
    PatternGroup(PatternName.CODEX_SANDBOX, 0.88, CODEX_SANDBOX_PATTERNS),
    PatternGroup(PatternName.OOM_KILL, 0.97, OOM_KILL_PATTERNS),
    PatternGroup(PatternName.OOM, 0.95, OOM_PATTERNS),
    # Workflow
    PatternGroup(PatternName.PUSH_FAILURE, 0.85, PUSH_FAILURE_PATTERNS),
    PatternGroup(PatternName.GIT_CONFLICT, 0.85, GIT_CONFLICT_PATTERNS),
    PatternGroup(PatternName.TEST_FAILURE, 0.83, TEST_FAILURE_PATTERNS),
    PatternGroup(PatternName.LINT_FAILURE, 0.82, LINT_FAILURE_PATTERNS),
    PatternGroup(PatternName.BUILD_FAILURE, 0.80, BUILD_FAILURE_PATTERNS),
    # Behavioral
    PatternGroup(PatternName.PLAN_STUCK, 0.85, PLAN_STUCK_PATTERNS),
    PatternGroup(PatternName.PERMISSION_WAIT, 0.75, PERMISSION_WAIT_PATTERNS),
    PatternGroup(PatternName.EMPTY_RESPONSE, 0.70, EMPTY_RESPONSE_PATTERNS),
)

UNKNOWN_CONFIDENCE = 0.3

PATTERN_SEVERITY: Dict[PatternName, Severity] = {
    PatternName.AUTH_ERROR: Severity.HIGH,
    PatternName.MODEL_ERROR: Severity.HIGH,
    PatternName.CONTENT_POLICY: Severity.HIGH,
    PatternName.RATE_LIMITED: Severity.MEDIUM,
    PatternName.API_ERROR: Severity.MEDIUM,
    PatternName.TOKEN_OVERFLOW: Severity.MEDIUM,
    PatternName.SESSION_EXPIRED: Severity.MEDIUM,
    PatternName.REQUEST_ERROR: Severity.MEDIUM,
    PatternName.CODEX_SANDBOX: Severity.HIGH,
    PatternName.OOM_KILL: Severity.CRITICAL,
    PatternName.OOM: Severity.CRITICAL,
    PatternName.PUSH_FAILURE: Severity.MEDIUM,
    PatternName.GIT_CONFLICT: Severity.MEDIUM,
    PatternName.TEST_FAILURE: Severity.MEDIUM,
    PatternName.LINT_FAILURE: Severity.LOW,
    PatternName.BUILD_FAILURE: Severity.MEDIUM,
    PatternName.PLAN_STUCK: Severity.LOW,
    PatternName.PERMISSION_WAIT: Severity.LOW,
    PatternName.EMPTY_RESPONSE: Severity.LOW,
}

PATTERN_DESCRIPTIONS: Dict[PatternName, str] = {
    PatternName.AUTH_ERROR: "API key invalid, expired, or missing",
    PatternName.MODEL_ERROR: "Model not found, deprecated, or unavailable",
    PatternName.CONTENT_POLICY: "Content policy or safety filter violation",
    PatternName.RATE_LIMITED: "API rate limit or quota exceeded",
    PatternName.API_ERROR: "API connection or server error",
    PatternName.TOKEN_OVERFLOW: "Context or token limit exceeded",
    PatternName.SESSION_EXPIRED: "Agent session or thread expired",
    PatternName.REQUEST_ERROR: "Bad request (400/404/422): invalid payload or endpoint",
    PatternName.CODEX_SANDBOX: "Sandbox or permission error in the agent CLI",
    PatternName.OOM_KILL: "Process killed by the OS for running out of memory",
    PatternName.OOM: "Process ran out of heap memory",
    PatternName.PUSH_FAILURE: "Git push or pre-push hook failure",
    PatternName.GIT_CONFLICT: "Git merge or rebase conflict",
    PatternName.TEST_FAILURE: "Unit or integration test failure",
    PatternName.LINT_FAILURE: "Lint or formatting failure",
    PatternName.BUILD_FAILURE: "Build or compilation failure",
    PatternName.PLAN_STUCK: "Agent created a plan but did not implement it",
    PatternName.PERMISSION_WAIT: "Agent is waiting for human input",
    PatternName.EMPTY_RESPONSE: "Agent produced no meaningful output",
    PatternName.UNKNOWN: "Unclassified error",
}

REMEDIATION_HINTS: Dict[PatternName, str] = {
    PatternName.RATE_LIMITED: "Wait a few minutes before retrying. Consider lowering parallelism.",
    PatternName.OOM: "Lower parallelism or raise the memory available to agents.",
    PatternName.OOM_KILL: "Process was killed by the OS. Reduce memory usage or add RAM.",
    PatternName.GIT_CONFLICT: "Manual conflict resolution required. Run: git mergetool",
    PatternName.PUSH_FAILURE: "Push rejected. Run: git rebase --abort, then try again.",
    PatternName.AUTH_ERROR: "Authentication failed. Check API tokens and credentials.",
    PatternName.MODEL_ERROR: "Check the configured model name.",
    PatternName.API_ERROR: "Network connectivity issue. Check the connection to the provider.",
}


def match_text(text: str) -> Optional[Tuple[PatternGroup, "re.Match[str]"]]:
    """Return the first group matching ``text`` and its match, or None."""
    if text is None:
        return None
    for group in PATTERN_GROUPS:
        match = group.first_match(text)
        if match:
            return group, match
    return None
