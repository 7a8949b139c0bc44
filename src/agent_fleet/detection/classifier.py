"""Error classification and the per-task recovery state machine."""

from __future__ import annotations

import time
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from agent_fleet.config import ClassifierConfig
from agent_fleet.detection.patterns import (
    PATTERN_DESCRIPTIONS,
    PATTERN_SEVERITY,
    REMEDIATION_HINTS,
    UNKNOWN_CONFIDENCE,
    PatternName,
    Severity,
    match_text,
)
from agent_fleet.monitoring.logging import get_logger

logger = get_logger(__name__)

EXCERPT_LIMIT = 1500
RAW_MATCH_LIMIT = 200


class RecoveryAction(str, Enum):
    RETRY_WITH_PROMPT = "retry_with_prompt"
    COOLDOWN = "cooldown"
    MANUAL = "manual"
    BLOCK = "block"


@dataclass(frozen=True)
class ErrorClassification:
    """Result of matching a piece of agent output against the pattern library."""

    pattern: PatternName
    confidence: float
    details: str
    raw_match: Optional[str] = None
    severity: Severity = Severity.LOW
    remediation: Optional[str] = None
    excerpt: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pattern": self.pattern.value,
            "confidence": self.confidence,
            "details": self.details,
            "raw_match": self.raw_match,
            "severity": self.severity.value,
            "remediation": self.remediation,
        }


@dataclass(frozen=True)
class RecoveryVerdict:
    """What the orchestrator should do about a failed attempt."""

    action: RecoveryAction
    reason: str
    error_count: int
    prompt: Optional[str] = None
    cooldown_seconds: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "reason": self.reason,
            "error_count": self.error_count,
            "prompt": self.prompt,
            "cooldown_seconds": self.cooldown_seconds,
        }


@dataclass
class RecoveryState:
    """Per-task counters. Mutated only by ``ErrorClassifier.record_error``."""

    error_count: int = 0
    last_pattern: Optional[PatternName] = None
    cooldown_until: float = 0.0
    pattern_counts: Dict[PatternName, int] = field(default_factory=lambda: defaultdict(int))


def _truncate(text: Optional[str], limit: int) -> str:
    if not text:
        return ""
    return text if len(text) <= limit else text[:limit] + "..."


def _quote(excerpt: str) -> str:
    if not excerpt:
        return ""
    return f"\n\nFailing output:\n```\n{excerpt}\n```"


WORKFLOW_PROMPTS: Dict[PatternName, str] = {
    PatternName.PUSH_FAILURE: (
        "git push failed. Check the error output:\n"
        "1. If pre-push hooks failed, fix the lint/test/build errors and push again\n"
        "2. If the remote rejected the push, run git pull --rebase, resolve conflicts and push\n"
        "Do NOT use --no-verify."
    ),
    PatternName.TEST_FAILURE: (
        "Tests are failing. Read the exact failure output. Fix the implementation, "
        "not the tests, unless a test has an obvious bug. Run the failing test to "
        "verify your fix before pushing."
    ),
    PatternName.LINT_FAILURE: (
        "Linting or formatting failed. Fix the specific lint errors reported with "
        "minimal targeted changes, then re-run the linter to verify."
    ),
    PatternName.BUILD_FAILURE: (
        "The build failed. Carefully read the error output, fix the root cause, "
        "and build again before committing. Do NOT skip tests."
    ),
}

GIT_CONFLICT_PROMPT = (
    "There are git merge conflicts. Run `git status` to find the conflicting files, "
    "resolve each conflict, then `git add` and `git commit`. Do NOT leave conflict "
    "markers in the code."
)

CODEX_SANDBOX_PROMPT = (
    "A sandbox error stopped the last command. Check that the workspace is in the "
    "sandbox's writable roots and that file permissions allow the operation, then "
    "retry the command."
)

REQUEST_ERROR_PROMPT = (
    "The API returned a client error (400, 404 or 422). The request itself is "
    "malformed. Check the endpoint, the request body, and the required parameters "
    "before retrying. Do NOT simply resend the same request."
)

PLAN_STUCK_PROMPT = (
    "You created a plan but did not implement it. Do NOT create another plan and "
    "do NOT ask for permission. Make the code changes now, then test, commit, and push."
)

TOKEN_OVERFLOW_PROMPT = (
    "Your previous session exceeded the context limit. This is a fresh session on "
    "the same worktree. Run `git log --oneline -10` and `git diff --stat` to see what "
    "was already done, then continue from there. Do NOT restart from scratch."
)

SESSION_EXPIRED_PROMPT = (
    "Your previous session expired. Review the current state of the worktree and "
    "continue the task from where it stopped."
)


class ErrorClassifier:
    """Classifies agent failures and decides how to recover.

    ``record_error`` keeps a counter per ``(task, pattern)`` pair so each
    category has its own retry budget, plus an overall count of counted
    errors that blocks the task once it reaches ``max_consecutive_errors``.
    Rate limits and transient API errors are throttling, not failure, and
    never touch the counters.
    """

    def __init__(
        self,
        config: Optional[ClassifierConfig] = None,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or ClassifierConfig()
        self._clock = clock
        self._states: Dict[str, RecoveryState] = {}
        self._rate_limit_hits: List[float] = []
        self._total_errors = 0
        self._total_recoveries = 0

    # -------------------------------------------------------------------------
    # Classification
    # -------------------------------------------------------------------------

    def classify(self, output: Optional[str], error: Optional[str] = None) -> ErrorClassification:
        """Classify agent output and/or an error message. Never raises."""
        combined = "\n".join(part for part in (output, error) if part)
        if not combined:
            return ErrorClassification(
                pattern=PatternName.UNKNOWN,
                confidence=0.0,
                details="No output to analyse",
            )

        excerpt = _truncate(combined.strip(), EXCERPT_LIMIT)
        found = match_text(combined)
        if found is None:
            return ErrorClassification(
                pattern=PatternName.UNKNOWN,
                confidence=UNKNOWN_CONFIDENCE,
                details=PATTERN_DESCRIPTIONS[PatternName.UNKNOWN],
                excerpt=excerpt,
            )

        group, match = found
        return ErrorClassification(
            pattern=group.name,
            confidence=group.confidence,
            details=PATTERN_DESCRIPTIONS.get(group.name, ""),
            raw_match=_truncate(match.group(0), RAW_MATCH_LIMIT) or None,
            severity=PATTERN_SEVERITY.get(group.name, Severity.LOW),
            remediation=REMEDIATION_HINTS.get(group.name),
            excerpt=excerpt,
        )

    # -------------------------------------------------------------------------
    # Recovery state machine
    # -------------------------------------------------------------------------

    def record_error(self, task_id: str, classification: ErrorClassification) -> RecoveryVerdict:
        """Record a failure for ``task_id`` and return the recovery verdict."""
        if not task_id or classification is None:
            return RecoveryVerdict(
                action=RecoveryAction.MANUAL,
                reason="Missing task id or classification",
                error_count=0,
            )

        now = self._clock()
        state = self._states.setdefault(task_id, RecoveryState())
        pattern = classification.pattern
        state.last_pattern = pattern
        self._total_errors += 1

        if pattern in (PatternName.RATE_LIMITED, PatternName.API_ERROR):
            return self._throttle(state, pattern, now)

        state.error_count += 1
        state.pattern_counts[pattern] += 1
        occurrence = state.pattern_counts[pattern]
        verdict = self._decide(task_id, state, classification, occurrence)

        logger.info(
            "classifier.verdict",
            task_id=task_id,
            pattern=pattern.value,
            occurrence=occurrence,
            action=verdict.action.value,
            error_count=verdict.error_count,
        )
        return verdict

    def _throttle(self, state: RecoveryState, pattern: PatternName, now: float) -> RecoveryVerdict:
        cooldown = self.config.rate_limit_cooldown_seconds
        state.cooldown_until = max(state.cooldown_until, now + cooldown)
        if pattern == PatternName.RATE_LIMITED:
            self._rate_limit_hits.append(now)
            self._prune_rate_limit_hits(now)
            reason = "Rate limited, cooling down before retry"
        else:
            reason = "Transient API error, retry after cooldown"
        return RecoveryVerdict(
            action=RecoveryAction.COOLDOWN,
            reason=reason,
            error_count=state.error_count,
            cooldown_seconds=cooldown,
        )

    def _decide(
        self,
        task_id: str,
        state: RecoveryState,
        classification: ErrorClassification,
        occurrence: int,
    ) -> RecoveryVerdict:
        pattern = classification.pattern
        count = state.error_count

        if pattern in (PatternName.AUTH_ERROR, PatternName.MODEL_ERROR, PatternName.CONTENT_POLICY):
            return RecoveryVerdict(
                action=RecoveryAction.BLOCK,
                reason=f"{PATTERN_DESCRIPTIONS[pattern]}. Retrying cannot fix this; fix the configuration first.",
                error_count=count,
            )

        if count >= self.config.max_consecutive_errors:
            return RecoveryVerdict(
                action=RecoveryAction.BLOCK,
                reason=f"Task has {count} consecutive errors (max {self.config.max_consecutive_errors})",
                error_count=count,
            )

        if pattern in WORKFLOW_PROMPTS:
            ceiling = self.config.workflow_retry_ceiling
            label = pattern.value.replace("_", " ").capitalize()
            if occurrence >= ceiling:
                return RecoveryVerdict(
                    action=RecoveryAction.MANUAL,
                    reason=f"{label} persists after {occurrence} attempts, needs manual review",
                    error_count=count,
                    prompt=WORKFLOW_PROMPTS[pattern] + _quote(classification.excerpt),
                )
            return RecoveryVerdict(
                action=RecoveryAction.RETRY_WITH_PROMPT,
                reason=f"{label} (attempt {occurrence}/{ceiling}), retrying with fix prompt",
                error_count=count,
                prompt=WORKFLOW_PROMPTS[pattern] + _quote(classification.excerpt),
            )

        if pattern == PatternName.GIT_CONFLICT:
            if occurrence >= 2:
                return RecoveryVerdict(
                    action=RecoveryAction.MANUAL,
                    reason="Git conflicts persist, needs manual resolution",
                    error_count=count,
                )
            return RecoveryVerdict(
                action=RecoveryAction.RETRY_WITH_PROMPT,
                reason="Git conflict detected, retrying with resolution prompt",
                error_count=count,
                prompt=GIT_CONFLICT_PROMPT,
            )

        if pattern in (PatternName.CODEX_SANDBOX, PatternName.REQUEST_ERROR):
            if occurrence >= 2:
                return RecoveryVerdict(
                    action=RecoveryAction.BLOCK,
                    reason=f"{PATTERN_DESCRIPTIONS[pattern]} persists after retry",
                    error_count=count,
                )
            prompt = CODEX_SANDBOX_PROMPT if pattern == PatternName.CODEX_SANDBOX else REQUEST_ERROR_PROMPT
            return RecoveryVerdict(
                action=RecoveryAction.RETRY_WITH_PROMPT,
                reason=f"{PATTERN_DESCRIPTIONS[pattern]} (attempt 1/2)",
                error_count=count,
                prompt=prompt + _quote(classification.excerpt),
            )

        if pattern in (PatternName.PLAN_STUCK, PatternName.TOKEN_OVERFLOW, PatternName.SESSION_EXPIRED):
            prompts = {
                PatternName.PLAN_STUCK: PLAN_STUCK_PROMPT,
                PatternName.TOKEN_OVERFLOW: TOKEN_OVERFLOW_PROMPT,
                PatternName.SESSION_EXPIRED: SESSION_EXPIRED_PROMPT,
            }
            return RecoveryVerdict(
                action=RecoveryAction.RETRY_WITH_PROMPT,
                reason=PATTERN_DESCRIPTIONS[pattern],
                error_count=count,
                prompt=prompts[pattern],
            )

        if occurrence >= self.config.generic_retry_ceiling:
            return RecoveryVerdict(
                action=RecoveryAction.MANUAL,
                reason=f"{PATTERN_DESCRIPTIONS.get(pattern, pattern.value)} repeated {occurrence} times, needs manual review",
                error_count=count,
            )
        cooldown = self.config.rate_limit_cooldown_seconds
        state.cooldown_until = self._clock() + cooldown
        return RecoveryVerdict(
            action=RecoveryAction.COOLDOWN,
            reason=f"{PATTERN_DESCRIPTIONS.get(pattern, pattern.value)}, retry after cooldown",
            error_count=count,
            cooldown_seconds=cooldown,
        )

    # -------------------------------------------------------------------------
    # Executor kill-switch
    # -------------------------------------------------------------------------

    def _prune_rate_limit_hits(self, now: float) -> None:
        cutoff = now - self.config.cooldown_seconds
        self._rate_limit_hits = [t for t in self._rate_limit_hits if t > cutoff]

    def should_pause_executor(self) -> bool:
        """True once rate-limit hits inside the window exceed the threshold."""
        self._prune_rate_limit_hits(self._clock())
        return len(self._rate_limit_hits) > self.config.rate_limit_pause_threshold

    # -------------------------------------------------------------------------
    # Lifecycle and stats
    # -------------------------------------------------------------------------

    def reset_task(self, task_id: str) -> None:
        """Forget recovery state for a task (on start or successful completion)."""
        state = self._states.pop(task_id, None)
        if state is not None:
            self._total_recoveries += state.error_count

    def get_recovery_state(self, task_id: str) -> Optional[RecoveryState]:
        return self._states.get(task_id)

    def get_stats(self) -> Dict[str, Any]:
        self._prune_rate_limit_hits(self._clock())
        return {
            "total_errors": self._total_errors,
            "total_recoveries": self._total_recoveries,
            "active_task_errors": len(self._states),
            "rate_limit_hits_in_window": len(self._rate_limit_hits),
            "task_breakdown": {task_id: s.error_count for task_id, s in self._states.items()},
        }

    # -------------------------------------------------------------------------
    # Historical analysis
    # -------------------------------------------------------------------------

    def analyze_historical_errors(self, logs_dir: Union[str, Path], limit: int = 20) -> Dict[str, Any]:
        """Classify the newest agent log files and suggest configuration changes."""
        counts: Dict[str, int] = defaultdict(int)
        recommendations: List[str] = []

        directory = Path(logs_dir)
        if not directory.is_dir():
            return {"patterns": {}, "recommendations": []}

        log_files = sorted(directory.glob("*.log"), key=lambda p: p.stat().st_mtime)[-limit:]
        for log_file in log_files:
            try:
                content = log_file.read_text(encoding="utf-8", errors="replace")
            except OSError as exc:
                logger.debug("classifier.log_unreadable", path=str(log_file), error=str(exc))
                continue
            counts[self.classify(content).pattern.value] += 1

        if counts.get(PatternName.RATE_LIMITED.value, 0) > 3:
            recommendations.append("Frequent rate limiting: reduce parallelism or add delays")
        if counts.get(PatternName.PLAN_STUCK.value, 0) > 3:
            recommendations.append("Agents often stop after planning: instruct them to implement immediately")
        if counts.get(PatternName.TOKEN_OVERFLOW.value, 0) > 2:
            recommendations.append("Token overflow occurring: split large tasks or summarize context")

        return {"patterns": dict(counts), "recommendations": recommendations}
