"""Behavioral stall detection over a window of recent agent messages.

Single errors are handled by the classifier; this module looks at the
shape of a whole session (which tools ran, what the agent said, which
errors repeated) to catch agents that are stuck without failing.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence

from agent_fleet.detection.patterns import PatternName


class MessageType(str, Enum):
    TOOL_CALL = "tool_call"
    AGENT_MESSAGE = "agent_message"
    ERROR = "error"
    SYSTEM = "system"


@dataclass(frozen=True)
class AgentMessage:
    """One entry of a session transcript."""

    type: MessageType
    content: str = ""
    tool_name: Optional[str] = None
    tool_args: Optional[Any] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AgentMessage":
        meta = data.get("meta") or {}
        raw_type = str(data.get("type") or MessageType.SYSTEM.value)
        try:
            message_type = MessageType(raw_type)
        except ValueError:
            message_type = MessageType.SYSTEM
        return cls(
            type=message_type,
            content=str(data.get("content") or ""),
            tool_name=data.get("tool_name") or meta.get("toolName") or meta.get("tool_name"),
            tool_args=data.get("tool_args", meta.get("args")),
        )


@dataclass
class SequenceAnalysis:
    patterns: List[PatternName] = field(default_factory=list)
    primary: Optional[PatternName] = None
    details: Dict[PatternName, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "patterns": [p.value for p in self.patterns],
            "primary": self.primary.value if self.primary else None,
            "details": {p.value: text for p, text in self.details.items()},
        }


# Most actionable first.
PRIMARY_PRIORITY: Sequence[PatternName] = (
    PatternName.RATE_LIMITED,
    PatternName.PLAN_STUCK,
    PatternName.FALSE_COMPLETION,
    PatternName.COMMITS_NO_PUSH,
    PatternName.PERMISSION_WAIT,
    PatternName.ERROR_LOOP,
    PatternName.NEEDS_CLARIFICATION,
    PatternName.TOOL_LOOP,
    PatternName.ANALYSIS_PARALYSIS,
    PatternName.NO_PROGRESS,
)

TOOL_LOOP_THRESHOLD = 5
TOOL_LOOP_MAX_DISTINCT_ARGS = 2
PARALYSIS_MIN_TOOL_CALLS = 10
PARALYSIS_MIN_READS = 8
NO_PROGRESS_MIN_MESSAGES = 5
ERROR_LOOP_RUN = 3
RATE_LIMIT_MIN_ERRORS = 2

READ_TOOL_MARKERS = ("read", "search", "grep", "list", "find", "cat", "glob", "view")
WRITE_TOOL_MARKERS = ("write", "edit", "create", "replace", "patch", "append")

PLAN_PHRASES = (
    "here's the plan",
    "here is my plan",
    "i'll create a plan",
    "plan.md",
    "ready to start implementing",
    "ready to begin",
    "would you like me to proceed",
    "shall i start",
    "would you like me to implement",
)

CLARIFICATION_PHRASES = (
    "need clarification",
    "need more information",
    "could you clarify",
    "unclear",
    "ambiguous",
    "which approach",
    "please specify",
    "i need to know",
    "can you provide",
    "what should i",
)

COMPLETION_PHRASES = (
    "task complete",
    "task is complete",
    "i've completed",
    "all done",
    "successfully completed",
    "changes have been committed",
    "pushed to",
    "pr created",
    "pull request created",
)

PERMISSION_PHRASES = (
    "do you want me to",
    "should i proceed",
    "should i continue",
    "waiting for your",
    "let me know if",
    "please confirm",
    "would you like",
    "whenever you're ready",
)

RATE_LIMIT_TEXT = re.compile(r"rate.?limit|\b429\b|too many requests|quota", re.IGNORECASE)


def _tool_label(message: AgentMessage) -> str:
    return (message.tool_name or message.content or "").lower()


def _args_signature(message: AgentMessage) -> str:
    if message.tool_args is None:
        return message.content
    try:
        return json.dumps(message.tool_args, sort_keys=True, default=str)
    except (TypeError, ValueError):
        return repr(message.tool_args)


def _is_write(message: AgentMessage) -> bool:
    label = _tool_label(message)
    return any(marker in label for marker in WRITE_TOOL_MARKERS)


def _is_read(message: AgentMessage) -> bool:
    label = _tool_label(message)
    return any(marker in label for marker in READ_TOOL_MARKERS)


def _coerce(messages: Iterable[Any]) -> List[AgentMessage]:
    result = []
    for message in messages:
        if isinstance(message, AgentMessage):
            result.append(message)
        elif isinstance(message, dict):
            result.append(AgentMessage.from_dict(message))
    return result


def analyze_message_sequence(messages: Optional[Iterable[Any]]) -> SequenceAnalysis:
    """Detect behavioral stalls in a window of recent messages.

    Accepts ``AgentMessage`` instances or plain dicts with ``type``,
    ``content`` and optional ``meta.toolName``. Each pattern is computed
    independently; ``primary`` is the highest-priority one present.
    """
    analysis = SequenceAnalysis()
    window = _coerce(messages or [])
    if not window:
        return analysis

    found: Dict[PatternName, str] = {}
    tool_calls = [m for m in window if m.type == MessageType.TOOL_CALL]
    agent_messages = [m for m in window if m.type == MessageType.AGENT_MESSAGE]
    errors = [m for m in window if m.type == MessageType.ERROR]
    agent_text = " ".join(m.content for m in agent_messages).lower()
    tool_text = [m.content.lower() for m in tool_calls]

    # Same tool, same few argument sets, over and over
    if len(tool_calls) >= TOOL_LOOP_THRESHOLD:
        recent = tool_calls[-TOOL_LOOP_THRESHOLD:]
        names = {(m.tool_name or "unknown").lower() for m in recent}
        signatures = {_args_signature(m) for m in recent}
        if len(names) == 1 and len(signatures) <= TOOL_LOOP_MAX_DISTINCT_ARGS:
            found[PatternName.TOOL_LOOP] = (
                f"Repeated tool: {next(iter(names))} ({len(recent)}x in last {TOOL_LOOP_THRESHOLD}, "
                f"{len(signatures)} distinct argument sets)"
            )

    write_calls = [m for m in tool_calls if _is_write(m)]

    if len(tool_calls) >= PARALYSIS_MIN_TOOL_CALLS:
        read_calls = [m for m in tool_calls if _is_read(m)]
        if len(read_calls) >= PARALYSIS_MIN_READS and not write_calls:
            found[PatternName.ANALYSIS_PARALYSIS] = (
                f"{len(read_calls)} read ops, 0 write ops in {len(tool_calls)} tool calls"
            )

    if any(p in agent_text for p in PLAN_PHRASES) and len(write_calls) <= 1:
        found[PatternName.PLAN_STUCK] = "Agent created a plan but did not implement it"

    if any(p in agent_text for p in CLARIFICATION_PHRASES):
        found[PatternName.NEEDS_CLARIFICATION] = "Agent expressed uncertainty or asked for input"

    claims_done = any(p in agent_text for p in COMPLETION_PHRASES)
    has_commit = any("git commit" in text for text in tool_text)
    has_push = any("git push" in text for text in tool_text)
    if claims_done and not (has_commit or has_push):
        found[PatternName.FALSE_COMPLETION] = "Agent claims completion but no git commit or push was run"
    if claims_done and has_commit and not has_push:
        found[PatternName.COMMITS_NO_PUSH] = "Agent committed changes but never pushed them"

    rate_limit_errors = [m for m in errors if RATE_LIMIT_TEXT.search(m.content)]
    if len(rate_limit_errors) >= RATE_LIMIT_MIN_ERRORS:
        found[PatternName.RATE_LIMITED] = f"{len(rate_limit_errors)} rate limit errors detected"

    last_agent = agent_messages[-1].content.lower() if agent_messages else ""
    if any(p in last_agent for p in PERMISSION_PHRASES):
        found[PatternName.PERMISSION_WAIT] = "Agent's last message asks for permission and will never get an answer"

    if len(window) >= NO_PROGRESS_MIN_MESSAGES and not tool_calls and len(agent_messages) <= 1:
        found[PatternName.NO_PROGRESS] = (
            f"{len(window)} messages but no tool calls and at most one agent message"
        )

    if len(errors) >= ERROR_LOOP_RUN:
        last_run = [m.content[:100] for m in errors[-ERROR_LOOP_RUN:]]
        if all(text == last_run[0] for text in last_run):
            found[PatternName.ERROR_LOOP] = f'Same error repeated {ERROR_LOOP_RUN}x: "{last_run[0][:80]}"'

    analysis.patterns = [p for p in PRIMARY_PRIORITY if p in found]
    analysis.details = {p: found[p] for p in analysis.patterns}
    analysis.primary = analysis.patterns[0] if analysis.patterns else None
    return analysis


def _with_detail(lines: List[str], analysis: SequenceAnalysis, pattern: PatternName) -> List[str]:
    detail = analysis.details.get(pattern)
    if detail:
        lines.insert(3, f"Detail: {detail}")
    return lines


def get_recovery_prompt_for_analysis(task_title: str, analysis: Optional[SequenceAnalysis]) -> str:
    """Build the directive re-injected into the agent's context for ``analysis.primary``."""
    if analysis is None or analysis.primary is None:
        return f'Continue working on task "{task_title}". Focus on implementation.'

    primary = analysis.primary
    if primary == PatternName.PLAN_STUCK:
        lines = [
            "# CONTINUE IMPLEMENTATION - Do Not Plan",
            "",
            f'You wrote a plan for "{task_title}" but stopped before implementing it.',
            "",
            "DO NOT create another plan. DO NOT ask for permission.",
            "Implement the changes NOW:",
            "1. Edit the necessary files",
            "2. Run tests to verify",
            "3. Commit with a conventional commit message",
            "4. Push to the branch",
        ]
    elif primary == PatternName.TOOL_LOOP:
        lines = _with_detail([
            "# BREAK THE LOOP - Change Approach",
            "",
            f'You have been repeating the same tool without making progress on "{task_title}".',
            "",
            "STOP and take a different approach:",
            "1. Summarize what you have learned so far",
            "2. Identify what is blocking you",
            "3. Try a different strategy",
            "4. Make incremental progress: edit files, commit, push",
        ], analysis, primary)
    elif primary == PatternName.ANALYSIS_PARALYSIS:
        lines = _with_detail([
            "# START EDITING - Stop Just Reading",
            "",
            f'You have been reading files but not changing anything for "{task_title}".',
            "",
            "You have enough context. Start implementing:",
            "1. Create or edit the files needed",
            "2. Work incrementally instead of trying to understand everything first",
            "3. Commit and push after each meaningful change",
        ], analysis, primary)
    elif primary == PatternName.NEEDS_CLARIFICATION:
        lines = [
            "# MAKE A DECISION - Do Not Wait for Input",
            "",
            f'You expressed uncertainty about "{task_title}" but this is autonomous execution.',
            "No one will respond to your questions.",
            "",
            "Choose the most reasonable approach and proceed:",
            "1. Pick the simplest correct implementation",
            "2. Document any assumptions in code comments",
            "3. Implement, test, commit, and push",
        ]
    elif primary == PatternName.FALSE_COMPLETION:
        lines = [
            "# ACTUALLY COMPLETE THE TASK",
            "",
            f'You claimed "{task_title}" was complete, but no git commit or push was detected.',
            "",
            "The task is NOT complete until changes are committed and pushed:",
            "1. Stage your changes: git add -A",
            '2. Commit: git commit -m "feat(scope): description"',
            "3. Push: git push origin <branch>",
            "4. Verify the push succeeded",
        ]
    elif primary == PatternName.RATE_LIMITED:
        lines = [
            "# RATE LIMITED - Wait and Retry",
            "",
            f'You hit rate limits while working on "{task_title}".',
            "Wait 30 seconds, then continue with smaller, focused operations.",
            "Avoid large file reads or many parallel tool calls.",
        ]
    elif primary == PatternName.COMMITS_NO_PUSH:
        lines = [
            "# PUSH YOUR COMMITS",
            "",
            f'You committed changes for "{task_title}" but never pushed them.',
            "",
            "Run now:",
            "  git push --set-upstream origin $(git branch --show-current)",
            "",
            "If pre-push hooks fail, fix the reported issues and push again.",
            "Do NOT use --no-verify.",
        ]
    elif primary == PatternName.PERMISSION_WAIT:
        lines = [
            "# DO NOT WAIT FOR INPUT",
            "",
            f'You appear to be waiting for human input on "{task_title}".',
            "This is fully autonomous execution and no human will respond.",
            "",
            "Make the best engineering decision and continue:",
            "1. Choose the simplest correct approach",
            "2. Implement it now",
            "3. Test, commit, and push",
        ]
    elif primary == PatternName.ERROR_LOOP:
        lines = _with_detail([
            "# BREAK THE ERROR LOOP",
            "",
            f'You have hit the same error several times on "{task_title}".',
            "",
            "The current approach is NOT working. Try something different:",
            "1. Read the error message carefully and find the root cause",
            "2. Fix the underlying issue, not just the symptom",
            "3. If a tool keeps failing, use a different tool or approach",
            "4. Make a small change, verify it works, commit it",
        ], analysis, primary)
    elif primary == PatternName.NO_PROGRESS:
        lines = [
            "# START WORKING",
            "",
            f'No meaningful progress detected on "{task_title}".',
            "You have sent messages but made no tool calls and no code changes.",
            "",
            "Start now:",
            "1. Identify the first file to modify",
            "2. Edit it",
            "3. Test the change",
            "4. Commit and push",
        ]
    else:
        return f'Continue working on task "{task_title}". Focus on making concrete progress.'

    return "\n".join(lines)
