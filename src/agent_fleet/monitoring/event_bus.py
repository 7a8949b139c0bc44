"""Central hub for agent lifecycle signals.

Every executor signal enters through ``AgentEventBus``: it is deduplicated,
recorded in a bounded log, broadcast to the UI, and delivered to listeners.
Failure signals are routed through the error classifier and turned into
auto-actions (retry, cooldown, block). Heartbeats feed the liveness map
that the periodic stale sweep inspects.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections import Counter, deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Tuple

from agent_fleet.config import EventBusConfig
from agent_fleet.core.events import AgentEvent, EventKind
from agent_fleet.detection.classifier import (
    ErrorClassification,
    ErrorClassifier,
    RecoveryAction,
    RecoveryVerdict,
)
from agent_fleet.monitoring.logging import get_logger
from agent_fleet.monitoring.notifications import NotificationType

logger = get_logger(__name__)

Listener = Callable[[AgentEvent], Any]

SYSTEM_TASK_ID = "system"
STATUS_SOURCE = "agent-event-bus"


@dataclass
class LivenessRecord:
    """Heartbeat bookkeeping for one task."""

    task_id: str
    last_heartbeat: float
    alive: bool = True
    stale_since_seconds: float = 0.0
    flagged: bool = False  # AGENT_STALE already emitted for this episode

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "last_heartbeat": self.last_heartbeat,
            "alive": self.alive,
            "stale_since_seconds": self.stale_since_seconds,
        }


@dataclass
class AutoActionState:
    retry_count: int = 0
    last_retry_at: float = 0.0
    cooldown_until: float = 0.0


def _task_ref(task: Any) -> Tuple[str, str]:
    """Extract ``(task_id, title)`` from a Task row, a dict, or a bare id."""
    if task is None:
        return "unknown", ""
    if isinstance(task, str):
        return task, ""
    if isinstance(task, Mapping):
        task_id = task.get("id") or task.get("task_id") or "unknown"
        return str(task_id), str(task.get("title") or "")
    return str(getattr(task, "id", None) or "unknown"), str(getattr(task, "title", "") or "")


class AgentEventBus:
    """Records, deduplicates and fans out agent lifecycle events."""

    def __init__(
        self,
        config: Optional[EventBusConfig] = None,
        *,
        classifier: Optional[ErrorClassifier] = None,
        broadcast_ui_event: Optional[Callable[[Tuple[str, ...], str, Dict[str, Any]], Any]] = None,
        notifier: Optional[Any] = None,
        set_task_status: Optional[Callable[[str, str, str], Any]] = None,
        get_task: Optional[Callable[[str], Any]] = None,
        review_agent: Optional[Any] = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the bus.

        Args:
            config: Capacity, dedup, liveness and retry settings
            classifier: Error classifier consulted on failure events
            broadcast_ui_event: ``(channels, type, payload)`` UI push
            notifier: Object with ``notify(type, message, task_id=...)``
            set_task_status: ``(task_id, status, source)`` task store setter
            get_task: Resolves a task id to a task record for titles and reviews
            review_agent: Object with ``queue_review(dict)``
            clock: Time source in epoch seconds
        """
        self.config = config or EventBusConfig()
        self.classifier = classifier
        self._broadcast_ui_event = broadcast_ui_event
        self._notifier = notifier
        self._set_task_status = set_task_status
        self._get_task = get_task
        self._review_agent = review_agent
        self._clock = clock

        self._event_log: Deque[AgentEvent] = deque(maxlen=self.config.max_event_log)
        self._listeners: List[Listener] = []
        self._liveness: Dict[str, LivenessRecord] = {}
        self._error_history: Dict[str, List[Dict[str, Any]]] = {}
        self._auto_actions: Dict[str, AutoActionState] = {}
        self._executor_paused = False
        self._started = False
        self._sweep_task: Optional[asyncio.Task] = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Arm the stale sweep. Safe to call repeatedly."""
        if self._started:
            return
        self._started = True
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("event_bus.no_running_loop", detail="stale sweep not armed")
        else:
            self._sweep_task = loop.create_task(self._sweep_loop())
        logger.info(
            "event_bus.started",
            stale_threshold_seconds=self.config.stale_threshold_seconds,
            stale_check_interval_seconds=self.config.stale_check_interval_seconds,
        )

    def stop(self) -> None:
        """Disarm the stale sweep. Safe to call repeatedly."""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            self._sweep_task = None
        if self._started:
            self._started = False
            logger.info("event_bus.stopped")

    @property
    def started(self) -> bool:
        return self._started

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.stale_check_interval_seconds)
            try:
                self.check_stale_agents()
            except Exception as e:
                logger.warning("event_bus.sweep_failed", error=str(e))

    # =========================================================================
    # Emission
    # =========================================================================

    def emit(
        self,
        type: EventKind,
        task_id: str,
        payload: Optional[Mapping[str, Any]] = None,
        *,
        skip_broadcast: bool = False,
    ) -> Optional[AgentEvent]:
        """Record an event and deliver it.

        Returns the recorded event, or None when it duplicated the
        immediately preceding event inside the dedup window.
        """
        now = self._clock()
        task_id = str(task_id)
        if self._event_log:
            last = self._event_log[-1]
            if (
                last.type == type
                and last.task_id == task_id
                and now - last.timestamp < self.config.dedupe_window_seconds
            ):
                logger.debug("event_bus.deduped", type=type.value, task_id=task_id)
                return None

        event = AgentEvent(type=type, task_id=task_id, payload=dict(payload or {}), timestamp=now)
        self._event_log.append(event)

        if not skip_broadcast:
            self._broadcast(event)
        for listener in list(self._listeners):
            self._invoke("listener", listener, event)
        return event

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Subscribe to every recorded event. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _broadcast(self, event: AgentEvent) -> None:
        if self._broadcast_ui_event is None:
            return
        body = {"task_id": event.task_id, **event.payload, "ts": event.timestamp}
        self._invoke(
            "broadcast",
            self._broadcast_ui_event,
            tuple(self.config.broadcast_channels),
            event.type.value,
            body,
        )

    def _invoke(self, role: str, fn: Callable[..., Any], *args: Any) -> Any:
        """Call a collaborator, isolating and logging its failures."""
        try:
            result = fn(*args)
        except Exception as e:
            logger.warning("event_bus.callback_failed", role=role, error=str(e))
            return None
        if inspect.isawaitable(result):
            self._schedule(role, result)
            return None
        return result

    def _schedule(self, role: str, awaitable: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            logger.warning("event_bus.async_callback_without_loop", role=role)
            return

        task = loop.create_task(awaitable)

        def _done(t: "asyncio.Task[Any]") -> None:
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.warning("event_bus.callback_failed", role=role, error=str(exc))

        task.add_done_callback(_done)

    def _notify(self, notification_type: NotificationType, message: str, task_id: Optional[str] = None) -> None:
        if self._notifier is None:
            return
        self._invoke("notify", lambda: self._notifier.notify(notification_type, message, task_id=task_id))

    def _update_status(self, task_id: str, status: str, source: str) -> None:
        if self._set_task_status is None:
            return
        self._invoke("set_task_status", self._set_task_status, task_id, status, source)

    def _resolve_task(self, task_id: str) -> Any:
        if self._get_task is None:
            return None
        return self._invoke("get_task", self._get_task, task_id)

    def _title_for(self, task_id: str) -> str:
        task = self._resolve_task(task_id)
        _, title = _task_ref(task) if task is not None else (task_id, "")
        return title or task_id

    # =========================================================================
    # Typed wrappers
    # =========================================================================

    def on_task_started(self, task: Any, slot: Optional[Mapping[str, Any]] = None) -> None:
        task_id, title = _task_ref(task)
        slot = slot or {}
        self.emit(
            EventKind.TASK_STARTED,
            task_id,
            {
                "title": title,
                "sdk": slot.get("sdk") or "unknown",
                "agent_instance_id": slot.get("agent_instance_id"),
                "branch": slot.get("branch"),
                "worktree_path": slot.get("worktree_path"),
            },
        )
        self._auto_actions[task_id] = AutoActionState()
        if self.classifier is not None:
            self.classifier.reset_task(task_id)

    def on_task_completed(self, task: Any, result: Optional[Mapping[str, Any]] = None) -> None:
        task_id, title = _task_ref(task)
        result = result or {}
        success = bool(result.get("success"))
        has_commits = bool(result.get("has_commits"))
        self.emit(
            EventKind.TASK_COMPLETED,
            task_id,
            {
                "title": title,
                "attempts": result.get("attempts") or 1,
                "success": success,
                "has_commits": has_commits,
                "branch": result.get("branch"),
                "pr_url": result.get("pr_url"),
                "pr_number": result.get("pr_number"),
            },
        )
        self._auto_actions.pop(task_id, None)
        if success and self.classifier is not None:
            self.classifier.reset_task(task_id)
        if success and has_commits:
            self._trigger_auto_review(task, result)

    def on_task_failed(self, task: Any, error: Any) -> Optional[RecoveryVerdict]:
        """Record a failure and run it through classification and auto-actions."""
        task_id, title = _task_ref(task)
        message = error if isinstance(error, str) else str(error)
        self.emit(EventKind.TASK_FAILED, task_id, {"title": title, "error": message})
        if self.classifier is None:
            return None
        classification = self.classifier.classify(message, "")
        return self._handle_classification(task_id, classification, message)

    def on_agent_complete(self, task_id: str, body: Optional[Mapping[str, Any]] = None) -> None:
        body = body or {}
        has_commits = bool(body.get("has_commits"))
        self.emit(
            EventKind.AGENT_COMPLETE,
            task_id,
            {
                "has_commits": has_commits,
                "branch": body.get("branch"),
                "pr_url": body.get("pr_url"),
                "pr_number": body.get("pr_number"),
            },
        )
        if has_commits:
            self._update_status(task_id, "inreview", STATUS_SOURCE)
            task = self._resolve_task(task_id)
            self._trigger_auto_review(task if task is not None else task_id, body)

    def on_agent_error(self, task_id: str, body: Optional[Mapping[str, Any]] = None) -> Optional[RecoveryVerdict]:
        body = body or {}
        message = str(body.get("error") or "Unknown error")
        self.emit(EventKind.AGENT_ERROR, task_id, {"error": message, "pattern": body.get("pattern")})
        if self.classifier is None:
            return None
        classification = self.classifier.classify(str(body.get("output") or ""), message)
        return self._handle_classification(str(task_id), classification, message)

    def on_agent_heartbeat(self, task_id: str, body: Optional[Mapping[str, Any]] = None) -> None:
        task_id = str(task_id)
        now = self._clock()
        record = self._liveness.get(task_id)
        if record is None:
            self._liveness[task_id] = LivenessRecord(task_id=task_id, last_heartbeat=now)
        else:
            record.last_heartbeat = now
            record.alive = True
            record.stale_since_seconds = 0.0
            record.flagged = False
        self.emit(
            EventKind.AGENT_HEARTBEAT,
            task_id,
            {"message": (body or {}).get("message"), "alive": True},
        )

    def on_status_change(self, task_id: str, new_status: str, source: str = "agent") -> None:
        self.emit(EventKind.TASK_STATUS_CHANGE, task_id, {"status": new_status, "source": source})
        self._update_status(task_id, new_status, source or STATUS_SOURCE)
        if new_status == "blocked":
            self.emit(EventKind.TASK_BLOCKED, task_id, {"source": source})
            self._notify(
                NotificationType.TASK_BLOCKED,
                f'Task blocked: "{self._title_for(task_id)}" (source: {source})',
                task_id,
            )

    def on_executor_paused(self, reason: Optional[str] = None, *, triggered_by: Optional[str] = None) -> None:
        self._executor_paused = True
        payload: Dict[str, Any] = {"reason": reason or "manual"}
        if triggered_by:
            payload["triggered_by"] = triggered_by
        self.emit(EventKind.EXECUTOR_PAUSED, SYSTEM_TASK_ID, payload)
        self._notify(NotificationType.EXECUTOR_PAUSED, f"Executor paused: {reason or 'manual'}")

    def on_executor_resumed(self) -> None:
        self._executor_paused = False
        self.emit(EventKind.EXECUTOR_RESUMED, SYSTEM_TASK_ID, {})

    def on_hook_result(
        self,
        task_id: str,
        hook_event: str,
        passed: bool,
        details: Optional[Mapping[str, Any]] = None,
    ) -> None:
        details = details or {}
        self.emit(
            EventKind.HOOK_PASSED if passed else EventKind.HOOK_FAILED,
            task_id,
            {
                "hook_event": hook_event,
                "hook_id": details.get("hook_id"),
                "output": details.get("output"),
                "duration_seconds": details.get("duration_seconds"),
            },
        )

    def on_ownership_conflict(self, task_id: str, local_owner: str, remote_owner: str) -> None:
        self.emit(
            EventKind.OWNERSHIP_CONFLICT,
            task_id,
            {"local_owner": local_owner, "remote_owner": remote_owner},
        )
        self._notify(
            NotificationType.OWNERSHIP_CONFLICT,
            f'Ownership conflict on "{self._title_for(task_id)}": local {local_owner}, remote {remote_owner}',
            task_id,
        )

    @property
    def executor_paused(self) -> bool:
        return self._executor_paused

    # =========================================================================
    # Classification and auto-actions
    # =========================================================================

    def _handle_classification(
        self,
        task_id: str,
        classification: ErrorClassification,
        raw_error: str,
    ) -> RecoveryVerdict:
        verdict = self.classifier.record_error(task_id, classification)

        history = self._error_history.setdefault(task_id, [])
        history.append(
            {
                "pattern": classification.pattern.value,
                "at": self._clock(),
                "action": verdict.action.value,
                "confidence": classification.confidence,
                "details": classification.details,
                "raw_match": classification.raw_match,
            }
        )
        overflow = len(history) - self.config.max_error_patterns_per_task
        if overflow > 0:
            del history[:overflow]

        self.emit(
            EventKind.ERROR_CLASSIFIED,
            task_id,
            {
                "pattern": classification.pattern.value,
                "confidence": classification.confidence,
                "details": classification.details,
                "action": verdict.action.value,
                "error_count": verdict.error_count,
            },
        )
        self._detect_pattern_trend(task_id)

        if not self._executor_paused and self.classifier.should_pause_executor():
            self.on_executor_paused("rate limit flood", triggered_by=task_id)

        self._execute_auto_action(task_id, verdict, classification, raw_error)
        return verdict

    def _execute_auto_action(
        self,
        task_id: str,
        verdict: RecoveryVerdict,
        classification: ErrorClassification,
        raw_error: str,
    ) -> None:
        state = self._auto_actions.setdefault(task_id, AutoActionState())
        now = self._clock()
        action = verdict.action

        if action != RecoveryAction.BLOCK and state.cooldown_until > now:
            logger.info(
                "event_bus.in_cooldown",
                task_id=task_id,
                remaining_seconds=round(state.cooldown_until - now, 1),
            )
            return

        if action == RecoveryAction.RETRY_WITH_PROMPT:
            if state.retry_count >= self.config.max_auto_retries:
                logger.info("event_bus.retries_exhausted", task_id=task_id, retry_count=state.retry_count)
                self._auto_block(
                    task_id,
                    f"Auto-retries exhausted ({state.retry_count}/{self.config.max_auto_retries}): {verdict.reason}",
                    verdict.error_count,
                    classification,
                )
                return
            state.retry_count += 1
            state.last_retry_at = now
            self.emit(
                EventKind.AUTO_RETRY,
                task_id,
                {
                    "retry_count": state.retry_count,
                    "max_retries": self.config.max_auto_retries,
                    "reason": verdict.reason,
                    "prompt": verdict.prompt,
                    "pattern": classification.pattern.value,
                },
            )
            logger.info(
                "event_bus.auto_retry",
                task_id=task_id,
                retry_count=state.retry_count,
                pattern=classification.pattern.value,
            )
        elif action == RecoveryAction.COOLDOWN:
            cooldown = verdict.cooldown_seconds or 60.0
            state.cooldown_until = now + cooldown
            self.emit(
                EventKind.AUTO_COOLDOWN,
                task_id,
                {
                    "cooldown_seconds": cooldown,
                    "cooldown_until": state.cooldown_until,
                    "reason": verdict.reason,
                    "pattern": classification.pattern.value,
                },
            )
            logger.info("event_bus.auto_cooldown", task_id=task_id, cooldown_seconds=cooldown)
        elif action == RecoveryAction.BLOCK:
            self._auto_block(task_id, verdict.reason, verdict.error_count, classification)
        else:
            logger.info("event_bus.manual_review", task_id=task_id, reason=verdict.reason or raw_error)
            if verdict.error_count >= 3:
                self._notify(
                    NotificationType.MANUAL_REVIEW,
                    f'"{self._title_for(task_id)}" needs manual review: {verdict.reason}',
                    task_id,
                )

    def _auto_block(
        self,
        task_id: str,
        reason: str,
        error_count: int,
        classification: ErrorClassification,
    ) -> None:
        self.emit(
            EventKind.AUTO_BLOCK,
            task_id,
            {"reason": reason, "error_count": error_count, "pattern": classification.pattern.value},
        )
        self._update_status(task_id, "blocked", STATUS_SOURCE)
        self._notify(
            NotificationType.AUTO_BLOCKED,
            f'Auto-blocked: "{self._title_for(task_id)}": {reason}',
            task_id,
        )
        logger.warning("event_bus.auto_blocked", task_id=task_id, reason=reason)

    def _detect_pattern_trend(self, task_id: str) -> None:
        history = self._error_history.get(task_id) or []
        if len(history) < 3:
            return

        recent = history[-5:]
        for pattern, count in Counter(entry["pattern"] for entry in recent).items():
            if count >= 3:
                self.emit(
                    EventKind.ERROR_PATTERN_DETECTED,
                    task_id,
                    {
                        "pattern": pattern,
                        "frequency": count,
                        "window": len(recent),
                        "message": f'"{pattern}" appeared {count}/{len(recent)} times recently',
                    },
                )

        limit = self.config.max_auto_retries
        if limit and len(history) >= limit:
            tail = history[-limit:]
            if all(entry["action"] in ("block", "manual") for entry in tail):
                self.emit(
                    EventKind.ERROR_THRESHOLD_REACHED,
                    task_id,
                    {
                        "total_errors": len(history),
                        "message": f"{task_id}: {len(history)} errors, all recent unresolvable",
                    },
                )

    def _trigger_auto_review(self, task: Any, result: Mapping[str, Any]) -> None:
        if self._review_agent is None:
            return
        task_id, title = _task_ref(task)
        request = {
            "id": task_id,
            "title": title,
            "pr_number": result.get("pr_number"),
            "branch": result.get("branch"),
            "description": getattr(task, "description", None) or "",
        }
        try:
            self._review_agent.queue_review(request)
        except Exception as e:
            logger.warning("event_bus.auto_review_failed", task_id=task_id, error=str(e))
            return
        self.emit(
            EventKind.AUTO_REVIEW,
            task_id,
            {"title": title, "branch": result.get("branch"), "pr_number": result.get("pr_number")},
        )
        logger.info("event_bus.auto_review_queued", task_id=task_id)

    # =========================================================================
    # Liveness
    # =========================================================================

    def check_stale_agents(self) -> List[str]:
        """Flag agents silent past the threshold. Returns newly stale task ids."""
        now = self._clock()
        newly_stale = []
        for record in self._liveness.values():
            elapsed = now - record.last_heartbeat
            if elapsed < self.config.stale_threshold_seconds:
                continue
            record.alive = False
            record.stale_since_seconds = elapsed
            if record.flagged:
                continue
            record.flagged = True
            newly_stale.append(record.task_id)
            self.emit(
                EventKind.AGENT_STALE,
                record.task_id,
                {"last_heartbeat": record.last_heartbeat, "stale_since_seconds": elapsed},
            )
        return newly_stale

    def get_agent_liveness(self) -> Dict[str, Dict[str, Any]]:
        """Liveness computed against the current time, independent of the sweep."""
        now = self._clock()
        view = {}
        for task_id, record in self._liveness.items():
            elapsed = now - record.last_heartbeat
            alive = elapsed < self.config.stale_threshold_seconds
            view[task_id] = {
                "task_id": task_id,
                "last_heartbeat": record.last_heartbeat,
                "alive": alive,
                "stale_since_seconds": 0.0 if alive else elapsed,
            }
        return view

    # =========================================================================
    # Queries
    # =========================================================================

    def get_event_log(
        self,
        *,
        task_id: Optional[str] = None,
        type: Optional[EventKind] = None,
        since: Optional[float] = None,
        limit: Optional[int] = None,
        newest_first: bool = False,
    ) -> Tuple[AgentEvent, ...]:
        events = [
            event
            for event in self._event_log
            if (task_id is None or event.task_id == str(task_id))
            and (type is None or event.type == type)
            and (since is None or event.timestamp >= since)
        ]
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        if newest_first:
            events.reverse()
        return tuple(events)

    def get_error_history(self, task_id: str) -> List[Dict[str, Any]]:
        return [dict(entry) for entry in self._error_history.get(str(task_id), [])]

    def get_error_pattern_summary(self) -> Dict[str, int]:
        counts: Counter = Counter()
        for history in self._error_history.values():
            counts.update(entry["pattern"] for entry in history)
        return dict(counts.most_common())

    def get_status(self) -> Dict[str, Any]:
        return {
            "started": self._started,
            "event_log_size": len(self._event_log),
            "event_log_capacity": self._event_log.maxlen,
            "tracked_agents": len(self._liveness),
            "error_tracked_tasks": len(self._error_history),
            "auto_action_tasks": len(self._auto_actions),
            "listener_count": len(self._listeners),
            "executor_paused": self._executor_paused,
            "liveness": self.get_agent_liveness(),
            "error_patterns": self.get_error_pattern_summary(),
        }
