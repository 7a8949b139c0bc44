"""Orchestrator context: one constructed object that owns every component."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Dict, Optional

from agent_fleet.config import FleetConfig
from agent_fleet.core.runner import Executor, TurnRunner
from agent_fleet.detection.classifier import ErrorClassifier
from agent_fleet.monitoring.event_bus import AgentEventBus
from agent_fleet.monitoring.logging import get_logger
from agent_fleet.monitoring.notifications import SlackNotifier
from agent_fleet.storage.task_store import TaskStore
from agent_fleet.sync.backoff import BackoffState
from agent_fleet.sync.engine import SyncEngine, SyncResult
from agent_fleet.sync.gh import GhClient

logger = get_logger(__name__)


class FleetContext:
    """Wires the store, classifier, event bus, sync engine and runner together.

    All mutable state (retry counters, liveness, backoff windows) lives in
    the components built here, so several contexts can coexist in one
    process. ``start`` and ``stop`` are idempotent.
    """

    def __init__(
        self,
        config: Optional[FleetConfig] = None,
        *,
        executor: Optional[Executor] = None,
        broadcast_ui_event: Optional[Callable[..., Any]] = None,
        review_agent: Optional[Any] = None,
        slack_client: Optional[Any] = None,
        gh_token: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or FleetConfig()
        self._clock = clock

        self.store = TaskStore(self.config.resolved_db_path)
        self.classifier = ErrorClassifier(self.config.classifier, clock=clock)
        self.notifier = SlackNotifier(self.config.notifications, slack_client, clock=clock)
        self.event_bus = AgentEventBus(
            self.config.event_bus,
            classifier=self.classifier,
            broadcast_ui_event=broadcast_ui_event,
            notifier=self.notifier,
            set_task_status=self.store.set_task_status,
            get_task=self.store.get_task,
            review_agent=review_agent,
            clock=clock,
        )
        self.backoff = BackoffState(
            self.config.backoff_state_path,
            clock=clock,
            warning_throttle_seconds=self.config.sync.warning_throttle_seconds,
            max_backoff_seconds=self.config.sync.command_backoff_max_seconds,
        )
        self.gh = GhClient(self.config.sync, self.backoff, token=gh_token)
        self.sync_engine: Optional[SyncEngine] = None
        if self.config.sync.repository:
            self.sync_engine = SyncEngine(
                self.store,
                self.config.sync,
                client=self.gh,
                event_bus=self.event_bus,
                clock=clock,
            )
        self.runner = TurnRunner(executor, self.config.runner)

        self._sync_task: Optional[asyncio.Task] = None
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        if not self.store.get_all_tasks():
            self.store.import_snapshot(self.config.snapshot_path)
        self.event_bus.start()
        if self.sync_engine is not None:
            self._sync_task = asyncio.get_running_loop().create_task(self._sync_loop())
        logger.info(
            "fleet.started",
            db_path=str(self.config.resolved_db_path),
            sync_enabled=self.sync_engine is not None,
        )

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        if self._sync_task is not None:
            self._sync_task.cancel()
            try:
                await self._sync_task
            except asyncio.CancelledError:
                pass
            self._sync_task = None
        if self.runner.busy:
            await self.runner.cancel("shutdown")
        self.event_bus.stop()
        self.store.export_snapshot(self.config.snapshot_path)
        self.backoff.save()
        logger.info("fleet.stopped")

    async def sync_once(self) -> Optional[SyncResult]:
        """One reconciliation cycle, or None when no board is configured."""
        if self.sync_engine is None:
            return None
        result = await self.sync_engine.sync_once()
        self.store.export_snapshot(self.config.snapshot_path)
        return result

    def _next_sync_delay(self, result: Optional[SyncResult]) -> float:
        interval = self.config.sync.poll_interval_seconds
        if result is not None and result.retry_after:
            return max(interval, result.retry_after)
        return interval

    async def _sync_loop(self) -> None:
        while True:
            result: Optional[SyncResult] = None
            try:
                result = await self.sync_once()
            except Exception as e:
                logger.error("fleet.sync_failed", error=str(e), exc_info=True)
            await asyncio.sleep(self._next_sync_delay(result))

    def get_status(self) -> Dict[str, Any]:
        last = self.sync_engine.last_result if self.sync_engine is not None else None
        return {
            "started": self._started,
            "runner_state": self.runner.state.value,
            "tasks": len(self.store.get_all_tasks()),
            "dirty_tasks": len(self.store.get_dirty_tasks()),
            "event_bus": self.event_bus.get_status(),
            "classifier": self.classifier.get_stats(),
            "sync": {
                "enabled": self.sync_engine is not None,
                "mode": self.sync_engine.mode if self.sync_engine else None,
                "board_id": self.sync_engine.board_id if self.sync_engine else None,
                "rate_limit_remaining_seconds": round(self.backoff.rate_limit_remaining(), 1),
                "last_result": last.to_dict() if last else None,
            },
        }
