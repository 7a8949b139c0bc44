"""Bidirectional reconciliation between the local task store and the board."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from agent_fleet.config import SyncConfig, env_str
from agent_fleet.core.models import Task, TaskStatus
from agent_fleet.monitoring.logging import get_logger
from agent_fleet.storage.task_store import TaskStore
from agent_fleet.sync.board import GitHubBoard, RemoteTask
from agent_fleet.sync.errors import (
    CommandBackoffError,
    GhCommandError,
    RateLimitedError,
    is_not_found_error,
)
from agent_fleet.sync.gh import GhClient
from agent_fleet.sync.ownership import has_owner_conflict, is_claim_stale, resolve_local_owner

logger = get_logger(__name__)

PROJECT_MODES = ("issues", "kanban")


def resolve_project_mode(option: Optional[str] = None) -> str:
    """Explicit option, then ``GITHUB_PROJECT_MODE``, then ``issues``; lower-cased."""
    raw = (option or "").strip() or env_str("GITHUB_PROJECT_MODE") or "issues"
    mode = raw.lower()
    if mode not in PROJECT_MODES:
        logger.warning("sync.mode.unknown", mode=mode)
    return mode


def resolve_board_id(project_id: Optional[str] = None, project_number: Optional[str] = None) -> Optional[str]:
    """First non-empty of the options, ``GITHUB_PROJECT_ID`` and ``GITHUB_PROJECT_NUMBER``."""
    for candidate in (project_id, project_number):
        if candidate is not None and str(candidate).strip():
            return str(candidate).strip()
    return env_str("GITHUB_PROJECT_ID") or env_str("GITHUB_PROJECT_NUMBER")


@dataclass
class OwnershipConflict:
    task_id: str
    external_id: str
    local_owner: str
    remote_owner: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "task_id": self.task_id,
            "external_id": self.external_id,
            "local_owner": self.local_owner,
            "remote_owner": self.remote_owner,
        }


@dataclass
class SyncResult:
    """Outcome of one reconciliation cycle."""

    status: str = "ok"  # ok | partial | rate_limited | backoff
    pulled: int = 0
    pushed: int = 0
    created: int = 0
    removed: int = 0
    conflicts: List[OwnershipConflict] = field(default_factory=list)
    project_mismatches: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    retry_after: Optional[float] = None
    duration_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "pulled": self.pulled,
            "pushed": self.pushed,
            "created": self.created,
            "removed": self.removed,
            "conflicts": [c.to_dict() for c in self.conflicts],
            "project_mismatches": list(self.project_mismatches),
            "errors": list(self.errors),
            "retry_after": self.retry_after,
            "duration_seconds": round(self.duration_seconds, 3),
        }


class SyncEngine:
    """Pulls board items into the store, flags ownership conflicts, pushes dirty tasks.

    Nothing here is fatal to the caller's poll loop: every failure ends up in
    the returned ``SyncResult``. Rate limiting aborts the cycle early.
    """

    def __init__(
        self,
        store: TaskStore,
        config: Optional[SyncConfig] = None,
        *,
        client: Optional[GhClient] = None,
        board: Optional[GitHubBoard] = None,
        event_bus: Any = None,
        mode: Optional[str] = None,
        project_id: Optional[str] = None,
        project_number: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.config = config or SyncConfig()
        self.mode = resolve_project_mode(mode or self.config.project_mode)
        self.board_id = resolve_board_id(
            project_id if project_id is not None else self.config.project_id,
            project_number if project_number is not None else self.config.project_number,
        )
        if board is None:
            board = GitHubBoard(client or GhClient(self.config), self.config, mode=self.mode, project=self.board_id)
        self.board = board
        self.event_bus = event_bus
        self._clock = clock
        self.last_result: Optional[SyncResult] = None

    async def sync_once(self) -> SyncResult:
        """Run one pull / conflict / push / cleanup cycle."""
        started = self._clock()
        result = SyncResult()
        try:
            remote = await self._pull(result)
            await self._push(result)
            if remote is not None:
                await self._remove_missing(remote, result)
        except RateLimitedError as e:
            result.status = "rate_limited"
            result.retry_after = e.retry_after
            logger.warning("sync.rate_limited", retry_after_seconds=round(e.retry_after, 1))
        except CommandBackoffError as e:
            result.status = "backoff"
            result.retry_after = e.retry_after
            logger.info("sync.backoff", retry_after_seconds=round(e.retry_after, 1), error=str(e))

        if result.status == "ok" and result.errors:
            result.status = "partial"
        result.duration_seconds = self._clock() - started
        self.last_result = result
        logger.info(
            "sync.cycle.complete",
            status=result.status,
            pulled=result.pulled,
            pushed=result.pushed,
            created=result.created,
            removed=result.removed,
            conflicts=len(result.conflicts),
            errors=len(result.errors),
        )
        return result

    # -------------------------------------------------------------------------
    # Pull
    # -------------------------------------------------------------------------

    async def _pull(self, result: SyncResult) -> Optional[Dict[str, RemoteTask]]:
        try:
            items = await self.board.list_tasks()
        except (RateLimitedError, CommandBackoffError):
            raise
        except GhCommandError as e:
            result.errors.append(f"list: {e}")
            logger.warning("sync.pull.failed", error=str(e))
            return None

        remote: Dict[str, RemoteTask] = {}
        now = self._clock()
        for item in items:
            if item.repository and item.repository.lower() != self.board.repository.lower():
                result.project_mismatches.append(f"{item.repository}#{item.external_id}")
                continue
            remote[item.external_id] = item
            local = self.store.get_by_external_id(item.external_id)
            if local is not None:
                self._check_conflict(local, item, now, result)
            self.store.upsert_from_external(
                item.external_id,
                title=item.title,
                status=item.status,
                description=item.description,
                meta=item.store_meta(),
            )
            result.pulled += 1

        if result.project_mismatches:
            logger.info("sync.project_mismatches", count=len(result.project_mismatches))
        return remote

    def _check_conflict(self, local: Task, item: RemoteTask, now: float, result: SyncResult) -> None:
        local_owner = resolve_local_owner(local)
        remote_owner = item.owner
        stale = is_claim_stale(local, now, self.config.claim_ttl_seconds)
        if not has_owner_conflict(local_owner, remote_owner, stale):
            return
        conflict = OwnershipConflict(
            task_id=local.id,
            external_id=item.external_id,
            local_owner=str(local_owner),
            remote_owner=str(remote_owner),
        )
        result.conflicts.append(conflict)
        logger.warning(
            "sync.ownership_conflict",
            task_id=local.id,
            local_owner=local_owner,
            remote_owner=remote_owner,
        )
        if self.event_bus is not None:
            self.event_bus.on_ownership_conflict(local.id, str(local_owner), str(remote_owner))

    # -------------------------------------------------------------------------
    # Push
    # -------------------------------------------------------------------------

    async def _push(self, result: SyncResult) -> None:
        # A contested claim is left for the owners to settle; only the status goes up.
        conflicted = {conflict.external_id for conflict in result.conflicts}
        for task in self.store.get_dirty_tasks():
            try:
                if task.external_id:
                    await self.board.update_task_status(task.external_id, task.task_status)
                    if task.external_id not in conflicted:
                        await self._push_shared_state(task)
                    self.store.mark_synced(task.id)
                    result.pushed += 1
                else:
                    created = await self.board.create_task(
                        task.title,
                        description=task.description or "",
                        status=task.task_status,
                    )
                    self.store.mark_synced(task.id, external_id=created.external_id)
                    result.created += 1
            except (RateLimitedError, CommandBackoffError):
                raise
            except GhCommandError as e:
                if task.external_id and is_not_found_error(e):
                    self._drop(task, result)
                    continue
                result.errors.append(f"push {task.id}: {e}")
                logger.warning("sync.push.failed", task_id=task.id, error=str(e))

    async def _push_shared_state(self, task: Task) -> None:
        owner = task.shared_state_owner_id
        if not owner:
            return
        state = dict((task.meta or {}).get("sharedState") or {})
        if state.get("ownerId") == owner:
            return
        state["ownerId"] = owner
        state.setdefault("status", "working" if task.task_status == TaskStatus.IN_PROGRESS else "claimed")
        if task.claimed_at is not None and not state.get("attemptStarted"):
            state["attemptStarted"] = task.claimed_at.isoformat() + "Z"
        await self.board.persist_shared_state(task.external_id, state)

    # -------------------------------------------------------------------------
    # Cleanup
    # -------------------------------------------------------------------------

    async def _remove_missing(self, remote: Dict[str, RemoteTask], result: SyncResult) -> None:
        """Confirm and drop linked local tasks the listing no longer returns."""
        for task in self.store.get_all_tasks():
            if not task.external_id or task.external_id in remote or task.dirty:
                continue
            try:
                await self.board.get_task(task.external_id)
            except (RateLimitedError, CommandBackoffError):
                raise
            except GhCommandError as e:
                if is_not_found_error(e):
                    self._drop(task, result)
                else:
                    result.errors.append(f"verify {task.id}: {e}")

    def _drop(self, task: Task, result: SyncResult) -> None:
        if self.store.remove_task(task.id):
            result.removed += 1
            logger.info("sync.task.removed_upstream", task_id=task.id, external_id=task.external_id)
