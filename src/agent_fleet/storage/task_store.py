"""Local task records shared by the event bus and the sync engine."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from sqlalchemy.orm import Session

from agent_fleet.core.models import Task, TaskStatus, normalize_status, utc_now
from agent_fleet.monitoring.logging import get_logger
from agent_fleet.storage.sqlite import SQLiteStore
from agent_fleet.storage.state_files import read_json_state, write_json_state
from agent_fleet.sync.ownership import SHARED_STATE_KEY

logger = get_logger(__name__)

SNAPSHOT_VERSION = 1


class TaskStore(SQLiteStore):
    """CRUD over local tasks plus the dirty/synced bookkeeping used by sync.

    Local edits mark a task dirty; the sync engine pushes dirty tasks to the
    board and clears the flag with ``mark_synced``. Updates pulled from the
    board never mark a task dirty.
    """

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_task(self, task_id: str) -> Optional[Task]:
        def _op(session: Session) -> Optional[Task]:
            return session.get(Task, task_id)

        return self._run_read(_op)

    def get_by_external_id(self, external_id: str) -> Optional[Task]:
        def _op(session: Session) -> Optional[Task]:
            return session.query(Task).filter(Task.external_id == str(external_id)).first()

        return self._run_read(_op)

    def get_all_tasks(self, status: Optional[Union[str, TaskStatus]] = None) -> List[Task]:
        def _op(session: Session) -> List[Task]:
            query = session.query(Task)
            if status is not None:
                query = query.filter(Task.status == normalize_status(status).value)
            return query.order_by(Task.created_at).all()

        return self._run_read(_op)

    def get_dirty_tasks(self) -> List[Task]:
        def _op(session: Session) -> List[Task]:
            return session.query(Task).filter(Task.dirty.is_(True)).order_by(Task.updated_at).all()

        return self._run_read(_op)

    # -------------------------------------------------------------------------
    # Local mutations (mark dirty)
    # -------------------------------------------------------------------------

    def add_task(
        self,
        task_id: str,
        title: str,
        *,
        description: Optional[str] = None,
        status: Union[str, TaskStatus] = TaskStatus.TODO,
        meta: Optional[Dict[str, Any]] = None,
        external_id: Optional[str] = None,
    ) -> Task:
        """Create a new local task, marked dirty so the next sync pushes it."""

        def _op(session: Session) -> Task:
            task = Task(
                id=task_id,
                title=title,
                description=description,
                status=normalize_status(status).value,
                meta=dict(meta or {}),
                external_id=str(external_id) if external_id is not None else None,
                dirty=True,
            )
            session.add(task)
            session.flush()
            return task

        task = self._run_write(_op)
        logger.info("task_store.added", task_id=task_id, status=task.status)
        return task

    def update_task(self, task_id: str, **fields: Any) -> Optional[Task]:
        """Apply local edits to a task and mark it dirty."""
        if "status" in fields:
            fields["status"] = normalize_status(fields["status"]).value

        def _op(session: Session) -> Optional[Task]:
            task = session.get(Task, task_id)
            if task is None:
                return None
            for name, value in fields.items():
                if not hasattr(Task, name):
                    raise AttributeError(f"Task has no field {name!r}")
                setattr(task, name, value)
            task.dirty = True
            return task

        return self._run_write(_op)

    def set_task_status(self, task_id: str, status: Union[str, TaskStatus], source: str = "local") -> bool:
        """Status setter handed to the event bus. Returns False for unknown tasks."""
        task = self.update_task(task_id, status=status)
        if task is None:
            logger.debug("task_store.status_unknown_task", task_id=task_id, status=str(status))
            return False
        logger.info("task_store.status_changed", task_id=task_id, status=task.status, source=source)
        return True

    def claim_task(self, task_id: str, owner_id: str, *, when: Optional[datetime] = None) -> Optional[Task]:
        """Record ``owner_id`` as the authoritative shared-state owner."""
        return self.update_task(
            task_id,
            shared_state_owner_id=owner_id,
            claimed_by=owner_id,
            claimed_at=when or utc_now(),
        )

    # -------------------------------------------------------------------------
    # Sync bookkeeping
    # -------------------------------------------------------------------------

    def mark_synced(self, task_id: str, external_id: Optional[str] = None) -> None:
        def _op(session: Session) -> None:
            task = session.get(Task, task_id)
            if task is None:
                return
            if external_id is not None:
                task.external_id = str(external_id)
            task.dirty = False
            task.synced_at = utc_now()

        self._run_write(_op)

    def upsert_from_external(
        self,
        external_id: str,
        *,
        title: str,
        status: Union[str, TaskStatus],
        description: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> Task:
        """Apply a board item to the local store.

        Unknown items become new local tasks. Known tasks take the remote
        fields unless they carry unsynced local edits, in which case the local
        values win until the next push.
        """
        external_id = str(external_id)
        remote_status = normalize_status(status).value

        def _op(session: Session) -> Task:
            task = session.query(Task).filter(Task.external_id == external_id).first()
            if task is None:
                task = Task(
                    id=f"gh-{external_id}",
                    title=title,
                    description=description,
                    status=remote_status,
                    meta=dict(meta or {}),
                    external_id=external_id,
                    dirty=False,
                    synced_at=utc_now(),
                )
                session.add(task)
                session.flush()
                return task

            if not task.dirty:
                task.title = title
                task.status = remote_status
                if description is not None:
                    task.description = description
                task.synced_at = utc_now()
            if meta:
                merged = dict(task.meta or {})
                incoming = dict(meta)
                if task.dirty and SHARED_STATE_KEY in merged:
                    incoming.pop(SHARED_STATE_KEY, None)
                merged.update(incoming)
                task.meta = merged
            return task

        return self._run_write(_op)

    def remove_task(self, task_id: str) -> bool:
        def _op(session: Session) -> bool:
            task = session.get(Task, task_id)
            if task is None:
                return False
            session.delete(task)
            return True

        removed = self._run_write(_op)
        if removed:
            logger.info("task_store.removed", task_id=task_id)
        return removed

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    def export_snapshot(self, path: Union[str, Path]) -> bool:
        """Write every task to a JSON snapshot used to resume after restarts."""
        tasks = [task.to_dict() for task in self.get_all_tasks()]
        return write_json_state(path, {"version": SNAPSHOT_VERSION, "tasks": tasks})

    def import_snapshot(self, path: Union[str, Path]) -> int:
        """Restore tasks missing from the store. Returns the number restored."""
        data = read_json_state(path, {"version": SNAPSHOT_VERSION, "tasks": []})
        entries = data.get("tasks")
        if not isinstance(entries, list):
            return 0

        def _op(session: Session) -> int:
            restored = 0
            for entry in entries:
                if not isinstance(entry, dict) or not entry.get("id"):
                    continue
                if session.get(Task, str(entry["id"])) is not None:
                    continue
                session.add(
                    Task(
                        id=str(entry["id"]),
                        title=str(entry.get("title") or ""),
                        description=entry.get("description"),
                        status=normalize_status(entry.get("status")).value,
                        shared_state_owner_id=entry.get("shared_state_owner_id"),
                        claimed_by=entry.get("claimed_by"),
                        meta=entry.get("meta") if isinstance(entry.get("meta"), dict) else {},
                        external_id=entry.get("external_id"),
                        dirty=bool(entry.get("dirty")),
                    )
                )
                restored += 1
            return restored

        restored = self._run_write(_op)
        logger.info("task_store.snapshot_imported", path=str(path), restored=restored)
        return restored
