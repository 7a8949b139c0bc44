"""SQLAlchemy models for locally tracked tasks."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union

from sqlalchemy import JSON, Boolean, Column, DateTime, String, Text, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TaskStatus(str, Enum):
    """Canonical task lifecycle states shared with the external board."""

    DRAFT = "draft"
    TODO = "todo"
    IN_PROGRESS = "inprogress"
    IN_REVIEW = "inreview"
    DONE = "done"
    CANCELLED = "cancelled"
    BLOCKED = "blocked"


# Status strings seen on boards and trackers, mapped onto TaskStatus values.
STATUS_ALIASES: Dict[str, str] = {
    "todo": "todo",
    "to do": "todo",
    "backlog": "todo",
    "open": "todo",
    "draft": "draft",
    "inprogress": "inprogress",
    "in-progress": "inprogress",
    "in_progress": "inprogress",
    "in progress": "inprogress",
    "started": "inprogress",
    "inreview": "inreview",
    "in-review": "inreview",
    "in_review": "inreview",
    "in review": "inreview",
    "review": "inreview",
    "blocked": "blocked",
    "done": "done",
    "closed": "done",
    "resolved": "done",
    "cancelled": "cancelled",
    "canceled": "cancelled",
}


def normalize_status(raw: Optional[Union[str, TaskStatus]]) -> TaskStatus:
    """Map any known status spelling onto a TaskStatus, defaulting to TODO."""
    if isinstance(raw, TaskStatus):
        return raw
    if not raw:
        return TaskStatus.TODO
    return TaskStatus(STATUS_ALIASES.get(str(raw).strip().lower(), "todo"))


class Task(Base):
    """A unit of work reconciled between the local store and the board."""

    __tablename__ = "tasks"

    id = Column(String(128), primary_key=True)
    title = Column(String(512), nullable=False, default="")
    description = Column(Text, nullable=True)
    status = Column(String(32), nullable=False, default=TaskStatus.TODO.value)

    # Ownership, most authoritative first
    shared_state_owner_id = Column(String(256), nullable=True)
    claimed_by = Column(String(256), nullable=True)
    claimed_at = Column(DateTime, nullable=True)

    meta = Column(JSON, nullable=False, default=dict)

    # Link to the remote board object (issue number or project item id)
    external_id = Column(String(128), nullable=True, index=True)
    dirty = Column(Boolean, nullable=False, default=False)
    synced_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    @property
    def task_status(self) -> TaskStatus:
        return normalize_status(self.status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "shared_state_owner_id": self.shared_state_owner_id,
            "claimed_by": self.claimed_by,
            "claimed_at": self.claimed_at.isoformat() if self.claimed_at else None,
            "meta": dict(self.meta or {}),
            "external_id": self.external_id,
            "dirty": bool(self.dirty),
            "synced_at": self.synced_at.isoformat() if self.synced_at else None,
        }

    def __repr__(self) -> str:
        return f"<Task(id={self.id!r}, status={self.status!r}, title={self.title[:40]!r})>"


def init_db(db_path: Union[str, Path]) -> Engine:
    """Create the engine for ``db_path`` and ensure all tables exist."""
    path = Path(db_path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(
        f"sqlite:///{path}",
        echo=False,
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    return engine
