"""Tests for the local task store.

Covers local mutations (which mark tasks dirty), the sync bookkeeping
(upserts from the board never mark dirty, local edits win until pushed),
and JSON snapshots used to resume after a restart.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

import pytest

from agent_fleet.core.models import TaskStatus, normalize_status
from agent_fleet.storage.task_store import TaskStore


# -----------------------------------------------------------------------------
# Fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
def store(temp_db: str) -> TaskStore:
    """Create a TaskStore for testing."""
    return TaskStore(temp_db)


# -----------------------------------------------------------------------------
# Tests for normalize_status()
# -----------------------------------------------------------------------------


class TestNormalizeStatus:
    """Tests for status alias mapping."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("In Progress", TaskStatus.IN_PROGRESS),
            ("in-review", TaskStatus.IN_REVIEW),
            ("closed", TaskStatus.DONE),
            ("canceled", TaskStatus.CANCELLED),
            ("Backlog", TaskStatus.TODO),
            (None, TaskStatus.TODO),
            ("something odd", TaskStatus.TODO),
        ],
    )
    def test_aliases(self, raw, expected: TaskStatus) -> None:
        """Verify known spellings map onto TaskStatus and unknowns default to todo."""
        assert normalize_status(raw) == expected


# -----------------------------------------------------------------------------
# Tests for local mutations
# -----------------------------------------------------------------------------


class TestLocalMutations:
    """Tests for add_task, update_task, set_task_status and claim_task."""

    def test_add_task_marks_dirty(self, store: TaskStore) -> None:
        """Verify new local tasks are dirty so the next sync pushes them."""
        task = store.add_task("t1", "Fix login", description="Users cannot log in")

        assert task.status == TaskStatus.TODO.value
        assert task.dirty is True
        assert [t.id for t in store.get_dirty_tasks()] == ["t1"]

    def test_update_task_unknown_returns_none(self, store: TaskStore) -> None:
        """Verify updating a missing task returns None."""
        assert store.update_task("missing", title="x") is None

    def test_update_task_rejects_unknown_field(self, store: TaskStore) -> None:
        """Verify unknown field names raise instead of being ignored."""
        store.add_task("t1", "Fix login")

        with pytest.raises(AttributeError):
            store.update_task("t1", bogus=1)

    def test_set_task_status(self, store: TaskStore) -> None:
        """Verify the status setter normalizes and reports unknown tasks."""
        store.add_task("t1", "Fix login")
        store.mark_synced("t1")

        assert store.set_task_status("t1", "In Review", "agent-event-bus") is True
        assert store.set_task_status("missing", "blocked") is False

        task = store.get_task("t1")
        assert task.status == TaskStatus.IN_REVIEW.value
        assert task.dirty is True

    def test_claim_task_records_owner(self, store: TaskStore) -> None:
        """Verify claiming sets the authoritative owner and legacy claim."""
        store.add_task("t1", "Fix login")
        when = datetime(2026, 1, 1, 12, 0, 0)

        task = store.claim_task("t1", "agent-a", when=when)

        assert task.shared_state_owner_id == "agent-a"
        assert task.claimed_by == "agent-a"
        assert task.claimed_at == when

    def test_get_all_tasks_filters_by_status(self, store: TaskStore) -> None:
        """Verify get_all_tasks accepts status aliases."""
        store.add_task("t1", "One")
        store.add_task("t2", "Two", status="in progress")

        assert [t.id for t in store.get_all_tasks("inprogress")] == ["t2"]
        assert len(store.get_all_tasks()) == 2


# -----------------------------------------------------------------------------
# Tests for sync bookkeeping
# -----------------------------------------------------------------------------


class TestSyncBookkeeping:
    """Tests for mark_synced, upsert_from_external and remove_task."""

    def test_mark_synced_links_and_clears_dirty(self, store: TaskStore) -> None:
        """Verify mark_synced stores the external id and clears dirty."""
        store.add_task("t1", "Fix login")

        store.mark_synced("t1", external_id=42)

        task = store.get_task("t1")
        assert task.external_id == "42"
        assert task.dirty is False
        assert task.synced_at is not None
        assert store.get_by_external_id("42").id == "t1"

    def test_upsert_creates_clean_task(self, store: TaskStore) -> None:
        """Verify unknown board items become clean local tasks."""
        task = store.upsert_from_external("7", title="From board", status="In Progress", meta={"url": "u"})

        assert task.id == "gh-7"
        assert task.status == TaskStatus.IN_PROGRESS.value
        assert task.dirty is False
        assert store.get_dirty_tasks() == []

    def test_upsert_updates_clean_task(self, store: TaskStore) -> None:
        """Verify remote fields replace local ones when there are no local edits."""
        store.upsert_from_external("7", title="Old", status="todo")

        store.upsert_from_external("7", title="New", status="done", description="body")

        task = store.get_by_external_id("7")
        assert task.title == "New"
        assert task.status == TaskStatus.DONE.value
        assert task.description == "body"

    def test_upsert_keeps_dirty_local_edits(self, store: TaskStore) -> None:
        """Verify unsynced local edits win over the board until pushed."""
        store.upsert_from_external("7", title="Board title", status="todo")
        store.update_task("gh-7", status="blocked")

        store.upsert_from_external("7", title="Board title 2", status="inprogress", meta={"labels": ["x"]})

        task = store.get_task("gh-7")
        assert task.status == TaskStatus.BLOCKED.value
        assert task.title == "Board title"
        assert task.dirty is True
        assert task.meta["labels"] == ["x"]

    def test_upsert_keeps_dirty_shared_state(self, store: TaskStore) -> None:
        """Verify pulled shared state only replaces the local copy once the task is clean."""
        store.add_task("t1", "work", external_id="7", meta={"sharedState": {"ownerId": "agent-a"}})
        remote_meta = {"labels": ["x"], "sharedState": {"ownerId": "agent-b"}}

        store.upsert_from_external("7", title="Board title", status="todo", meta=remote_meta)
        assert store.get_task("t1").meta["sharedState"] == {"ownerId": "agent-a"}
        assert store.get_task("t1").meta["labels"] == ["x"]

        store.mark_synced("t1")
        store.upsert_from_external("7", title="Board title", status="todo", meta=remote_meta)
        assert store.get_task("t1").meta["sharedState"] == {"ownerId": "agent-b"}

    def test_remove_task(self, store: TaskStore) -> None:
        """Verify remove_task deletes and reports whether anything was removed."""
        store.add_task("t1", "Fix login")

        assert store.remove_task("t1") is True
        assert store.remove_task("t1") is False
        assert store.get_task("t1") is None


# -----------------------------------------------------------------------------
# Tests for snapshots
# -----------------------------------------------------------------------------


class TestSnapshots:
    """Tests for export_snapshot and import_snapshot."""

    def test_restore_into_empty_store(self, store: TaskStore, tmp_path: Path) -> None:
        """Verify a snapshot restores tasks into a fresh store."""
        store.add_task("t1", "Fix login", meta={"sharedState": {"ownerId": "agent-a"}})
        store.claim_task("t1", "agent-a")
        snapshot = tmp_path / "snapshot.json"

        assert store.export_snapshot(snapshot) is True

        fresh = TaskStore(tmp_path / "fresh.db")
        assert fresh.import_snapshot(snapshot) == 1

        task = fresh.get_task("t1")
        assert task.title == "Fix login"
        assert task.shared_state_owner_id == "agent-a"
        assert task.meta["sharedState"]["ownerId"] == "agent-a"
        assert task.dirty is True

    def test_import_skips_existing_and_malformed(self, store: TaskStore, tmp_path: Path) -> None:
        """Verify existing ids and malformed entries are skipped."""
        store.add_task("t1", "Local")
        snapshot = tmp_path / "snapshot.json"
        snapshot.write_text(
            '{"version": 1, "tasks": [{"id": "t1", "title": "Snap"}, {"title": "no id"}, 5, '
            '{"id": "t2", "title": "New", "status": "done"}]}'
        )

        assert store.import_snapshot(snapshot) == 1
        assert store.get_task("t1").title == "Local"
        assert store.get_task("t2").status == TaskStatus.DONE.value

    def test_import_missing_file(self, store: TaskStore, tmp_path: Path) -> None:
        """Verify a missing snapshot restores nothing."""
        assert store.import_snapshot(tmp_path / "missing.json") == 0
