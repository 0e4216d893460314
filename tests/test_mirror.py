"""Tests for the active-task mirror (task_engine/mirror.py)."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from stagegate.errors import MirrorSyncError
from stagegate.task_engine.mirror import TaskMirrorSync
from stagegate.task_engine.model import Task
from stagegate.task_engine.store import TaskQueueStore


@pytest.fixture
def store(tmp_path: Path) -> TaskQueueStore:
    return TaskQueueStore(tmp_path)


@pytest.fixture
def mirror(tmp_path: Path) -> TaskMirrorSync:
    return TaskMirrorSync(tmp_path)


@pytest.fixture
def task(store: TaskQueueStore) -> Task:
    return store.create_task(
        "Implement the user profile page",
        tags=["frontend"],
        requirements=["REQ-1 show avatar"],
    )


def _write_raw(mirror: TaskMirrorSync, data: dict) -> None:
    mirror.mirror_path.parent.mkdir(parents=True, exist_ok=True)
    mirror.mirror_path.write_text(json.dumps(data), encoding="utf-8")


class TestSync:
    def test_projection_shape(self, mirror: TaskMirrorSync, task: Task) -> None:
        mirror.sync_from_queue(task)

        data = mirror.read_mirror()
        assert data is not None
        assert data["taskId"] == task.id
        assert data["originalGoal"] == "Implement the user profile page"
        assert data["status"] == "in_progress"
        assert data["priority"] == "MEDIUM"
        assert data["tags"] == ["frontend"]
        assert data["startedAt"] == task.activated_at
        assert data["completedAt"] is None
        assert data["workflow"]["currentState"] == "UNDERSTANDING"
        assert data["requirements"] == ["REQ-1 show avatar"]
        assert data["stateChecklists"] == {}

    def test_fresh_sync_is_not_a_manual_edit(self, mirror: TaskMirrorSync, task: Task) -> None:
        mirror.sync_from_queue(task)
        assert mirror.detect_manual_edit(task) is False

    def test_preserve_fields_keeps_existing_values(self, mirror: TaskMirrorSync, task: Task) -> None:
        mirror.sync_from_queue(task)
        data = mirror.read_mirror()
        data["requirements"] = ["REQ-9 hand written"]
        _write_raw(mirror, data)

        mirror.sync_from_queue(task, preserve_fields=("requirements", "taskId"))
        assert mirror.read_mirror()["requirements"] == ["REQ-9 hand written"]
        assert mirror.read_mirror()["taskId"] == task.id

        mirror.sync_from_queue(task)
        assert mirror.read_mirror()["requirements"] == ["REQ-1 show avatar"]

    def test_failed_verification_restores_previous_content(
        self, mirror: TaskMirrorSync, task: Task, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        mirror.sync_from_queue(task)
        before = mirror.mirror_path.read_bytes()

        def _fail(*args, **kwargs):
            raise MirrorSyncError("taskId mismatch")

        monkeypatch.setattr(mirror, "_verify", _fail)
        task.goal = "Something else entirely"
        with pytest.raises(MirrorSyncError, match="Mirror sync failed"):
            mirror.sync_from_queue(task)

        assert mirror.mirror_path.read_bytes() == before

    def test_failed_first_sync_leaves_no_mirror(
        self, mirror: TaskMirrorSync, task: Task, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def _fail(*args, **kwargs):
            raise MirrorSyncError("workflow state mismatch")

        monkeypatch.setattr(mirror, "_verify", _fail)
        with pytest.raises(MirrorSyncError):
            mirror.sync_from_queue(task)
        assert not mirror.exists()


class TestDrift:
    def test_goal_edit_is_detected(self, mirror: TaskMirrorSync, task: Task) -> None:
        mirror.sync_from_queue(task)
        data = mirror.read_mirror()
        data["originalGoal"] = "Edited by hand outside the store"
        _write_raw(mirror, data)

        assert mirror.detect_manual_edit(task) is True

    def test_untracked_field_edit_is_ignored(self, mirror: TaskMirrorSync, task: Task) -> None:
        mirror.sync_from_queue(task)
        data = mirror.read_mirror()
        data["tags"] = ["something-else"]
        _write_raw(mirror, data)

        assert mirror.detect_manual_edit(task) is False

    def test_reconcile_backs_up_and_overwrites(self, mirror: TaskMirrorSync, task: Task) -> None:
        mirror.sync_from_queue(task)
        data = mirror.read_mirror()
        data["workflow"]["currentState"] = "TESTING"
        _write_raw(mirror, data)

        assert mirror.reconcile(task) is True

        backups = mirror.list_backups()
        assert len(backups) == 1
        assert json.loads(backups[0].read_text())["workflow"]["currentState"] == "TESTING"
        assert mirror.read_mirror()["workflow"]["currentState"] == "UNDERSTANDING"
        assert mirror.reconcile(task) is False

    def test_reconcile_replaces_mirror_of_other_task(
        self, mirror: TaskMirrorSync, store: TaskQueueStore, task: Task
    ) -> None:
        other = store.create_task("Write onboarding guide for users")
        mirror.sync_from_queue(other)

        assert mirror.detect_manual_edit(task) is True
        assert mirror.reconcile(task) is True
        assert mirror.read_mirror()["taskId"] == task.id
        assert len(mirror.list_backups()) == 1

    def test_reconcile_creates_missing_mirror(self, mirror: TaskMirrorSync, task: Task) -> None:
        assert not mirror.exists()
        assert mirror.reconcile(task) is True
        assert mirror.read_mirror()["taskId"] == task.id
        assert mirror.list_backups() == []

    def test_legacy_goal_key_is_migrated(self, mirror: TaskMirrorSync, task: Task) -> None:
        _write_raw(mirror, {"taskId": task.id, "goal": "Implement the user profile page"})
        data = mirror.read_mirror()
        assert data["originalGoal"] == "Implement the user profile page"
        assert "goal" not in data

    def test_unreadable_mirror_reads_as_missing(self, mirror: TaskMirrorSync) -> None:
        mirror.mirror_path.parent.mkdir(parents=True, exist_ok=True)
        mirror.mirror_path.write_text("{oops", encoding="utf-8")
        assert mirror.read_mirror() is None


class TestBackups:
    def test_backups_are_capped(self, mirror: TaskMirrorSync, task: Task) -> None:
        mirror.sync_from_queue(task)
        for _ in range(7):
            mirror.backup()

        backups = mirror.list_backups()
        assert len(backups) == 5
        assert all(b.name.startswith("current-task.json.backup.") for b in backups)
        assert backups == sorted(backups, key=lambda p: p.name, reverse=True)

    def test_backup_of_missing_mirror_is_none(self, mirror: TaskMirrorSync) -> None:
        assert mirror.backup() is None

    def test_restore_latest_backup(self, mirror: TaskMirrorSync, task: Task) -> None:
        mirror.sync_from_queue(task)
        mirror.backup()
        mirror.mirror_path.write_text("{}", encoding="utf-8")

        mirror.restore_latest_backup()
        assert mirror.read_mirror()["taskId"] == task.id

    def test_restore_without_backups_fails(self, mirror: TaskMirrorSync) -> None:
        with pytest.raises(MirrorSyncError, match="No mirror backups"):
            mirror.restore_latest_backup()

    def test_clear_backs_up_then_removes(self, mirror: TaskMirrorSync, task: Task) -> None:
        mirror.sync_from_queue(task)
        mirror.clear()
        assert not mirror.exists()
        assert len(mirror.list_backups()) == 1
