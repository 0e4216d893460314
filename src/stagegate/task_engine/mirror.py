"""Single-task mirror of the active task for lightweight external readers.

``current-task.json`` holds a flattened copy of whichever task is active in
the store.  The store is always authoritative: when the mirror drifts (a
different task id, or content that no longer hashes the same) the mirror is
backed up and overwritten, never merged back into the store.
"""

from __future__ import annotations

import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

from loguru import logger

from ..constants import (
    BACKUPS_DIR,
    CONTEXT_DIR_NAME,
    DEFAULT_LOCK_MAX_TIMEOUT,
    DEFAULT_LOCK_MIN_TIMEOUT,
    DEFAULT_LOCK_RETRIES,
    MAX_MIRROR_BACKUPS,
    MIRROR_FILE,
    MIRROR_LOCK_FILE,
    MIRROR_STATUS_COMPLETED,
    MIRROR_STATUS_IN_PROGRESS,
)
from ..errors import MirrorSyncError
from ..io_utils import BoundedFileLock, _atomic_write_json, _load_data_with_error
from ..utils import _hash_payload
from .model import Task, TaskStatus, WorkflowProgress

# Fields compared when deciding whether the mirror was edited out-of-band.
HASHED_FIELDS = ("taskId", "originalGoal", "workflow", "requirements", "stateChecklists")


def _stable_view(mirror: dict[str, Any]) -> dict[str, Any]:
    view = {key: mirror.get(key) for key in HASHED_FIELDS}
    view["requirements"] = view.get("requirements") or []
    view["stateChecklists"] = view.get("stateChecklists") or {}
    return view


class TaskMirrorSync:
    """Project the store's active task into ``current-task.json``."""

    def __init__(
        self,
        project_dir: Path,
        *,
        lock_retries: int = DEFAULT_LOCK_RETRIES,
        lock_min_timeout: float = DEFAULT_LOCK_MIN_TIMEOUT,
        lock_max_timeout: float = DEFAULT_LOCK_MAX_TIMEOUT,
    ) -> None:
        self.context_dir = project_dir / CONTEXT_DIR_NAME
        self.mirror_path = self.context_dir / MIRROR_FILE
        self.backup_dir = self.context_dir / BACKUPS_DIR
        self._lock = BoundedFileLock(
            self.context_dir / MIRROR_LOCK_FILE,
            retries=lock_retries,
            min_timeout=lock_min_timeout,
            max_timeout=lock_max_timeout,
        )

    # -- projection ---------------------------------------------------------

    def project(
        self,
        task: Task,
        existing: Optional[dict[str, Any]] = None,
        preserve_fields: Iterable[str] = (),
    ) -> dict[str, Any]:
        """Build the mirror document for *task*.

        Fields listed in *preserve_fields* keep the value already present in
        *existing*; the task id always comes from the store.
        """
        workflow = task.workflow or WorkflowProgress(state_entered_at=task.created_at)
        done = task.status == TaskStatus.DONE or bool(task.completed_at)
        data: dict[str, Any] = {
            "taskId": task.id,
            "originalGoal": task.goal,
            "status": MIRROR_STATUS_COMPLETED if done else MIRROR_STATUS_IN_PROGRESS,
            "priority": task.priority.value,
            "tags": list(task.tags),
            "startedAt": task.activated_at or task.created_at,
            "completedAt": task.completed_at,
            "workflow": workflow.to_dict(),
            "requirements": list(task.requirements),
            "stateChecklists": {
                stage: checklist.to_dict() for stage, checklist in task.state_checklists.items()
            },
        }
        if existing:
            for name in preserve_fields:
                if name == "taskId":
                    continue
                if name in existing and existing[name] is not None:
                    data[name] = existing[name]
        return data

    # -- reads --------------------------------------------------------------

    def exists(self) -> bool:
        return self.mirror_path.exists()

    def read_mirror(self) -> Optional[dict[str, Any]]:
        """Return the mirror document, or ``None`` if it is missing or unreadable."""
        data, err = _load_data_with_error(self.mirror_path, {})
        if err:
            logger.warning("Mirror file unreadable: {}", err)
            return None
        if not data:
            return None
        if "goal" in data and "originalGoal" not in data:
            data["originalGoal"] = data.pop("goal")
        return data

    def content_hash(self, mirror: dict[str, Any]) -> str:
        return _hash_payload(_stable_view(mirror))

    def detect_manual_edit(self, task: Task, mirror: Optional[dict[str, Any]] = None) -> bool:
        """True when the mirror no longer matches what the store would project.

        Compares the SHA-256 of canonical JSON over the task id, goal,
        workflow, requirements and checklists.
        """
        if mirror is None:
            mirror = self.read_mirror()
        if mirror is None:
            return False
        if mirror.get("taskId") != task.id:
            return True
        return self.content_hash(mirror) != self.content_hash(self.project(task))

    # -- writes -------------------------------------------------------------

    def sync_from_queue(
        self,
        task: Task,
        *,
        preserve_fields: Iterable[str] = (),
        backup: bool = False,
    ) -> dict[str, Any]:
        """Overwrite the mirror from *task* and verify the write.

        On any failure the previous mirror content is restored and
        :class:`MirrorSyncError` is raised.
        """
        with self._lock:
            previous = self.mirror_path.read_bytes() if self.mirror_path.exists() else None
            if backup and previous is not None:
                self._backup_locked()
            existing = self.read_mirror() if preserve_fields else None
            data = self.project(task, existing, preserve_fields)
            try:
                _atomic_write_json(self.mirror_path, data)
                self._verify(task, data)
            except (OSError, MirrorSyncError) as exc:
                self._restore(previous)
                raise MirrorSyncError(f"Mirror sync failed for {task.id}: {exc}") from exc
        logger.debug(
            "Mirror synced: id={} stage={}",
            task.id,
            task.current_stage.value if task.current_stage else None,
        )
        return data

    def reconcile(self, task: Task) -> bool:
        """Back up and rewrite the mirror if it has drifted from *task*.

        Returns:
            True when the mirror was rewritten.
        """
        mirror = self.read_mirror()
        if mirror is None:
            self.sync_from_queue(task)
            return True
        if mirror.get("taskId") != task.id:
            logger.warning(
                "Mirror task {} does not match active task {}; resyncing from store",
                mirror.get("taskId"),
                task.id,
            )
            self.sync_from_queue(task, backup=True)
            return True
        if self.detect_manual_edit(task, mirror):
            logger.warning("Mirror for {} was edited outside the store; backing up and resyncing", task.id)
            self.sync_from_queue(task, backup=True)
            return True
        return False

    def clear(self) -> None:
        """Remove the mirror after backing it up (no task is active)."""
        with self._lock:
            if self.mirror_path.exists():
                self._backup_locked()
                self.mirror_path.unlink()

    # -- backups ------------------------------------------------------------

    def backup(self) -> Optional[Path]:
        with self._lock:
            return self._backup_locked()

    def list_backups(self) -> list[Path]:
        """Backups newest first."""
        if not self.backup_dir.exists():
            return []
        prefix = f"{MIRROR_FILE}.backup."
        return sorted(
            (p for p in self.backup_dir.iterdir() if p.name.startswith(prefix)),
            key=lambda p: p.name,
            reverse=True,
        )

    def restore_latest_backup(self) -> Path:
        backups = self.list_backups()
        if not backups:
            raise MirrorSyncError("No mirror backups found")
        with self._lock:
            shutil.copyfile(backups[0], self.mirror_path)
        logger.info("Mirror restored from {}", backups[0].name)
        return backups[0]

    def _backup_locked(self) -> Optional[Path]:
        if not self.mirror_path.exists():
            return None
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        target = self.backup_dir / f"{MIRROR_FILE}.backup.{stamp}"
        n = 1
        while target.exists():
            target = self.backup_dir / f"{MIRROR_FILE}.backup.{stamp}-{n}"
            n += 1
        shutil.copyfile(self.mirror_path, target)
        for stale in self.list_backups()[MAX_MIRROR_BACKUPS:]:
            stale.unlink(missing_ok=True)
        logger.debug("Mirror backed up to {}", target.name)
        return target

    def _restore(self, previous: Optional[bytes]) -> None:
        try:
            if previous is None:
                self.mirror_path.unlink(missing_ok=True)
            else:
                self.mirror_path.write_bytes(previous)
        except OSError as exc:
            logger.error("Could not roll back mirror {}: {}", self.mirror_path, exc)

    def _verify(self, task: Task, written: dict[str, Any]) -> None:
        loaded, err = _load_data_with_error(self.mirror_path, {})
        if err:
            raise MirrorSyncError(f"verification read failed: {err}")
        if loaded.get("taskId") != task.id:
            raise MirrorSyncError(
                f"taskId mismatch: expected {task.id}, got {loaded.get('taskId')}"
            )
        expected_state = (written.get("workflow") or {}).get("currentState")
        if (loaded.get("workflow") or {}).get("currentState") != expected_state:
            raise MirrorSyncError("workflow state mismatch")
