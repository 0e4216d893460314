"""File-based task queue store with cross-process locking.

Stores every task in a single JSON file (``tasks.json``) inside the project's
``.ai-context/`` directory.  All mutations go through :meth:`TaskQueueStore.transaction`,
which acquires an exclusive file lock, loads the queue, lets the caller mutate
it, recomputes the derived metadata and writes it back atomically before the
lock is released.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path
from typing import Iterator, Optional

from loguru import logger

from ..constants import (
    CONTEXT_DIR_NAME,
    DEFAULT_ARCHIVE_AFTER_DAYS,
    DEFAULT_LOCK_MAX_TIMEOUT,
    DEFAULT_LOCK_MIN_TIMEOUT,
    DEFAULT_LOCK_RETRIES,
    STORE_FILE,
    STORE_FILE_MODE,
    STORE_LOCK_FILE,
)
from ..errors import (
    StateHistoryCorruptionError,
    StoreCorruptedError,
    TaskNotFoundError,
    ValidationError,
)
from ..io_utils import BoundedFileLock, _atomic_write_json, _load_data_with_error
from ..utils import _now_iso, _parse_iso
from .model import (
    Priority,
    QueueMetadata,
    StateChecklist,
    Task,
    TaskQueue,
    TaskStatus,
    WorkflowStage,
    _generate_id,
    normalize_goal,
)
from .priority import detect_priority, parse_priority
from .roles import detect_roles
from .time_tracking import calculate_actual_time


# ---------------------------------------------------------------------------
# Ordering helpers
# ---------------------------------------------------------------------------

def _queue_order(task: Task) -> tuple[int, str]:
    return (task.priority.sort_key, task.created_at)


def _listing_order(task: Task) -> tuple[int, int, str]:
    return (0 if task.status == TaskStatus.ACTIVE else 1, task.priority.sort_key, task.created_at)


def _validate_tags(tags: Optional[list[str]]) -> list[str]:
    if tags is None:
        return []
    if not isinstance(tags, (list, tuple)):
        raise ValidationError("Tags must be a list of strings")
    if any(not isinstance(tag, str) or not tag.strip() for tag in tags):
        raise ValidationError("All tags must be non-empty strings")
    return [tag.strip() for tag in tags]


def _parse_status(value: TaskStatus | str | None) -> Optional[TaskStatus]:
    if not value:
        return None
    if isinstance(value, TaskStatus):
        return value
    try:
        return TaskStatus(str(value).strip().upper())
    except ValueError:
        valid = ", ".join(s.value for s in TaskStatus)
        raise ValidationError(f"Invalid status {value!r}; expected one of {valid}")


def _stage_name(task: Task) -> Optional[str]:
    return task.current_stage.value if task.current_stage else None


# ---------------------------------------------------------------------------
# Transaction
# ---------------------------------------------------------------------------

class _QueueTx:
    """In-memory view of the queue while the store lock is held.

    Mutations set ``dirty``; the owning ``transaction`` writes the queue back
    only when something changed.
    """

    def __init__(self, queue: TaskQueue) -> None:
        self.queue = queue
        self.dirty = False

    # -- lookups ------------------------------------------------------------

    @property
    def tasks(self) -> list[Task]:
        return self.queue.tasks

    def get(self, task_id: str) -> Optional[Task]:
        for task in self.queue.tasks:
            if task.id == task_id:
                return task
        return None

    def require(self, task_id: str) -> Task:
        task = self.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def active(self) -> Optional[Task]:
        if self.queue.active_task_id is None:
            return None
        task = self.get(self.queue.active_task_id)
        if task is not None and task.status == TaskStatus.ACTIVE:
            return task
        return None

    def next_queued(self) -> Optional[Task]:
        queued = [t for t in self.queue.tasks if t.status == TaskStatus.QUEUED]
        if not queued:
            return None
        return min(queued, key=_queue_order)

    # -- mutations ----------------------------------------------------------

    def add(self, task: Task) -> Task:
        if self.get(task.id) is not None:
            raise ValidationError(f"Task {task.id} already exists")
        self.queue.tasks.append(task)
        self.dirty = True
        return task

    def promote(self, task: Task) -> Task:
        """Make *task* the single ACTIVE task, demoting any previous one."""
        current = self.active()
        if current is not None and current.id != task.id:
            current.status = TaskStatus.QUEUED
            logger.debug("Task demoted to queue: id={} stage={}", current.id, _stage_name(current))
        task.status = TaskStatus.ACTIVE
        task.activated_at = _now_iso()
        task.ensure_workflow()
        self.queue.active_task_id = task.id
        self.dirty = True
        return task

    def repair_active_pointer(self) -> None:
        """Bring ``activeTaskId`` in line with the ACTIVE task census."""
        actives = [t for t in self.queue.tasks if t.status == TaskStatus.ACTIVE]
        pointer = self.queue.active_task_id
        if len(actives) > 1:
            keep = next((t for t in actives if t.id == pointer), actives[0])
            for task in actives:
                if task.id != keep.id:
                    task.status = TaskStatus.QUEUED
            logger.warning(
                "Multiple ACTIVE tasks found; keeping {} and re-queueing {}",
                keep.id,
                [t.id for t in actives if t.id != keep.id],
            )
            actives = [keep]
            self.dirty = True
        expected = actives[0].id if actives else None
        if pointer != expected:
            logger.warning("activeTaskId {} did not match store; reset to {}", pointer, expected)
            self.queue.active_task_id = expected
            self.dirty = True


# ---------------------------------------------------------------------------
# TaskQueueStore
# ---------------------------------------------------------------------------

class TaskQueueStore:
    """Authoritative, lock-guarded store for every :class:`Task`.

    Parameters
    ----------
    project_dir:
        Project root; the queue lives in ``<project_dir>/.ai-context/tasks.json``.
    """

    def __init__(
        self,
        project_dir: Path,
        *,
        lock_retries: int = DEFAULT_LOCK_RETRIES,
        lock_min_timeout: float = DEFAULT_LOCK_MIN_TIMEOUT,
        lock_max_timeout: float = DEFAULT_LOCK_MAX_TIMEOUT,
        archive_after_days: int = DEFAULT_ARCHIVE_AFTER_DAYS,
    ) -> None:
        self.project_dir = project_dir
        self.context_dir = project_dir / CONTEXT_DIR_NAME
        self.store_path = self.context_dir / STORE_FILE
        self.archive_after_days = archive_after_days
        self._lock = BoundedFileLock(
            self.context_dir / STORE_LOCK_FILE,
            retries=lock_retries,
            min_timeout=lock_min_timeout,
            max_timeout=lock_max_timeout,
        )

    # -- internal helpers ---------------------------------------------------

    def _load(self) -> TaskQueue:
        data, err = _load_data_with_error(self.store_path, {})
        if err:
            raise StoreCorruptedError(f"Refusing to use unreadable task store: {err}")
        if not data:
            return TaskQueue()
        try:
            return TaskQueue.from_dict(data)
        except StateHistoryCorruptionError as exc:
            raise StoreCorruptedError(
                f"Refusing to use task store with invalid workflow data: {exc}"
            ) from exc

    def _save(self, queue: TaskQueue) -> None:
        queue.metadata = QueueMetadata.census(queue.tasks)
        _atomic_write_json(self.store_path, queue.to_dict(), mode=STORE_FILE_MODE)
        logger.debug(
            "Task store saved: active={} total={}",
            queue.active_task_id,
            queue.metadata.total_tasks,
        )

    # -- public API ---------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[_QueueTx]:
        """Acquire the lock, load the queue, yield a transaction, and save on exit.

        Usage::

            with store.transaction() as tx:
                task = tx.require("task-1700000000000")
                task.tags.append("backend")
                tx.dirty = True
        """
        with self._lock:
            tx = _QueueTx(self._load())
            tx.repair_active_pointer()
            yield tx
            if tx.dirty:
                self._save(tx.queue)

    def read_queue(self) -> TaskQueue:
        """Fresh, lock-free read of the whole queue from disk."""
        return self._load()

    def get_task(self, task_id: str) -> Optional[Task]:
        for task in self._load().tasks:
            if task.id == task_id:
                return task
        return None

    def get_active_task(self) -> Optional[Task]:
        """Return the task named by ``activeTaskId``, read from disk on every call."""
        queue = self._load()
        if queue.active_task_id is None:
            return None
        for task in queue.tasks:
            if task.id == queue.active_task_id and task.status == TaskStatus.ACTIVE:
                return task
        return None

    def create_task(
        self,
        goal: str,
        *,
        priority: Optional[Priority | str] = None,
        tags: Optional[list[str]] = None,
        estimated_time: Optional[str] = None,
        requirements: Optional[list[str]] = None,
        force: bool = False,
    ) -> Task:
        """Create a task; it becomes ACTIVE when nothing else is, or when *force* is set."""
        text = normalize_goal(goal)
        tier = parse_priority(priority) or detect_priority(text)
        clean_tags = _validate_tags(tags)
        with self.transaction() as tx:
            task = Task(
                id=_generate_id({t.id for t in tx.tasks}),
                goal=text,
                status=TaskStatus.QUEUED,
                priority=tier,
                tags=clean_tags,
                estimated_time=estimated_time,
                requirements=[r for r in (requirements or []) if r and r.strip()],
                roles=detect_roles(text),
            )
            tx.add(task)
            if force or tx.active() is None:
                tx.promote(task)
        logger.info("Task created: id={} status={} priority={}", task.id, task.status.value, tier.value)
        return task

    def activate_task(self, task_id: str) -> Task:
        """Make *task_id* ACTIVE; the previous active task keeps its workflow."""
        with self.transaction() as tx:
            task = tx.require(task_id)
            if task.status == TaskStatus.ARCHIVED:
                raise ValidationError(f"Cannot activate archived task: {task_id}")
            if task.status == TaskStatus.ACTIVE:
                return task
            if task.status == TaskStatus.DONE:
                task.completed_at = None
                task.actual_time = None
            tx.promote(task)
        logger.info("Task activated: id={} stage={}", task.id, _stage_name(task))
        return task

    def complete_task(self, task_id: str) -> tuple[Task, Optional[Task]]:
        """Mark the ACTIVE task DONE and promote the next queued task.

        Returns:
            ``(completed, next_active)``; ``next_active`` is ``None`` when the
            queue is empty.
        """
        with self.transaction() as tx:
            task = tx.require(task_id)
            if task.status == TaskStatus.ARCHIVED:
                raise ValidationError(f"Cannot complete archived task: {task_id}")
            if task.status != TaskStatus.ACTIVE:
                raise ValidationError(
                    f"Task is not active: {task_id} (status {task.status.value}); "
                    "only ACTIVE tasks can be completed"
                )
            now = _now_iso()
            task.status = TaskStatus.DONE
            task.completed_at = now
            task.actual_time = calculate_actual_time(task.activated_at, now)
            tx.queue.active_task_id = None
            tx.dirty = True

            next_task = tx.next_queued()
            if next_task is not None:
                tx.promote(next_task)
        logger.info(
            "Task completed: id={} actual_hours={} next={}",
            task.id,
            task.actual_time,
            next_task.id if next_task else None,
        )
        return task, next_task

    def archive_old_tasks(self, now: Optional[str] = None) -> int:
        """Archive DONE tasks completed more than ``archive_after_days`` ago."""
        reference = _parse_iso(now or _now_iso())
        if reference is None:
            raise ValidationError(f"Invalid timestamp: {now!r}")
        cutoff = reference - timedelta(days=self.archive_after_days)
        archived = 0
        with self.transaction() as tx:
            for task in tx.tasks:
                if task.status != TaskStatus.DONE:
                    continue
                completed = _parse_iso(task.completed_at)
                if completed is not None and completed < cutoff:
                    task.status = TaskStatus.ARCHIVED
                    task.archived_at = _now_iso()
                    archived += 1
            if archived:
                tx.dirty = True
        if archived:
            logger.info("Archived {} task(s) completed before {}", archived, cutoff.isoformat())
        return archived

    def list_tasks(
        self,
        *,
        status: Optional[TaskStatus | str] = None,
        priority: Optional[Priority | str] = None,
        include_archived: bool = False,
        limit: Optional[int] = None,
    ) -> list[Task]:
        """Tasks ordered ACTIVE first, then by priority tier, then oldest first."""
        wanted_status = _parse_status(status)
        wanted_priority = parse_priority(priority)
        out: list[Task] = []
        for task in self._load().tasks:
            if wanted_status is not None and task.status != wanted_status:
                continue
            if wanted_status != TaskStatus.ARCHIVED and not include_archived and task.status == TaskStatus.ARCHIVED:
                continue
            if wanted_priority is not None and task.priority != wanted_priority:
                continue
            out.append(task)
        out.sort(key=_listing_order)
        if limit is not None and limit >= 0:
            out = out[:limit]
        return out

    def update_task(
        self,
        task_id: str,
        *,
        goal: Optional[str] = None,
        add_requirement: Optional[str] = None,
        tags: Optional[list[str]] = None,
        patterns: Optional[list[str]] = None,
        roles: Optional[list[str]] = None,
    ) -> Task:
        """Edit descriptive fields of a task.  Workflow state is not touched here."""
        new_goal = normalize_goal(goal) if goal is not None else None
        new_tags = _validate_tags(tags) if tags is not None else None
        with self.transaction() as tx:
            task = tx.require(task_id)
            if new_goal is not None:
                task.goal = new_goal
            if add_requirement is not None:
                requirement = add_requirement.strip()
                if not requirement:
                    raise ValidationError("Requirement must be a non-empty string")
                if requirement not in task.requirements:
                    task.requirements.append(requirement)
            if new_tags is not None:
                task.tags = new_tags
            if patterns is not None:
                task.patterns = [p for p in patterns if p]
            if roles is not None:
                task.roles = [r for r in roles if r]
            tx.dirty = True
        return task

    def save_checklist(self, task_id: str, stage: WorkflowStage, checklist: StateChecklist) -> Task:
        with self.transaction() as tx:
            task = tx.require(task_id)
            task.state_checklists[stage.value] = checklist
            tx.dirty = True
        return task
