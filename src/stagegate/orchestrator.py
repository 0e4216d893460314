"""Coordinate task creation, retrieval, updates and stage transitions.

:class:`LifecycleOrchestrator` is the only surface callers use.  Every write
goes to the store first and the mirror second; the mirror is never used to
repair the store.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from loguru import logger
from rich.console import Console

from .checklist.gate import ChecklistGate
from .checklist.patterns import PatternProvider
from .checklist.registry import ChecklistRegistry, definitions_from_config
from .config import WorkflowSettings, load_workflow_settings
from .constants import MIRROR_STATUS_COMPLETED
from .errors import (
    StateTransitionError,
    StoreCorruptedError,
    TaskNotFoundError,
    ValidationError,
)
from .task_engine.mirror import TaskMirrorSync
from .task_engine.model import (
    Priority,
    StateChecklist,
    StateHistoryEntry,
    Task,
    TaskStatus,
    WorkflowProgress,
    WorkflowStage,
)
from .task_engine.state_engine import FINAL_STAGE, INITIAL_STAGE, StateEngine, parse_stage
from .task_engine.store import TaskQueueStore
from .task_engine.time_tracking import calculate_actual_time, compare_time, format_time, parse_estimate
from .utils import _now_iso, _parse_iso


@dataclass
class StageChange:
    """Result of a successful :meth:`LifecycleOrchestrator.update_state`."""

    task: Task
    from_stage: WorkflowStage
    to_stage: WorkflowStage
    progress: int
    checklist: Optional[StateChecklist] = None
    warnings: list[str] = field(default_factory=list)


@dataclass
class CompletionResult:
    completed: Task
    next_active: Optional[Task] = None
    already_completed: bool = False
    time_comparison: dict[str, Any] = field(default_factory=dict)


class LifecycleOrchestrator:
    """Compose the store, mirror, state engine and checklist gate.

    Build one per process with :meth:`for_project`, or pass collaborators in
    directly (tests do this to swap settings or consoles).
    """

    def __init__(
        self,
        project_dir: Path,
        store: TaskQueueStore,
        mirror: TaskMirrorSync,
        gate: ChecklistGate,
        *,
        engine: Optional[StateEngine] = None,
        settings: Optional[WorkflowSettings] = None,
        display: bool = True,
    ) -> None:
        self.project_dir = project_dir
        self.store = store
        self.mirror = mirror
        self.gate = gate
        self.engine = engine or StateEngine()
        self.settings = settings or WorkflowSettings()
        self.display = display

    @classmethod
    def for_project(
        cls,
        project_dir: Path,
        *,
        settings: Optional[WorkflowSettings] = None,
        console: Optional[Console] = None,
        display: bool = True,
    ) -> "LifecycleOrchestrator":
        """Wire default collaborators from ``.ai-context/config.yaml``."""
        project_dir = project_dir.resolve()
        settings = settings or load_workflow_settings(project_dir)
        lock = {
            "lock_retries": settings.lock_retries,
            "lock_min_timeout": settings.lock_min_timeout,
            "lock_max_timeout": settings.lock_max_timeout,
        }
        store = TaskQueueStore(project_dir, archive_after_days=settings.archive_after_days, **lock)
        mirror = TaskMirrorSync(project_dir, **lock)
        gate = ChecklistGate(
            store,
            mirror,
            registry=ChecklistRegistry(),
            pattern_provider=PatternProvider(project_dir),
            extra_items=definitions_from_config(settings.checklist_items),
            console=console,
        )
        return cls(project_dir, store, mirror, gate, settings=settings, display=display)

    # ------------------------------------------------------------------
    # Task creation and editing
    # ------------------------------------------------------------------

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
        """Create a task; an ACTIVE result is mirrored and gets its first checklist."""
        task = self.store.create_task(
            goal,
            priority=priority,
            tags=tags,
            estimated_time=estimated_time,
            requirements=requirements,
            force=force,
        )
        if task.status == TaskStatus.ACTIVE:
            self.mirror.sync_from_queue(task)
            self.gate.initialize_stage_checklist(task.id, task.current_stage or INITIAL_STAGE)
            return self._reload(task.id)
        return task

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
        """Edit the ACTIVE task's goal, requirements or checklist scopes."""
        current = self.store.get_task(task_id)
        if current is None:
            raise TaskNotFoundError(task_id)
        if current.status != TaskStatus.ACTIVE:
            raise ValidationError(
                f"Only the active task can be updated; {task_id} is {current.status.value}"
            )
        task = self.store.update_task(
            task_id,
            goal=goal,
            add_requirement=add_requirement,
            tags=tags,
            patterns=patterns,
            roles=roles,
        )
        self.mirror.sync_from_queue(task)
        logger.info("Task updated: id={}", task_id)
        return task

    def activate_task(self, task_id: str) -> Task:
        """Switch the active task; the previous one keeps its stage."""
        task = self.store.activate_task(task_id)
        self.mirror.sync_from_queue(task)
        if task.current_stage is not None:
            self.gate.load_stage_checklist(task.id, task.current_stage)
        return self._reload(task.id)

    def list_tasks(self, **filters: Any) -> list[Task]:
        return self.store.list_tasks(**filters)

    def archive_old_tasks(self) -> int:
        return self.store.archive_old_tasks()

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    def _reload(self, task_id: str) -> Task:
        task = self.store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def get_current_task(self) -> Optional[Task]:
        """Return the ACTIVE task, or ``None``.

        The store is read first.  When it has no active task but a mirror
        exists, the read is retried once after yielding, since another
        process may be mid-write.  A drifted mirror is backed up and
        rewritten from the store.
        """
        try:
            task = self.store.get_active_task()
            if task is None and self.mirror.exists():
                time.sleep(0)
                task = self.store.get_active_task()
        except StoreCorruptedError as exc:
            return self._mirror_fallback(exc)

        if task is None:
            return None
        if task.completed_at:
            return None
        self.mirror.reconcile(task)
        return task

    def _mirror_fallback(self, exc: StoreCorruptedError) -> Optional[Task]:
        mirror = self.mirror.read_mirror()
        if not mirror or mirror.get("status") == MIRROR_STATUS_COMPLETED or mirror.get("completedAt"):
            raise exc
        logger.warning("Task store unavailable ({}); reading active task from mirror", exc)
        return Task.from_dict({
            "id": mirror.get("taskId"),
            "goal": mirror.get("originalGoal"),
            "status": TaskStatus.ACTIVE.value,
            "priority": mirror.get("priority"),
            "tags": mirror.get("tags"),
            "activatedAt": mirror.get("startedAt"),
            "workflow": mirror.get("workflow"),
            "requirements": mirror.get("requirements"),
            "stateChecklists": mirror.get("stateChecklists"),
        })

    def _require_active(self) -> Task:
        task = self.get_current_task()
        if task is None:
            raise ValidationError("No active task. Create or activate a task first.")
        return task

    # ------------------------------------------------------------------
    # Stage transitions
    # ------------------------------------------------------------------

    def _check_artifacts(self, target: WorkflowStage) -> Optional[str]:
        paths = self.settings.prerequisites.get(target.value) or []
        if not paths:
            return None
        if any((self.project_dir / p).exists() for p in paths):
            return None
        return f"{target.value} requires one of: {', '.join(paths)}"

    def _check_prerequisites(self, task: Task, current: WorkflowStage, target: WorkflowStage) -> list[str]:
        warnings: list[str] = []
        if self.settings.enforce_checklists:
            self.gate.load_stage_checklist(task.id, current)
            self.gate.validate_stage_checklist_complete(self._reload(task.id), current)
        missing = self._check_artifacts(target)
        if missing:
            if target == WorkflowStage.REVIEWING:
                logger.warning("Prerequisite not met, continuing into review: {}", missing)
                warnings.append(missing)
            else:
                raise ValidationError(f"Prerequisite not met: {missing}")
        return warnings

    def _check_rate_limit(self, workflow: WorkflowProgress) -> Optional[str]:
        entered = _parse_iso(workflow.state_entered_at)
        if entered is None:
            return None
        elapsed = (datetime.now(timezone.utc) - entered).total_seconds()
        if 0 <= elapsed < self.settings.rate_limit_seconds:
            logger.warning("Rapid state change detected ({} seconds since last change)", int(elapsed))
            return f"Rapid state change detected ({int(elapsed)} seconds since last change)"
        return None

    def update_state(self, stage: WorkflowStage | str) -> StageChange:
        """Advance the active task exactly one stage.

        Raises:
            StateHistoryCorruptionError: stored history is not a clean prefix.
            StateTransitionError: *stage* is not the single next stage.
            StateChecklistIncompleteError: required items of the current
                stage are still open.
        """
        target = parse_stage(stage)
        task = self._require_active()
        workflow = task.workflow
        if workflow is None:
            raise ValidationError(f"Task {task.id} has no workflow state")
        current = workflow.current_state

        self.engine.validate_state_history(workflow)
        if not self.engine.is_valid_transition(current, target):
            raise StateTransitionError(current, target, self.engine.get_next_state(current))

        warnings = self._check_prerequisites(task, current, target)
        rate_warning = self._check_rate_limit(workflow)
        if rate_warning:
            warnings.append(rate_warning)

        with self.store.transaction() as tx:
            stored = tx.require(task.id)
            stored_workflow = stored.ensure_workflow()
            if stored_workflow.current_state != current:
                raise StateTransitionError(
                    stored_workflow.current_state,
                    target,
                    self.engine.get_next_state(stored_workflow.current_state),
                )
            if current not in stored_workflow.history_states():
                stored_workflow.state_history.append(
                    StateHistoryEntry(state=current, entered_at=stored_workflow.state_entered_at)
                )
            stored_workflow.current_state = target
            stored_workflow.state_entered_at = _now_iso()
            tx.dirty = True
        self.mirror.sync_from_queue(stored)
        logger.info("Task {} moved {} -> {}", task.id, current.value, target.value)

        checklist = self.gate.initialize_stage_checklist(task.id, target)
        if self.display:
            self.gate.display_checklist(checklist)

        return StageChange(
            task=self._reload(task.id),
            from_stage=current,
            to_stage=target,
            progress=self.engine.get_progress(target),
            checklist=checklist,
            warnings=warnings,
        )

    # ------------------------------------------------------------------
    # Checklists
    # ------------------------------------------------------------------

    def mark_item_complete(
        self,
        item_id: str,
        evidence: Optional[dict[str, Any]] = None,
        *,
        stage: Optional[WorkflowStage | str] = None,
        notes: Optional[str] = None,
    ) -> StateChecklist:
        """Complete a checklist item on the active task (current stage by default)."""
        task = self._require_active()
        target = parse_stage(stage) if stage is not None else task.current_stage or INITIAL_STAGE
        self.gate.mark_item_complete(task.id, target, item_id, evidence, notes=notes)
        return self._reload(task.id).state_checklists[target.value]

    def show_checklist(self, stage: Optional[WorkflowStage | str] = None) -> Optional[StateChecklist]:
        task = self._require_active()
        target = parse_stage(stage) if stage is not None else task.current_stage or INITIAL_STAGE
        checklist = self.gate.load_stage_checklist(task.id, target)
        if checklist is not None and self.display:
            self.gate.display_checklist(checklist)
        return checklist

    # ------------------------------------------------------------------
    # Completion and reporting
    # ------------------------------------------------------------------

    def complete_task(self, task_id: Optional[str] = None) -> CompletionResult:
        """Finish a task that has reached the final stage and promote the next one."""
        if task_id is None:
            task = self._require_active()
        else:
            task = self._reload(task_id)

        if task.status == TaskStatus.DONE:
            logger.info("Task {} is already completed", task.id)
            return CompletionResult(
                completed=task,
                next_active=self.store.get_active_task(),
                already_completed=True,
            )
        if task.current_stage != FINAL_STAGE:
            current = task.current_stage.value if task.current_stage else "none"
            raise ValidationError(
                f"Task {task.id} must reach {FINAL_STAGE.value} before completion (currently {current})"
            )
        if self.settings.enforce_checklists:
            self.gate.validate_stage_checklist_complete(task, FINAL_STAGE)

        completed, next_active = self.store.complete_task(task.id)
        if next_active is not None:
            self.mirror.sync_from_queue(next_active, backup=True)
            if next_active.current_stage is not None:
                self.gate.load_stage_checklist(next_active.id, next_active.current_stage)
            next_active = self._reload(next_active.id)
        else:
            self.mirror.sync_from_queue(completed)

        return CompletionResult(
            completed=completed,
            next_active=next_active,
            time_comparison=compare_time(parse_estimate(completed.estimated_time), completed.actual_time),
        )

    def get_progress_report(self) -> Optional[dict[str, Any]]:
        """JSON-friendly summary of the active task's stage, checklist and time."""
        task = self.get_current_task()
        if task is None or task.workflow is None:
            return None
        analysis = self.engine.analyze_workflow(task.workflow)
        checklist = task.state_checklists.get(task.workflow.current_state.value)
        elapsed = calculate_actual_time(task.activated_at, _now_iso())
        estimate = parse_estimate(task.estimated_time)
        next_stage = self.engine.get_next_state(task.workflow.current_state)
        return {
            "taskId": task.id,
            "goal": task.goal,
            "priority": task.priority.value,
            "workflow": analysis,
            "nextStage": next_stage.value if next_stage else None,
            "checklist": checklist.progress() if checklist else None,
            "elapsed": format_time(elapsed) if elapsed is not None else None,
            "estimate": format_time(estimate) if estimate is not None else None,
        }
