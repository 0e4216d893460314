"""Stage checklist gate.

Materializes checklist instances on a task when it enters a stage, records
item completion (with evidence where an item demands it), and blocks leaving
a stage while required items are open.
"""

from __future__ import annotations

from typing import Any, Iterable, Optional

from loguru import logger
from rich.console import Console
from rich.table import Table

from ..errors import (
    PatternLookupError,
    StateChecklistIncompleteError,
    TaskNotFoundError,
    ValidationError,
)
from ..task_engine.mirror import TaskMirrorSync
from ..task_engine.model import (
    ChecklistItemState,
    StateChecklist,
    Task,
    TaskStatus,
    WorkflowStage,
)
from ..task_engine.state_engine import STAGES
from ..task_engine.store import TaskQueueStore
from ..utils import _now_iso
from .evidence import validate_evidence
from .patterns import PatternProvider
from .registry import ChecklistContext, ChecklistItemDefinition, ChecklistRegistry

# Stages whose checklist is created on first read rather than on transition.
LAZY_STAGES = frozenset(STAGES[:2])


class ChecklistGate:
    """Create, complete and enforce per-stage checklists."""

    def __init__(
        self,
        store: TaskQueueStore,
        mirror: TaskMirrorSync,
        *,
        registry: Optional[ChecklistRegistry] = None,
        pattern_provider: Optional[PatternProvider] = None,
        extra_items: Iterable[ChecklistItemDefinition] = (),
        console: Optional[Console] = None,
    ) -> None:
        self.store = store
        self.mirror = mirror
        self.registry = registry or ChecklistRegistry()
        self.registry.register_defaults()
        self.registry.register_items(extra_items)
        self.pattern_provider = pattern_provider
        self.console = console or Console()

    # -- materialization ----------------------------------------------------

    def _pattern_definitions(self, stage: WorkflowStage) -> list[ChecklistItemDefinition]:
        if self.pattern_provider is None:
            return []
        try:
            return self.pattern_provider.checklist_items(stage)
        except PatternLookupError as exc:
            logger.warning("Failed to load pattern checklists for {}: {}", stage.value, exc)
            return []

    def build_checklist(self, task: Task, stage: WorkflowStage) -> StateChecklist:
        """Return a fresh checklist of every item that applies to *task* at *stage*."""
        context = ChecklistContext.for_task(task, stage)
        definitions = self.registry.items_for_context(context)
        seen = {d.id for d in definitions}
        definitions += [d for d in self._pattern_definitions(stage) if d.id not in seen]
        items = [
            ChecklistItemState(
                id=d.id,
                title=d.title,
                description=d.description,
                required=d.required,
                priority=d.priority,
                evidence_required=d.evidence_required,
                source=d.source,
            )
            for d in definitions
        ]
        return StateChecklist(state=stage, items=items)

    def _sync_mirror(self, task: Task) -> None:
        if task.status == TaskStatus.ACTIVE:
            self.mirror.sync_from_queue(task)

    def initialize_stage_checklist(self, task_id: str, stage: WorkflowStage) -> StateChecklist:
        """Materialize and persist the checklist for *stage*, replacing any previous one."""
        task = self.store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        checklist = self.build_checklist(task, stage)
        task = self.store.save_checklist(task_id, stage, checklist)
        self._sync_mirror(task)
        logger.info(
            "Checklist initialized: task={} stage={} items={} required={}",
            task_id,
            stage.value,
            len(checklist.items),
            len(checklist.required_items),
        )
        return checklist

    def load_stage_checklist(self, task_id: str, stage: WorkflowStage) -> Optional[StateChecklist]:
        """Return the stored checklist; the first two stages are created on demand."""
        task = self.store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        existing = task.state_checklists.get(stage.value)
        if existing is not None:
            return existing
        if stage in LAZY_STAGES:
            return self.initialize_stage_checklist(task_id, stage)
        return None

    # -- completion ---------------------------------------------------------

    def mark_item_complete(
        self,
        task_id: str,
        stage: WorkflowStage,
        item_id: str,
        evidence: Optional[dict[str, Any]] = None,
        *,
        notes: Optional[str] = None,
    ) -> ChecklistItemState:
        """Complete *item_id* on the *stage* checklist.

        Raises:
            ValidationError: no checklist for the stage, unknown item, evidence
                missing for an item that requires it, or malformed evidence.
        """
        if self.load_stage_checklist(task_id, stage) is None:
            raise ValidationError(f"No checklist initialized for {stage.value} on task {task_id}")

        with self.store.transaction() as tx:
            task = tx.require(task_id)
            checklist = task.state_checklists[stage.value]
            item = checklist.get(item_id)
            if item is None:
                known = ", ".join(i.id for i in checklist.items)
                raise ValidationError(
                    f"Checklist item '{item_id}' not found in {stage.value} checklist (items: {known})"
                )
            if evidence is None and item.evidence_required:
                raise ValidationError(
                    f"Checklist item '{item_id}' ({item.title}) requires evidence to be marked complete"
                )
            stored = validate_evidence(evidence, item_id=item_id) if evidence is not None else None

            item.completed = True
            item.completed_at = _now_iso()
            if stored is not None:
                item.evidence = stored
            if notes:
                item.notes = notes
            if not checklist.incomplete_required() and checklist.completed_at is None:
                checklist.completed_at = _now_iso()
            tx.dirty = True

        self._sync_mirror(task)
        logger.info("Checklist item completed: task={} stage={} item={}", task_id, stage.value, item_id)
        return item

    # -- enforcement --------------------------------------------------------

    def validate_stage_checklist_complete(self, task: Task, stage: WorkflowStage) -> None:
        """Raise :class:`StateChecklistIncompleteError` listing every open required item.

        A stage without a checklist does not block.
        """
        checklist = task.state_checklists.get(stage.value)
        if checklist is None:
            return
        incomplete = checklist.incomplete_required()
        if incomplete:
            raise StateChecklistIncompleteError(stage, [i.to_dict() for i in incomplete])

    # -- display ------------------------------------------------------------

    def display_checklist(self, checklist: StateChecklist) -> None:
        """Print required items, optional items and progress.  Reads only."""
        progress = checklist.progress()
        self.console.print(f"\n[bold cyan]Checklist: {checklist.state.value}[/bold cyan]")
        for heading, items in (("Required", checklist.required_items), ("Optional", checklist.optional_items)):
            if not items:
                continue
            table = Table(title=heading, show_header=True, header_style="bold", title_justify="left")
            table.add_column("", width=2)
            table.add_column("Item")
            table.add_column("Description")
            table.add_column("Evidence", justify="center")
            for item in items:
                mark = "[green]✓[/green]" if item.completed else "[dim]○[/dim]"
                needs = "required" if item.evidence_required else ""
                if item.evidence:
                    needs = str(item.evidence.get("type", "attached"))
                table.add_row(mark, f"{item.title} [dim]({item.id})[/dim]", item.description, needs)
            self.console.print(table)
        done, total = progress["requiredCompleted"], progress["requiredTotal"]
        color = "green" if done == total else "yellow"
        self.console.print(
            f"[{color}]Required: {done}/{total}[/{color}]  "
            f"[dim]All items: {progress['completed']}/{progress['total']}[/dim]\n"
        )
