"""Task model for the staged workflow queue.

Persisted documents use camelCase keys (``activeTaskId``, ``stateHistory``,
...) so external readers of ``tasks.json`` and the mirror see one shape.
The dataclasses below are the only typed view of those records; every
conversion goes through ``to_dict`` / ``from_dict``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from ..constants import GOAL_MAX_LENGTH, GOAL_MIN_LENGTH, TASK_ID_PREFIX
from ..errors import StateHistoryCorruptionError, ValidationError
from ..utils import _now_iso, _now_ms


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class WorkflowStage(str, Enum):
    """The six fixed workflow stages, in order."""

    UNDERSTANDING = "UNDERSTANDING"
    DESIGNING = "DESIGNING"
    IMPLEMENTING = "IMPLEMENTING"
    TESTING = "TESTING"
    REVIEWING = "REVIEWING"
    READY_TO_COMMIT = "READY_TO_COMMIT"

    @property
    def index(self) -> int:
        return _STAGE_ORDER.index(self)


_STAGE_ORDER: tuple[WorkflowStage, ...] = tuple(WorkflowStage)


class TaskStatus(str, Enum):
    """Queue-level status.  Only one task may be ACTIVE."""

    QUEUED = "QUEUED"
    ACTIVE = "ACTIVE"
    DONE = "DONE"
    ARCHIVED = "ARCHIVED"


class Priority(str, Enum):
    """Priority tier.  CRITICAL is most urgent."""

    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"  # default
    LOW = "LOW"

    @property
    def sort_key(self) -> int:
        return {"CRITICAL": 0, "HIGH": 1, "MEDIUM": 2, "LOW": 3}[self.value]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _generate_id(existing: Optional[set[str]] = None) -> str:
    """Creation-ordered task id: ``task-<epoch ms>``, bumped past collisions."""
    stamp = _now_ms()
    candidate = f"{TASK_ID_PREFIX}{stamp}"
    while existing and candidate in existing:
        stamp += 1
        candidate = f"{TASK_ID_PREFIX}{stamp}"
    return candidate


def normalize_goal(goal: Any) -> str:
    """Trim and length-check a task goal."""
    if not isinstance(goal, str):
        raise ValidationError("Task goal must be a string")
    text = goal.strip()
    if len(text) < GOAL_MIN_LENGTH:
        raise ValidationError(
            f"Task goal must be at least {GOAL_MIN_LENGTH} characters (got {len(text)})"
        )
    if len(text) > GOAL_MAX_LENGTH:
        raise ValidationError(
            f"Task goal must be at most {GOAL_MAX_LENGTH} characters (got {len(text)})"
        )
    return text


def _str_list(raw: Any) -> list[str]:
    if not isinstance(raw, list):
        return []
    return [str(v) for v in raw if isinstance(v, str) and v.strip()]


def _enum(enum_cls: type[Enum], raw: Any, default: Any) -> Any:
    if raw is None:
        return default
    if isinstance(raw, enum_cls):
        return raw
    try:
        return enum_cls(str(raw).upper())
    except (ValueError, KeyError):
        return default


# ---------------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------------

@dataclass
class StateHistoryEntry:
    """A completed stage and when it was entered."""

    state: WorkflowStage
    entered_at: str

    def to_dict(self) -> dict[str, Any]:
        return {"state": self.state.value, "enteredAt": self.entered_at}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StateHistoryEntry":
        raw_state = data.get("state")
        try:
            state = WorkflowStage(str(raw_state).upper())
        except ValueError:
            raise StateHistoryCorruptionError(
                f"unknown stage {raw_state!r} in history", current_state=None
            )
        return cls(state=state, entered_at=str(data.get("enteredAt") or ""))


@dataclass
class WorkflowProgress:
    current_state: WorkflowStage = WorkflowStage.UNDERSTANDING
    state_entered_at: str = field(default_factory=_now_iso)
    state_history: list[StateHistoryEntry] = field(default_factory=list)

    def history_states(self) -> list[WorkflowStage]:
        return [entry.state for entry in self.state_history]

    def to_dict(self) -> dict[str, Any]:
        return {
            "currentState": self.current_state.value,
            "stateEnteredAt": self.state_entered_at,
            "stateHistory": [entry.to_dict() for entry in self.state_history],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WorkflowProgress":
        raw_current = data.get("currentState")
        try:
            current = WorkflowStage(str(raw_current).upper())
        except ValueError:
            raise StateHistoryCorruptionError(f"unknown current stage {raw_current!r}")
        history_raw = data.get("stateHistory") or []
        history = [
            StateHistoryEntry.from_dict(entry)
            for entry in history_raw
            if isinstance(entry, dict)
        ]
        return cls(
            current_state=current,
            state_entered_at=str(data.get("stateEnteredAt") or _now_iso()),
            state_history=history,
        )


# ---------------------------------------------------------------------------
# Checklists
# ---------------------------------------------------------------------------

@dataclass
class ChecklistItemState:
    """One materialized checklist item on a task."""

    id: str
    title: str
    description: str = ""
    required: bool = False
    priority: str = "medium"
    completed: bool = False
    completed_at: Optional[str] = None
    evidence: Optional[dict[str, Any]] = None
    evidence_required: bool = False
    source: str = "default"
    notes: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "required": self.required,
            "priority": self.priority,
            "completed": self.completed,
            "source": self.source,
        }
        if self.completed_at:
            data["completedAt"] = self.completed_at
        if self.evidence is not None:
            data["evidence"] = self.evidence
        if self.evidence_required:
            data["evidenceRequired"] = True
        if self.notes:
            data["notes"] = self.notes
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChecklistItemState":
        evidence = data.get("evidence")
        return cls(
            id=str(data.get("id", "")),
            title=str(data.get("title", "")),
            description=str(data.get("description", "")),
            required=bool(data.get("required", False)),
            priority=str(data.get("priority") or "medium"),
            completed=bool(data.get("completed", False)),
            completed_at=data.get("completedAt"),
            evidence=evidence if isinstance(evidence, dict) else None,
            evidence_required=bool(data.get("evidenceRequired", False)),
            source=str(data.get("source") or "default"),
            notes=data.get("notes"),
        )


@dataclass
class StateChecklist:
    """The checklist instance for one stage of one task."""

    state: WorkflowStage
    items: list[ChecklistItemState] = field(default_factory=list)
    created_at: str = field(default_factory=_now_iso)
    completed_at: Optional[str] = None

    def get(self, item_id: str) -> Optional[ChecklistItemState]:
        for item in self.items:
            if item.id == item_id:
                return item
        return None

    @property
    def required_items(self) -> list[ChecklistItemState]:
        return [i for i in self.items if i.required]

    @property
    def optional_items(self) -> list[ChecklistItemState]:
        return [i for i in self.items if not i.required]

    def incomplete_required(self) -> list[ChecklistItemState]:
        return [i for i in self.items if i.required and not i.completed]

    def progress(self) -> dict[str, int]:
        required = self.required_items
        return {
            "completed": sum(1 for i in self.items if i.completed),
            "total": len(self.items),
            "requiredCompleted": sum(1 for i in required if i.completed),
            "requiredTotal": len(required),
        }

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "state": self.state.value,
            "items": [item.to_dict() for item in self.items],
            "createdAt": self.created_at,
        }
        if self.completed_at:
            data["completedAt"] = self.completed_at
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any], state: Optional[WorkflowStage] = None) -> "StateChecklist":
        stage = _enum(WorkflowStage, data.get("state"), state or WorkflowStage.UNDERSTANDING)
        return cls(
            state=stage,
            items=[
                ChecklistItemState.from_dict(item)
                for item in data.get("items") or []
                if isinstance(item, dict)
            ],
            created_at=str(data.get("createdAt") or _now_iso()),
            completed_at=data.get("completedAt"),
        )


# ---------------------------------------------------------------------------
# Task
# ---------------------------------------------------------------------------

@dataclass
class Task:
    """A unit of work in the queue."""

    id: str
    goal: str
    status: TaskStatus = TaskStatus.QUEUED
    priority: Priority = Priority.MEDIUM
    tags: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=_now_iso)
    activated_at: Optional[str] = None
    completed_at: Optional[str] = None
    archived_at: Optional[str] = None
    estimated_time: Optional[str] = None
    actual_time: Optional[float] = None
    workflow: Optional[WorkflowProgress] = None
    state_checklists: dict[str, StateChecklist] = field(default_factory=dict)
    requirements: list[str] = field(default_factory=list)
    patterns: list[str] = field(default_factory=list)
    roles: list[str] = field(default_factory=list)

    @property
    def current_stage(self) -> Optional[WorkflowStage]:
        return self.workflow.current_state if self.workflow else None

    def ensure_workflow(self) -> WorkflowProgress:
        """Initialize the workflow at the entry stage if absent; never reset it."""
        if self.workflow is None:
            self.workflow = WorkflowProgress()
        return self.workflow

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the persisted camelCase shape, omitting unset optionals."""
        data: dict[str, Any] = {
            "id": self.id,
            "goal": self.goal,
            "status": self.status.value,
            "priority": self.priority.value,
            "tags": list(self.tags),
            "createdAt": self.created_at,
        }
        optional = {
            "activatedAt": self.activated_at,
            "completedAt": self.completed_at,
            "archivedAt": self.archived_at,
            "estimatedTime": self.estimated_time,
            "actualTime": self.actual_time,
        }
        data.update({k: v for k, v in optional.items() if v is not None})
        if self.workflow is not None:
            data["workflow"] = self.workflow.to_dict()
        if self.state_checklists:
            data["stateChecklists"] = {
                stage: checklist.to_dict() for stage, checklist in self.state_checklists.items()
            }
        if self.requirements:
            data["requirements"] = list(self.requirements)
        if self.patterns:
            data["patterns"] = list(self.patterns)
        if self.roles:
            data["roles"] = list(self.roles)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        """Deserialize a persisted record, coercing enums gracefully."""
        workflow_raw = data.get("workflow")
        checklists_raw = data.get("stateChecklists") or {}
        checklists: dict[str, StateChecklist] = {}
        if isinstance(checklists_raw, dict):
            for stage_name, raw in checklists_raw.items():
                if not isinstance(raw, dict):
                    continue
                stage = _enum(WorkflowStage, stage_name, None)
                if stage is None:
                    continue
                checklists[stage.value] = StateChecklist.from_dict(raw, stage)
        actual = data.get("actualTime")
        return cls(
            id=str(data.get("id", "")),
            goal=str(data.get("goal", "")),
            status=_enum(TaskStatus, data.get("status"), TaskStatus.QUEUED),
            priority=_enum(Priority, data.get("priority"), Priority.MEDIUM),
            tags=_str_list(data.get("tags")),
            created_at=str(data.get("createdAt") or _now_iso()),
            activated_at=data.get("activatedAt"),
            completed_at=data.get("completedAt"),
            archived_at=data.get("archivedAt"),
            estimated_time=data.get("estimatedTime"),
            actual_time=float(actual) if isinstance(actual, (int, float)) else None,
            workflow=WorkflowProgress.from_dict(workflow_raw) if isinstance(workflow_raw, dict) else None,
            state_checklists=checklists,
            requirements=_str_list(data.get("requirements")),
            patterns=_str_list(data.get("patterns")),
            roles=_str_list(data.get("roles")),
        )


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------

@dataclass
class QueueMetadata:
    total_tasks: int = 0
    queued_count: int = 0
    active_count: int = 0
    completed_count: int = 0
    archived_count: int = 0
    last_updated: str = field(default_factory=_now_iso)

    @classmethod
    def census(cls, tasks: list[Task]) -> "QueueMetadata":
        """Derive counts from *tasks*; metadata is never maintained by hand."""
        counts = {status: 0 for status in TaskStatus}
        for task in tasks:
            counts[task.status] += 1
        return cls(
            total_tasks=len(tasks),
            queued_count=counts[TaskStatus.QUEUED],
            active_count=counts[TaskStatus.ACTIVE],
            completed_count=counts[TaskStatus.DONE],
            archived_count=counts[TaskStatus.ARCHIVED],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalTasks": self.total_tasks,
            "queuedCount": self.queued_count,
            "activeCount": self.active_count,
            "completedCount": self.completed_count,
            "archivedCount": self.archived_count,
            "lastUpdated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "QueueMetadata":
        def _int(key: str) -> int:
            raw = data.get(key)
            return int(raw) if isinstance(raw, int) else 0

        return cls(
            total_tasks=_int("totalTasks"),
            queued_count=_int("queuedCount"),
            active_count=_int("activeCount"),
            completed_count=_int("completedCount"),
            archived_count=_int("archivedCount"),
            last_updated=str(data.get("lastUpdated") or _now_iso()),
        )


@dataclass
class TaskQueue:
    tasks: list[Task] = field(default_factory=list)
    active_task_id: Optional[str] = None
    metadata: QueueMetadata = field(default_factory=QueueMetadata)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tasks": [task.to_dict() for task in self.tasks],
            "activeTaskId": self.active_task_id,
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskQueue":
        tasks_raw = data.get("tasks")
        tasks = [
            Task.from_dict(item)
            for item in (tasks_raw if isinstance(tasks_raw, list) else [])
            if isinstance(item, dict)
        ]
        active = data.get("activeTaskId")
        meta_raw = data.get("metadata")
        return cls(
            tasks=tasks,
            active_task_id=str(active) if isinstance(active, str) else None,
            metadata=QueueMetadata.from_dict(meta_raw) if isinstance(meta_raw, dict) else QueueMetadata.census(tasks),
        )
