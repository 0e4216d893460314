"""Provide the public `stagegate` package exports."""

from __future__ import annotations

from .errors import (
    LockTimeoutError,
    StateChecklistIncompleteError,
    StateHistoryCorruptionError,
    StateTransitionError,
    TaskNotFoundError,
    ValidationError,
    WorkflowError,
)
from .orchestrator import LifecycleOrchestrator
from .task_engine.model import Priority, Task, TaskStatus, WorkflowStage

__all__ = [
    "LifecycleOrchestrator",
    "LockTimeoutError",
    "Priority",
    "StateChecklistIncompleteError",
    "StateHistoryCorruptionError",
    "StateTransitionError",
    "Task",
    "TaskNotFoundError",
    "TaskStatus",
    "ValidationError",
    "WorkflowError",
    "WorkflowStage",
]
