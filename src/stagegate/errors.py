"""Typed errors raised by the task workflow core.

Every error here propagates to the caller.  Callers distinguish an illegal
stage jump (:class:`StateTransitionError`) from persisted data that no longer
satisfies the history rules (:class:`StateHistoryCorruptionError`).
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional


class WorkflowError(Exception):
    """Base class for all task workflow errors."""

    pass


class ValidationError(WorkflowError, ValueError):
    """Malformed input: goal length, unknown stage, missing evidence fields."""

    pass


class TaskNotFoundError(WorkflowError, LookupError):
    """No task with the requested id exists in the store."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}")


class StateTransitionError(WorkflowError):
    """A stage change that is not exactly one step forward."""

    def __init__(self, from_stage: Any, to_stage: Any, next_stage: Optional[Any]):
        self.from_stage = from_stage
        self.to_stage = to_stage
        self.next_stage = next_stage
        current = getattr(from_stage, "value", from_stage)
        attempted = getattr(to_stage, "value", to_stage)
        if next_stage is None:
            hint = f"{current} is the final stage; complete the task instead"
        else:
            hint = f"the only valid next stage is {getattr(next_stage, 'value', next_stage)}"
        super().__init__(
            f"Invalid state transition: {current} -> {attempted}. "
            f"Current stage is {current}; {hint}."
        )


class StateHistoryCorruptionError(WorkflowError):
    """Persisted workflow history violates the forward-only sequence."""

    def __init__(
        self,
        reason: str,
        *,
        current_state: Optional[Any] = None,
        pair: Optional[tuple[Any, Any]] = None,
    ):
        self.reason = reason
        self.current_state = current_state
        self.pair = pair
        super().__init__(f"State history corrupted: {reason}")


class StateChecklistIncompleteError(WorkflowError):
    """Required checklist items for a stage are still open."""

    def __init__(self, stage: Any, incomplete_items: list[dict[str, Any]]):
        self.stage = stage
        self.incomplete_items = incomplete_items
        stage_name = getattr(stage, "value", stage)
        titles = ", ".join(
            f"{item.get('id')} ({item.get('title', '')})" for item in incomplete_items
        )
        super().__init__(
            f"Cannot leave {stage_name}: {len(incomplete_items)} required checklist "
            f"item(s) incomplete: {titles}"
        )

    def incomplete_item_ids(self) -> list[str]:
        return [str(item.get("id")) for item in self.incomplete_items]


class LockTimeoutError(WorkflowError):
    """The exclusive store lock could not be obtained within the retry budget."""

    def __init__(self, lock_path: Path, attempts: int):
        self.lock_path = lock_path
        self.attempts = attempts
        super().__init__(f"Could not acquire lock {lock_path} after {attempts} attempts")


class MirrorSyncError(WorkflowError):
    """Writing or verifying the mirror file failed."""

    pass


class PatternLookupError(WorkflowError):
    """Pattern metadata could not be read.  Callers log and continue."""

    pass


class StoreCorruptedError(WorkflowError):
    """The store file exists but cannot be parsed; it is never overwritten."""

    pass
