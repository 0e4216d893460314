"""Forward-only sequencing rules for the six workflow stages.

Stateless: every method takes the data it checks.  The single rule is that a
task moves exactly one stage forward at a time, and its recorded history only
ever holds stages it has already left.
"""

from __future__ import annotations

from typing import Any, Optional

from ..errors import StateHistoryCorruptionError, ValidationError
from .model import WorkflowProgress, WorkflowStage

STAGES: tuple[WorkflowStage, ...] = tuple(WorkflowStage)
INITIAL_STAGE = STAGES[0]
FINAL_STAGE = STAGES[-1]

_VALID_TRANSITIONS: dict[WorkflowStage, Optional[WorkflowStage]] = {
    stage: (STAGES[i + 1] if i + 1 < len(STAGES) else None) for i, stage in enumerate(STAGES)
}


def parse_stage(value: Any) -> WorkflowStage:
    """Accept a stage enum, its value, or a case/format-insensitive name."""
    if isinstance(value, WorkflowStage):
        return value
    if isinstance(value, str):
        key = value.strip().upper().replace("-", "_").replace(" ", "_")
        try:
            return WorkflowStage(key)
        except ValueError:
            pass
    valid = ", ".join(s.value for s in STAGES)
    raise ValidationError(f"Unknown workflow stage {value!r}; expected one of {valid}")


class StateEngine:
    """Validate stage transitions and workflow history."""

    def get_all_states(self) -> list[WorkflowStage]:
        return list(STAGES)

    def get_state_index(self, stage: WorkflowStage) -> int:
        return STAGES.index(stage)

    def is_valid_transition(self, from_stage: WorkflowStage, to_stage: WorkflowStage) -> bool:
        return _VALID_TRANSITIONS.get(from_stage) == to_stage

    def get_next_state(self, current: WorkflowStage) -> Optional[WorkflowStage]:
        return _VALID_TRANSITIONS.get(current)

    def get_progress(self, current: WorkflowStage) -> int:
        """Percentage through the workflow: 0 at entry, 100 at the final stage."""
        return round(self.get_state_index(current) / (len(STAGES) - 1) * 100)

    def validate_state_history(self, workflow: WorkflowProgress) -> None:
        """Raise :class:`StateHistoryCorruptionError` when history is not a clean prefix.

        Two symptoms are checked, in order: the current stage recorded as
        already completed, and any adjacent history pair that is not a single
        forward step.
        """
        history = workflow.history_states()
        current = workflow.current_state
        if current in history:
            raise StateHistoryCorruptionError(
                f"current stage {current.value} appears in its own history",
                current_state=current,
            )
        for prev, nxt in zip(history, history[1:]):
            if not self.is_valid_transition(prev, nxt):
                raise StateHistoryCorruptionError(
                    f"invalid sequence {prev.value} -> {nxt.value} in history",
                    current_state=current,
                    pair=(prev, nxt),
                )

    def analyze_workflow(self, workflow: WorkflowProgress) -> dict[str, Any]:
        """Summarize which stages were visited and which were skipped.

        Returns a JSON-friendly dict with ``completed``, ``missing`` (stages
        before the current one that never appear in history), ``progress``
        and ``complete`` (the final stage has been reached with no gaps).
        """
        completed = workflow.history_states()
        current_idx = self.get_state_index(workflow.current_state)
        missing = [s for s in STAGES[:current_idx] if s not in completed]
        return {
            "current": workflow.current_state.value,
            "completed": [s.value for s in completed],
            "missing": [s.value for s in missing],
            "progress": self.get_progress(workflow.current_state),
            "complete": workflow.current_state == FINAL_STAGE and not missing,
        }
