"""Project patterns that contribute extra checklist items per stage.

Patterns are read from ``.ai-context/patterns.yaml``::

    patterns:
      - id: api-contract
        title: Keep the API contract in sync
        applicableStates: [DESIGNING, IMPLEMENTING]
        requiredStates: [IMPLEMENTING]
        action: Update openapi.yaml alongside handler changes
        validation: {type: file_exists, rule: openapi.yaml, message: openapi.yaml not updated}

A pattern becomes item ``pattern-<id>`` in every stage it applies to, and is
required in the stages listed under ``requiredStates``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal, Optional

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from ..constants import CONTEXT_DIR_NAME, PATTERNS_FILE
from ..errors import PatternLookupError
from ..io_utils import _load_data_with_error
from ..task_engine.model import WorkflowStage
from ..task_engine.state_engine import parse_stage
from .registry import ChecklistItemDefinition


class PatternValidation(BaseModel):
    type: Literal["file_exists", "command_run", "code_check", "custom"] = "custom"
    rule: str = ""
    message: str = ""
    severity: Literal["error", "warning", "info"] = "warning"


class StateBasedPattern(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    applicable_states: list[WorkflowStage] = Field(default_factory=list, alias="applicableStates")
    required_states: list[WorkflowStage] = Field(default_factory=list, alias="requiredStates")
    description: str = ""
    action: str = ""
    validation: Optional[PatternValidation] = None

    @field_validator("applicable_states", "required_states", mode="before")
    @classmethod
    def _parse_states(cls, value: object) -> list[WorkflowStage]:
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        return [parse_stage(v) for v in value]  # type: ignore[union-attr]

    def applies_to(self, stage: WorkflowStage) -> bool:
        return stage in self.applicable_states or stage in self.required_states

    def to_definition(self, stage: WorkflowStage) -> ChecklistItemDefinition:
        required = stage in self.required_states
        return ChecklistItemDefinition(
            id=f"pattern-{self.id}",
            title=self.title,
            description=self.description or self.action or "Follow pattern guidelines",
            required=required,
            priority="high" if required else "medium",
            stages=(stage,),
            source="pattern",
        )


class PatternProvider:
    """Read state-based patterns for a project."""

    def __init__(self, project_dir: Path) -> None:
        self.patterns_path = project_dir / CONTEXT_DIR_NAME / PATTERNS_FILE

    def load_patterns(self) -> list[StateBasedPattern]:
        """Return all valid patterns.

        Raises:
            PatternLookupError: the patterns file exists but cannot be parsed.
        """
        data, err = _load_data_with_error(self.patterns_path, {})
        if err:
            raise PatternLookupError(err)
        raw = data.get("patterns") or []
        if not isinstance(raw, list):
            raise PatternLookupError(f"{self.patterns_path.name}: 'patterns' must be a list")
        out: list[StateBasedPattern] = []
        for entry in raw:
            try:
                out.append(StateBasedPattern.model_validate(entry))
            except (PydanticValidationError, ValueError) as exc:
                ident = entry.get("id", "?") if isinstance(entry, dict) else "?"
                logger.warning("Skipping invalid pattern {}: {}", ident, exc)
        return out

    def patterns_for_state(self, stage: WorkflowStage) -> dict[str, list[StateBasedPattern]]:
        relevant = [p for p in self.load_patterns() if p.applies_to(stage)]
        return {
            "mandatory": [p for p in relevant if stage in p.required_states],
            "recommended": [p for p in relevant if stage not in p.required_states],
        }

    def checklist_items(self, stage: WorkflowStage) -> list[ChecklistItemDefinition]:
        grouped = self.patterns_for_state(stage)
        return [p.to_definition(stage) for p in grouped["mandatory"] + grouped["recommended"]]
