"""Registry of checklist item definitions and context matching.

Each definition may be scoped by stage, goal keywords, pattern ids, role ids,
task tags and an optional predicate.  Every scope that is present must match;
a definition with no scopes applies everywhere.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from ..task_engine.model import Task, WorkflowStage
from ..task_engine.state_engine import parse_stage
from ..utils import _canonical_json


@dataclass(frozen=True)
class ChecklistContext:
    """What the registry knows about a task when choosing items."""

    state: WorkflowStage
    goal: str = ""
    patterns: tuple[str, ...] = ()
    roles: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()

    @classmethod
    def for_task(cls, task: Task, state: WorkflowStage) -> "ChecklistContext":
        return cls(
            state=state,
            goal=task.goal,
            patterns=tuple(task.patterns),
            roles=tuple(task.roles),
            tags=tuple(task.tags),
        )

    def fingerprint(self) -> str:
        return _canonical_json({
            "state": self.state.value,
            "goal": self.goal.lower(),
            "patterns": sorted(self.patterns),
            "roles": sorted(self.roles),
            "tags": sorted(self.tags),
        })


ChecklistPredicate = Callable[[ChecklistContext], bool]


@dataclass(frozen=True)
class ChecklistItemDefinition:
    id: str
    title: str
    description: str = ""
    required: bool = False
    priority: str = "medium"
    evidence_required: bool = False
    stages: tuple[WorkflowStage, ...] = ()
    goal_keywords: tuple[str, ...] = ()
    patterns: tuple[str, ...] = ()
    roles: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    predicate: Optional[ChecklistPredicate] = field(default=None, compare=False)
    source: str = "custom"

    def matches(self, context: ChecklistContext) -> bool:
        if self.stages and context.state not in self.stages:
            return False
        if self.patterns and not set(self.patterns) & set(context.patterns):
            return False
        if self.roles and not set(self.roles) & set(context.roles):
            return False
        if self.tags and not set(self.tags) & set(context.tags):
            return False
        if self.goal_keywords:
            goal = context.goal.lower()
            if not any(k.lower() in goal for k in self.goal_keywords):
                return False
        if self.predicate is not None:
            try:
                return bool(self.predicate(context))
            except Exception as exc:
                logger.warning("Checklist predicate for {} failed; treating as no match: {}", self.id, exc)
                return False
        return True


class ChecklistItemConfig(BaseModel):
    """Checklist item declared in ``config.yaml`` under ``checklists.items``."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    description: str = ""
    required: bool = False
    priority: str = "medium"
    evidence_required: bool = Field(default=False, alias="evidenceRequired")
    stages: list[str] = Field(default_factory=list)
    goals: list[str] = Field(default_factory=list)
    patterns: list[str] = Field(default_factory=list)
    roles: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)

    def to_definition(self) -> ChecklistItemDefinition:
        return ChecklistItemDefinition(
            id=self.id,
            title=self.title,
            description=self.description,
            required=self.required,
            priority=self.priority,
            evidence_required=self.evidence_required,
            stages=tuple(parse_stage(s) for s in self.stages),
            goal_keywords=tuple(self.goals),
            patterns=tuple(self.patterns),
            roles=tuple(self.roles),
            tags=tuple(self.tags),
            source="config",
        )


def definitions_from_config(raw_items: Iterable[dict[str, Any]]) -> list[ChecklistItemDefinition]:
    """Parse config-declared items; invalid entries are logged and skipped."""
    out: list[ChecklistItemDefinition] = []
    for raw in raw_items:
        try:
            out.append(ChecklistItemConfig.model_validate(raw).to_definition())
        except (PydanticValidationError, ValueError) as exc:
            logger.warning("Skipping invalid checklist item {}: {}", raw.get("id", "?"), exc)
    return out


class ChecklistRegistry:
    """Holds item definitions and caches context matches."""

    def __init__(self) -> None:
        self._items: dict[str, ChecklistItemDefinition] = {}
        self._cache: dict[str, list[ChecklistItemDefinition]] = {}
        self._defaults_registered = False

    def register(self, item: ChecklistItemDefinition) -> None:
        """Add *item*, replacing any definition with the same id."""
        self._items[item.id] = item
        self._cache.clear()

    def register_items(self, items: Iterable[ChecklistItemDefinition]) -> None:
        for item in items:
            self.register(item)

    def register_defaults(self) -> None:
        if self._defaults_registered:
            return
        from .items import DEFAULT_ITEMS, ROLE_ITEMS

        self.register_items(DEFAULT_ITEMS)
        self.register_items(ROLE_ITEMS)
        self._defaults_registered = True

    @property
    def has_defaults(self) -> bool:
        return self._defaults_registered

    def all_items(self) -> list[ChecklistItemDefinition]:
        return list(self._items.values())

    def items_for_context(self, context: ChecklistContext) -> list[ChecklistItemDefinition]:
        key = context.fingerprint()
        cached = self._cache.get(key)
        if cached is not None:
            return list(cached)
        matched = [item for item in self._items.values() if item.matches(context)]
        self._cache[key] = matched
        return list(matched)

    def clear(self) -> None:
        self._items.clear()
        self._cache.clear()
        self._defaults_registered = False
