"""Load optional workflow configuration from `.ai-context/config.yaml`."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger

from .constants import (
    CONFIG_FILE,
    CONTEXT_DIR_NAME,
    DEFAULT_ARCHIVE_AFTER_DAYS,
    DEFAULT_LOCK_MAX_TIMEOUT,
    DEFAULT_LOCK_MIN_TIMEOUT,
    DEFAULT_LOCK_RETRIES,
    DEFAULT_RATE_LIMIT_SECONDS,
    DEFAULT_REVIEW_ARTIFACTS,
)
from .io_utils import _load_data_with_error


def load_workflow_config(project_dir: Path) -> tuple[dict[str, Any], str | None]:
    """Load the optional workflow config file.

    Args:
        project_dir: Repository root directory.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    project_dir = project_dir.resolve()
    path = project_dir / CONTEXT_DIR_NAME / CONFIG_FILE
    data, err = _load_data_with_error(path, {})
    if not path.exists():
        return {}, None
    if err:
        return {}, err
    return data, None


def _get_nested(config: dict[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def _as_number(raw: Any, default: float, *, minimum: float = 0.0) -> float:
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        return default
    return raw if raw >= minimum else default


@dataclass
class WorkflowSettings:
    """Resolved workflow settings with defaults applied."""

    rate_limit_seconds: float = DEFAULT_RATE_LIMIT_SECONDS
    archive_after_days: int = DEFAULT_ARCHIVE_AFTER_DAYS
    lock_retries: int = DEFAULT_LOCK_RETRIES
    lock_min_timeout: float = DEFAULT_LOCK_MIN_TIMEOUT
    lock_max_timeout: float = DEFAULT_LOCK_MAX_TIMEOUT
    enforce_checklists: bool = True
    prerequisites: dict[str, list[str]] = field(
        default_factory=lambda: {"REVIEWING": list(DEFAULT_REVIEW_ARTIFACTS)}
    )
    checklist_items: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "WorkflowSettings":
        settings = cls()
        settings.rate_limit_seconds = _as_number(
            config.get("rate_limit_seconds"), settings.rate_limit_seconds
        )
        settings.archive_after_days = int(
            _as_number(config.get("archive_after_days"), settings.archive_after_days, minimum=1)
        )
        settings.lock_retries = int(
            _as_number(_get_nested(config, "lock", "retries"), settings.lock_retries, minimum=1)
        )
        settings.lock_min_timeout = _as_number(
            _get_nested(config, "lock", "min_timeout"), settings.lock_min_timeout
        )
        settings.lock_max_timeout = _as_number(
            _get_nested(config, "lock", "max_timeout"), settings.lock_max_timeout
        )
        enforce = config.get("enforce_checklists")
        if isinstance(enforce, bool):
            settings.enforce_checklists = enforce

        prereqs = config.get("prerequisites")
        if isinstance(prereqs, dict):
            for stage, paths in prereqs.items():
                if isinstance(paths, str):
                    paths = [paths]
                if isinstance(paths, list):
                    settings.prerequisites[str(stage).upper()] = [str(p) for p in paths if p]

        items = _get_nested(config, "checklists", "items")
        if isinstance(items, list):
            settings.checklist_items = [item for item in items if isinstance(item, dict)]
        return settings


def load_workflow_settings(project_dir: Path) -> WorkflowSettings:
    """Load and resolve workflow settings, falling back to defaults on a bad file."""
    config, err = load_workflow_config(project_dir)
    if err:
        logger.warning("Ignoring unreadable workflow config: {}", err)
    return WorkflowSettings.from_config(config)
