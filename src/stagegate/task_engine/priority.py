"""Guess a task's priority tier from its goal text."""

from __future__ import annotations

import re

from ..errors import ValidationError
from .model import Priority

PRIORITY_KEYWORDS: dict[Priority, tuple[str, ...]] = {
    Priority.CRITICAL: (
        "fix", "bug", "broken", "security", "down", "blocking",
        "critical", "urgent", "hotfix", "crash", "error", "exception",
        "fatal", "outage", "breach", "vulnerability", "exploit",
    ),
    Priority.HIGH: (
        "auth", "login", "payment", "deadline", "important",
        "feature", "customer", "production", "release", "deploy",
        "api", "endpoint", "database", "migration", "upgrade",
    ),
    Priority.LOW: (
        "refactor", "cleanup", "improve", "nice-to-have",
        "optimization", "tech-debt", "documentation", "comment",
        "style", "formatting", "lint", "polish", "enhancement",
    ),
}

# Tiers are checked most urgent first; the first hit wins.
_DETECTION_ORDER = (Priority.CRITICAL, Priority.HIGH, Priority.LOW)

_PATTERNS: dict[Priority, re.Pattern[str]] = {
    tier: re.compile(r"\b(?:" + "|".join(re.escape(k) for k in words) + r")", re.I)
    for tier, words in PRIORITY_KEYWORDS.items()
}


def detect_priority(goal: str) -> Priority:
    """Return the tier whose keyword starts a word in *goal*, else MEDIUM.

    Example:
        >>> detect_priority("Fix crash when saving settings")
        <Priority.CRITICAL: 'CRITICAL'>
    """
    if not goal or not isinstance(goal, str):
        return Priority.MEDIUM
    for tier in _DETECTION_ORDER:
        if _PATTERNS[tier].search(goal):
            return tier
    return Priority.MEDIUM


def parse_priority(value: str | Priority | None) -> Priority | None:
    """Coerce user input into a :class:`Priority`; ``None`` passes through."""
    if value is None or isinstance(value, Priority):
        return value
    try:
        return Priority(str(value).strip().upper())
    except ValueError:
        valid = ", ".join(p.value for p in Priority)
        raise ValidationError(f"Invalid priority {value!r}; expected one of {valid}")
