"""Parse effort estimates and compare them with tracked time."""

from __future__ import annotations

import re
from typing import Any, Optional

from ..utils import _parse_iso

HOURS_PER_DAY = 8
HOURS_PER_WEEK = 40

_UNIT_PATTERNS: tuple[tuple[re.Pattern[str], float], ...] = (
    (re.compile(r"(\d+(?:\.\d+)?)\s*(?:d|days?)\b"), HOURS_PER_DAY),
    (re.compile(r"(\d+(?:\.\d+)?)\s*(?:w|weeks?)\b"), HOURS_PER_WEEK),
    (re.compile(r"(\d+(?:\.\d+)?)\s*(?:h|hrs?|hours?)\b"), 1.0),
    (re.compile(r"(\d+(?:\.\d+)?)\s*(?:m|mins?|minutes?)\b"), 1 / 60),
)
_BARE_NUMBER = re.compile(r"^(\d+(?:\.\d+)?)$")


def parse_estimate(estimate: Optional[str]) -> Optional[float]:
    """Convert an estimate such as ``"2 days"`` or ``"30m"`` into hours.

    A bare number is taken as hours.  Returns ``None`` when nothing parses.
    """
    if not estimate or not isinstance(estimate, str):
        return None
    text = estimate.strip().lower()
    for pattern, factor in _UNIT_PATTERNS:
        match = pattern.search(text)
        if match:
            return float(match.group(1)) * factor
    match = _BARE_NUMBER.match(text)
    if match:
        return float(match.group(1))
    return None


def calculate_actual_time(started_at: Optional[str], ended_at: Optional[str]) -> Optional[float]:
    """Hours between two ISO timestamps, rounded to two decimals."""
    start = _parse_iso(started_at)
    end = _parse_iso(ended_at)
    if start is None or end is None:
        return None
    hours = (end - start).total_seconds() / 3600
    return round(max(0.0, hours), 2)


def format_time(hours: float) -> str:
    """Render hours as ``30m``, ``2.5h``, ``3d`` or ``2d 4.0h`` (8h working days)."""
    if hours < 0:
        return "0m"
    if hours < 1:
        return f"{round(hours * 60)}m"
    if hours < 24:
        return f"{hours:.1f}h"
    days = int(hours // HOURS_PER_DAY)
    remaining = hours % HOURS_PER_DAY
    if remaining < 0.1:
        return f"{days}d"
    return f"{days}d {remaining:.1f}h"


def compare_time(estimated_hours: Optional[float], actual_hours: Optional[float]) -> dict[str, Any]:
    """Classify actual vs. estimated effort as ``under``, ``on-track`` or ``over``."""
    if not estimated_hours or actual_hours is None:
        return {"ratio": 0.0, "status": "on-track", "message": "No estimate provided"}
    ratio = actual_hours / estimated_hours
    if ratio < 0.8:
        return {
            "ratio": ratio,
            "status": "under",
            "message": f"Completed {(1 - ratio) * 100:.0f}% faster than estimated",
        }
    if ratio <= 1.2:
        return {"ratio": ratio, "status": "on-track", "message": "Completed within estimate range"}
    return {
        "ratio": ratio,
        "status": "over",
        "message": f"Took {(ratio - 1) * 100:.0f}% longer than estimated",
    }
