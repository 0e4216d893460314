"""Tests for priority and role detection and time tracking helpers."""

from __future__ import annotations

import pytest

from stagegate.errors import ValidationError
from stagegate.task_engine.model import Priority
from stagegate.task_engine.priority import detect_priority, parse_priority
from stagegate.task_engine.roles import detect_roles, role_scores
from stagegate.task_engine.time_tracking import (
    calculate_actual_time,
    compare_time,
    format_time,
    parse_estimate,
)


class TestDetectPriority:
    @pytest.mark.parametrize(
        "goal, expected",
        [
            ("Fix crash when saving settings", Priority.CRITICAL),
            ("Patch the SECURITY hole in uploads", Priority.CRITICAL),
            ("Add login page for customers", Priority.HIGH),
            ("Expose a new endpoint for invoices", Priority.HIGH),
            ("Refactor the billing module", Priority.LOW),
            ("Polish the settings screen", Priority.LOW),
            ("Write onboarding guide for users", Priority.MEDIUM),
        ],
    )
    def test_keyword_tiers(self, goal: str, expected: Priority) -> None:
        assert detect_priority(goal) == expected

    def test_most_urgent_tier_wins(self) -> None:
        assert detect_priority("Refactor login to fix the token bug") == Priority.CRITICAL

    def test_keyword_must_start_a_word(self) -> None:
        assert detect_priority("Rewrite the prefix parser") == Priority.MEDIUM

    def test_empty_goal(self) -> None:
        assert detect_priority("") == Priority.MEDIUM


class TestDetectRoles:
    @pytest.mark.parametrize(
        "goal, expected",
        [
            ("Hash passwords and rotate session tokens", ["security"]),
            ("Add caching to cut search latency", ["performance"]),
            ("Containerize the service with Docker and deploy to Kubernetes", ["devops"]),
            ("Write onboarding guide for users", []),
        ],
    )
    def test_keyword_roles(self, goal: str, expected: list[str]) -> None:
        assert detect_roles(goal) == expected

    def test_single_keyword_is_not_enough(self) -> None:
        assert role_scores("Patch the SECURITY hole in uploads")["security"] == 1
        assert detect_roles("Patch the SECURITY hole in uploads") == []

    def test_short_keywords_match_whole_words_only(self) -> None:
        assert role_scores("Aim for a fair build")["data-scientist"] == 0
        assert role_scores("Train the ML model")["data-scientist"] == 2

    def test_several_roles(self) -> None:
        goal = "Cache auth tokens to reduce login latency"
        assert detect_roles(goal) == ["security", "performance"]

    def test_empty_goal(self) -> None:
        assert detect_roles("") == []


class TestParsePriority:
    def test_case_insensitive(self) -> None:
        assert parse_priority(" high ") == Priority.HIGH
        assert parse_priority(Priority.LOW) == Priority.LOW
        assert parse_priority(None) is None

    def test_invalid(self) -> None:
        with pytest.raises(ValidationError, match="Invalid priority"):
            parse_priority("P0")


class TestEstimates:
    @pytest.mark.parametrize(
        "text, hours",
        [
            ("2 days", 16.0),
            ("1d", 8.0),
            ("1 week", 40.0),
            ("4 hours", 4.0),
            ("3h", 3.0),
            ("30m", 0.5),
            ("90 minutes", 1.5),
            ("3", 3.0),
        ],
    )
    def test_parse_estimate(self, text: str, hours: float) -> None:
        assert parse_estimate(text) == pytest.approx(hours)

    @pytest.mark.parametrize("text", ["soon", "", None])
    def test_unparseable_estimate(self, text) -> None:
        assert parse_estimate(text) is None

    def test_actual_time(self) -> None:
        assert calculate_actual_time("2024-01-01T00:00:00Z", "2024-01-01T02:30:00Z") == 2.5
        assert calculate_actual_time(None, "2024-01-01T02:30:00Z") is None

    @pytest.mark.parametrize(
        "hours, text",
        [(0.5, "30m"), (2.5, "2.5h"), (24, "3d"), (30, "3d 6.0h")],
    )
    def test_format_time(self, hours: float, text: str) -> None:
        assert format_time(hours) == text


class TestCompareTime:
    def test_under(self) -> None:
        result = compare_time(10, 5)
        assert result["status"] == "under"
        assert result["message"] == "Completed 50% faster than estimated"

    def test_on_track(self) -> None:
        assert compare_time(10, 11)["status"] == "on-track"

    def test_over(self) -> None:
        result = compare_time(10, 15)
        assert result["status"] == "over"
        assert result["message"] == "Took 50% longer than estimated"

    def test_no_estimate(self) -> None:
        result = compare_time(None, 3)
        assert result == {"ratio": 0.0, "status": "on-track", "message": "No estimate provided"}
