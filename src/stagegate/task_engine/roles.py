"""Pick specialist review roles from a task's goal text."""

from __future__ import annotations

import re

ROLE_KEYWORDS: dict[str, tuple[str, ...]] = {
    "security": (
        "auth", "authentication", "authorization", "password", "token",
        "security", "encrypt", "decrypt", "permission", "access control",
        "vulnerability", "xss", "csrf", "injection", "sanitize",
        "oauth", "jwt", "session", "cookie", "secure", "hash",
        "credential", "secret", "api key", "private key",
    ),
    "performance": (
        "performance", "optimize", "speed", "cache", "caching",
        "load time", "latency", "throughput", "memory", "cpu",
        "bottleneck", "profiling", "benchmark", "scalability", "scale",
        "indexing", "query optimization", "lazy load", "memoize",
        "pagination", "batch", "async", "parallel",
    ),
    "architect": (
        "architecture", "design pattern", "system design", "refactor",
        "restructure", "maintainability", "microservice", "monolith",
        "clean architecture", "dependency injection", "separation of concerns",
        "modular", "technical debt", "code quality", "api design",
    ),
    "product-manager": (
        "feature", "roadmap", "requirement", "specification", "user story",
        "acceptance criteria", "mvp", "milestone", "release", "planning",
        "stakeholder", "backlog", "epic",
    ),
    "ux": (
        "ui", "ux", "user interface", "user experience", "usability",
        "accessibility", "responsive", "mobile", "frontend", "css",
        "styling", "layout", "component", "wireframe", "mockup", "user flow",
    ),
    "data-scientist": (
        "machine learning", "ml", "ai", "model", "training", "prediction",
        "classification", "regression", "clustering", "analytics",
        "statistics", "dataset", "neural network", "visualization",
    ),
    "devops": (
        "deploy", "ci/cd", "pipeline", "docker", "kubernetes", "k8s",
        "infrastructure", "aws", "azure", "gcp", "terraform", "ansible",
        "monitoring", "logging", "devops", "container", "cloud",
    ),
}

# A role needs at least this many distinct keyword hits.
ACTIVATION_THRESHOLD = 2


def _keyword_pattern(keyword: str) -> re.Pattern[str]:
    # Short keywords ("ai", "ui", "css") must be whole words; longer ones may
    # start a word ("optimize" matches "optimized").
    suffix = r"\b" if len(keyword) <= 3 else ""
    return re.compile(r"\b" + re.escape(keyword) + suffix, re.I)


_PATTERNS: dict[str, tuple[re.Pattern[str], ...]] = {
    role: tuple(_keyword_pattern(k) for k in words) for role, words in ROLE_KEYWORDS.items()
}


def role_scores(goal: str) -> dict[str, int]:
    """Count distinct keyword hits per role."""
    if not goal or not isinstance(goal, str):
        return {role: 0 for role in ROLE_KEYWORDS}
    return {
        role: sum(1 for pattern in patterns if pattern.search(goal))
        for role, patterns in _PATTERNS.items()
    }


def detect_roles(goal: str) -> list[str]:
    """Return the roles whose keywords appear at least twice in *goal*.

    Example:
        >>> detect_roles("Hash passwords and rotate session tokens")
        ['security']
    """
    return [role for role, score in role_scores(goal).items() if score >= ACTIVATION_THRESHOLD]
