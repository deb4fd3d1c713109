"""Deterministic keyword classification of task type and complexity."""

from __future__ import annotations

from typing import Protocol

TASK_CLASSIFIER_VERSION = 1

_TYPE_RULES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("code", ("code", "implement", "program")),
    ("review", ("review", "analyze code", "debug")),
    ("docs", ("document", "readme", "guide")),
    ("research", ("research", "investigate", "analyze")),
    ("analysis", ("evaluate", "assess")),
)

_COMPLEXITY_ADJUSTMENTS: tuple[tuple[int, tuple[str, ...]], ...] = (
    (-2, ("simple", "basic")),
    (3, ("complex", "advanced")),
    (2, ("multiple files", "full system")),
    (2, ("integration", "architecture")),
    (1, ("optimization", "performance")),
)

_BASE_COMPLEXITY = 5
_LONG_DESCRIPTION_CHARS = 500
_WORD_COUNT_STEPS = (100, 200)


class TaskClassifier(Protocol):
    """Infers missing task attributes from free text."""

    def infer_task_type(self, description: str) -> str:
        """Return a task type such as code, review, docs, research, analysis or other."""

    def infer_complexity(self, description: str) -> int:
        """Return complexity in the 1..10 range."""


class KeywordTaskClassifier:
    """Table-driven classifier; first matching type rule wins."""

    def infer_task_type(self, description: str) -> str:
        haystack = description.lower()
        for task_type, patterns in _TYPE_RULES:
            if _first_match(haystack, patterns) is not None:
                return task_type
        return "other"

    def infer_complexity(self, description: str) -> int:
        haystack = description.lower()
        complexity = _BASE_COMPLEXITY
        for delta, patterns in _COMPLEXITY_ADJUSTMENTS:
            if _first_match(haystack, patterns) is not None:
                complexity += delta
        if len(haystack) > _LONG_DESCRIPTION_CHARS:
            complexity += 1
        word_count = len(haystack.split())
        complexity += sum(1 for step in _WORD_COUNT_STEPS if word_count > step)
        return clamp_complexity(complexity)


def clamp_complexity(value: float) -> int:
    return int(min(10, max(1, value)))


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
