from __future__ import annotations

import allure
import pytest

from task_router.config import RoutingSettings
from task_router.routing.classifier import KeywordTaskClassifier
from task_router.routing.errors import ValidationError
from task_router.routing.models import Backend, Task, Urgency
from task_router.routing.pricing import ModelPricing, estimate_api_cost
from task_router.routing.scoring import (
    blend_adaptive_score,
    estimate_tokens,
    normalize_task,
    parse_backend,
    score_task,
    tool_score,
)

pytestmark = [
    allure.epic("Task Routing"),
    allure.feature("Scoring Engine"),
]

CLASSIFIER = KeywordTaskClassifier()


class _History:
    def __init__(self, *, score: float, count: int) -> None:
        self.score = score
        self.count = count

    def get_adaptive_score(self, backend: Backend, task: Task) -> float:
        return self.score

    def get_task_count(self, backend: Backend) -> int:
        return self.count


class _FlatBudget:
    def estimate_api_cost(self, tokens: int) -> float:
        return tokens * 0.001


def test_normalize_fills_defaults_from_classifier() -> None:
    task = normalize_task({"description": "  Implement simple parser  "}, CLASSIFIER)

    assert task.description == "Implement simple parser"
    assert task.task_type == "code"
    assert task.urgency == Urgency.NORMAL
    assert task.complexity == 3
    assert task.tools_needed == ()
    assert task.files == ()


def test_normalize_keeps_explicit_fields() -> None:
    task = normalize_task(
        {
            "description": "Summarize",
            "type": "Docs",
            "urgency": "LOW",
            "complexity": "7",
            "tools_needed": ["web"],
            "files": "notes.md",
            "force_backend": "claude-code",
        },
        CLASSIFIER,
    )

    assert task.task_type == "docs"
    assert task.urgency == Urgency.LOW
    assert task.complexity == 7
    assert task.tools_needed == ("web",)
    assert task.files == ("notes.md",)
    assert task.force_backend == Backend.CLAUDE_CODE


def test_normalize_accepts_task_instances() -> None:
    original = Task(description="Review diff", task_type="review", complexity=42)

    task = normalize_task(original, CLASSIFIER)

    assert task.complexity == 10
    assert task.task_type == "review"


@pytest.mark.parametrize(
    ("raw", "message"),
    [
        ({"description": "   "}, "non-empty description"),
        ({}, "non-empty description"),
        ({"description": "x", "urgency": "asap"}, "Unknown urgency"),
        ({"description": "x", "complexity": "hard"}, "Complexity must be numeric"),
        ({"description": "x", "complexity": True}, "Complexity must be numeric"),
        ({"description": "x", "complexity": float("nan")}, "finite number"),
        ({"description": "x", "complexity": float("inf")}, "finite number"),
        ({"description": "x", "complexity": "-inf"}, "finite number"),
        ({"description": "x", "files": 3}, "files must be a list"),
        ({"description": "x", "force_backend": "gemini"}, "Unknown backend"),
        ({"description": "x", "type": 5}, "Task type must be a string"),
    ],
)
def test_normalize_rejects_malformed_input(raw: dict, message: str) -> None:
    with pytest.raises(ValidationError, match=message):
        normalize_task(raw, CLASSIFIER)


def test_normalize_rejects_non_mapping() -> None:
    with pytest.raises(ValidationError):
        normalize_task(["description"], CLASSIFIER)  # type: ignore[arg-type]


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (None, None),
        ("", None),
        ("codex", Backend.CODEX),
        ("ClaudeCode", Backend.CLAUDE_CODE),
        (" API ", Backend.API),
        (Backend.LOCAL, Backend.LOCAL),
    ],
)
def test_parse_backend(value: object, expected: Backend | None) -> None:
    assert parse_backend(value) == expected


def test_estimate_tokens_combines_all_factors() -> None:
    base = Task(description="x" * 400)
    heavy = Task(
        description="x" * 400,
        task_type="code",
        files=("a.py", "b.py"),
        output_path="out.md",
    )

    assert estimate_tokens(base) == 100
    assert estimate_tokens(Task(description="x" * 400, complexity=10)) == 200
    assert estimate_tokens(heavy) == 7650


def test_tool_score_counts_external_agent_tools_only() -> None:
    assert tool_score(("web", "SHELL", "git")) == 50
    assert tool_score(()) == 0


def test_score_task_without_history() -> None:
    task = Task(
        description="x" * 4000,
        urgency=Urgency.IMMEDIATE,
        tools_needed=("email",),
        files=("a",),
    )

    scoring = score_task(task, routing=RoutingSettings())

    assert scoring.urgency == 100
    assert scoring.tool_requirement == 25
    assert scoring.file_count == 1
    assert scoring.estimated_tokens == 3000
    assert scoring.estimated_cost == pytest.approx(estimate_api_cost(3000, ModelPricing()))
    assert scoring.adaptive_scores == {}


def test_score_task_uses_budget_pricing_and_history() -> None:
    task = Task(description="x" * 400)

    scoring = score_task(
        task,
        routing=RoutingSettings(),
        budget=_FlatBudget(),
        monitor=_History(score=90.0, count=10),
    )

    assert scoring.estimated_cost == pytest.approx(0.1)
    assert scoring.adaptive_scores[Backend.CLAUDE_CODE] == pytest.approx(88.64)
    assert set(scoring.adaptive_scores) == set(Backend)


def test_score_task_skips_history_when_adaptive_disabled() -> None:
    scoring = score_task(
        Task(description="x"),
        routing=RoutingSettings(adaptive_scoring_enabled=False),
        monitor=_History(score=90.0, count=50),
    )

    assert scoring.adaptive_scores == {}


@pytest.mark.parametrize(
    ("task_count", "expected"),
    [(0, 75.0), (4, 75.0), (20, 90.0), (100, 90.0)],
)
def test_blend_adaptive_score_thresholds(task_count: int, expected: float) -> None:
    score = blend_adaptive_score(
        learned=90.0,
        seed=75.0,
        task_count=task_count,
        routing=RoutingSettings(),
    )

    assert score == pytest.approx(expected)


def test_blend_without_seed_returns_learned() -> None:
    assert blend_adaptive_score(
        learned=42.0,
        seed=None,
        task_count=1,
        routing=RoutingSettings(),
    ) == pytest.approx(42.0)
