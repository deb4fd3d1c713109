"""Task normalization and the pure scoring engine."""

from __future__ import annotations

import math
from collections.abc import Mapping
from typing import Any

from task_router.config import RoutingSettings
from task_router.routing.classifier import TaskClassifier, clamp_complexity
from task_router.routing.collaborators import AdaptiveHistory, BudgetLedger
from task_router.routing.errors import ValidationError
from task_router.routing.models import Backend, Scoring, Task, Urgency
from task_router.routing.pricing import estimate_api_cost

URGENCY_SCORES: dict[Urgency, int] = {
    Urgency.IMMEDIATE: 100,
    Urgency.HIGH: 75,
    Urgency.NORMAL: 50,
    Urgency.LOW: 25,
    Urgency.BACKGROUND: 10,
}

# Tools only the API sub-agent tier can provide.
EXTERNAL_AGENT_TOOLS = frozenset({"web", "email", "shell", "memory", "calendar", "files"})
TOOL_WEIGHT = 25

TYPE_TOKEN_MULTIPLIERS: dict[str, float] = {
    "code": 1.5,
    "review": 1.2,
    "docs": 1.3,
    "research": 2.0,
    "analysis": 1.8,
    "other": 1.0,
}

TOKENS_PER_FILE = 2_000
OUTPUT_OVERHEAD_TOKENS = 1_000
SEED_ONLY_TASK_COUNT = 5
MAX_LEARNED_WEIGHT = 0.9


def normalize_task(raw: Task | Mapping[str, Any], classifier: TaskClassifier) -> Task:
    """Validate caller input and fill defaults; complexity is clamped to 1..10."""

    if isinstance(raw, Task):
        raw = raw.to_dict()
    if not isinstance(raw, Mapping):
        raise ValidationError("Task must be a mapping or Task instance")

    description = raw.get("description")
    if not isinstance(description, str) or not description.strip():
        raise ValidationError("Task must have a non-empty description string")
    description = description.strip()

    task_type = raw.get("type") or raw.get("task_type")
    if task_type is not None and not isinstance(task_type, str):
        raise ValidationError(f"Task type must be a string, got {task_type!r}")
    task_type = task_type.strip().lower() if task_type else classifier.infer_task_type(description)

    urgency = _parse_urgency(raw.get("urgency"))
    complexity = _parse_complexity(raw.get("complexity"), description, classifier)

    return Task(
        description=description,
        task_type=task_type,
        urgency=urgency,
        complexity=complexity,
        tools_needed=_string_tuple(raw.get("tools_needed"), field_name="tools_needed"),
        files=_string_tuple(raw.get("files"), field_name="files"),
        output_path=raw.get("output_path") or None,
        force_backend=parse_backend(raw.get("force_backend")),
        preferred_backend=parse_backend(raw.get("preferred_backend")),
        metadata=dict(raw.get("metadata") or {}),
    )


def parse_backend(value: object) -> Backend | None:
    if value is None or value == "":
        return None
    if isinstance(value, Backend):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower().replace("-", "_")
        if normalized == "claudecode":
            normalized = Backend.CLAUDE_CODE.value
        try:
            return Backend(normalized)
        except ValueError:
            pass
    raise ValidationError(
        f"Unknown backend: {value!r}. Use one of {[backend.value for backend in Backend]}.",
    )


def score_task(
    task: Task,
    *,
    routing: RoutingSettings,
    budget: BudgetLedger | None = None,
    monitor: AdaptiveHistory | None = None,
) -> Scoring:
    """Compute routing dimensions for a normalized task. Never fails."""

    estimated_tokens = estimate_tokens(task)
    adaptive_scores: dict[Backend, float] = {}
    if routing.adaptive_scoring_enabled and monitor is not None:
        for backend in Backend:
            adaptive_scores[backend] = _adaptive_score(
                backend=backend,
                task=task,
                monitor=monitor,
                routing=routing,
            )
    return Scoring(
        complexity=task.complexity,
        urgency=urgency_score(task.urgency),
        tool_requirement=tool_score(task.tools_needed),
        estimated_tokens=estimated_tokens,
        estimated_cost=(
            budget.estimate_api_cost(estimated_tokens)
            if budget is not None
            else estimate_api_cost(estimated_tokens)
        ),
        file_count=len(task.files),
        adaptive_scores=adaptive_scores,
    )


def urgency_score(urgency: Urgency) -> int:
    return URGENCY_SCORES.get(urgency, URGENCY_SCORES[Urgency.NORMAL])


def tool_score(tools_needed: tuple[str, ...]) -> int:
    return sum(TOOL_WEIGHT for tool in tools_needed if tool.lower() in EXTERNAL_AGENT_TOOLS)


def estimate_tokens(task: Task) -> int:
    """Estimate token usage from description, complexity, files and task type."""

    tokens = len(task.description) / 4
    tokens *= 1 + (task.complexity - 5) * 0.2
    tokens += len(task.files) * TOKENS_PER_FILE
    if task.output_path:
        tokens += OUTPUT_OVERHEAD_TOKENS
    tokens *= TYPE_TOKEN_MULTIPLIERS.get(task.task_type, 1.0)
    return math.ceil(tokens)


def blend_adaptive_score(
    *,
    learned: float,
    seed: float | None,
    task_count: int,
    routing: RoutingSettings,
) -> float:
    """Blend a learned score with its seed while history is thin."""

    if seed is None:
        return learned
    if task_count < SEED_ONLY_TASK_COUNT:
        return seed
    threshold = routing.fast_learning_threshold
    if threshold <= 0 or task_count >= threshold:
        return learned
    learned_weight = (task_count / threshold) * routing.fast_learning_multiplier
    seed_weight = 1 - min(learned_weight, MAX_LEARNED_WEIGHT)
    return (learned * learned_weight + seed * seed_weight) / (learned_weight + seed_weight)


def _adaptive_score(
    *,
    backend: Backend,
    task: Task,
    monitor: AdaptiveHistory,
    routing: RoutingSettings,
) -> float:
    score = blend_adaptive_score(
        learned=monitor.get_adaptive_score(backend, task),
        seed=routing.initial_scores.get(backend.value),
        task_count=monitor.get_task_count(backend),
        routing=routing,
    )
    return round(score, 2)


def _parse_urgency(value: object) -> Urgency:
    if value is None or value == "":
        return Urgency.NORMAL
    if isinstance(value, Urgency):
        return value
    if isinstance(value, str):
        try:
            return Urgency(value.strip().lower())
        except ValueError:
            pass
    raise ValidationError(
        f"Unknown urgency: {value!r}. Use one of {[urgency.value for urgency in Urgency]}.",
    )


def _parse_complexity(value: object, description: str, classifier: TaskClassifier) -> int:
    if value is None or value == 0 or value == "":
        return clamp_complexity(classifier.infer_complexity(description))
    if isinstance(value, bool):
        raise ValidationError(f"Complexity must be numeric, got {value!r}")
    try:
        numeric = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as error:
        raise ValidationError(f"Complexity must be numeric, got {value!r}") from error
    if not math.isfinite(numeric):
        raise ValidationError(f"Complexity must be a finite number, got {value!r}")
    return clamp_complexity(round(numeric))


def _string_tuple(value: object, *, field_name: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, (list, tuple, set, frozenset)):
        raise ValidationError(f"Task {field_name} must be a list of strings")
    return tuple(str(item) for item in value)
