from __future__ import annotations

import random
import re

import allure
import pytest

from task_router.config import PlannerSettings
from task_router.routing.errors import PlanValidationError
from task_router.routing.models import Backend, Plan, PlanStep, Task
from task_router.routing.planner import (
    HeuristicPlanner,
    critical_path_minutes,
    estimate_plan_tokens,
    pick_single_backend,
)
from task_router.routing.pricing import ModelPricing

pytestmark = [
    allure.epic("Task Routing"),
    allure.feature("Planner"),
]

RESEARCH_TASK = Task(
    description="Research caching libraries, then analyze the options and write documentation",
    task_type="research",
    complexity=8,
)


def _planner(clock, threshold: float = 2.0) -> HeuristicPlanner:
    return HeuristicPlanner(
        settings=PlannerSettings(approval_threshold_usd=threshold),
        pricing=ModelPricing(),
        clock=clock,
        rng=random.Random(5),
    )


def _step(step_id: str, *dependencies: str, minutes: float = 4.0) -> PlanStep:
    return PlanStep(
        id=step_id,
        index=0,
        description=step_id,
        backend=Backend.LOCAL,
        dependencies=dependencies,
        estimated_minutes=minutes,
    )


def test_simple_task_becomes_single_step(clock) -> None:
    task = Task(description="Fix typo in footer", complexity=2)

    plan = _planner(clock).decompose(task)

    assert re.fullmatch(r"plan_\d{13}_[0-9a-z]{6}", plan.id)
    [step] = plan.steps
    assert step.id == f"{plan.id}_s1"
    assert step.backend == Backend.LOCAL
    assert step.estimated_tokens == 500
    assert plan.task is task
    assert plan.created_at == clock()


def test_complex_task_is_decomposed_with_synthesis(clock) -> None:
    plan = _planner(clock).decompose(RESEARCH_TASK)

    ids = [step.id for step in plan.steps]
    research, analysis, docs, synthesis = plan.steps
    assert research.task_type == "research"
    assert research.backend == Backend.CODEX
    assert research.dependencies == ()
    assert analysis.backend == Backend.API
    assert analysis.dependencies == (ids[0],)
    assert analysis.estimated_cost == pytest.approx(0.132)
    assert docs.critical is False
    assert docs.dependencies == (ids[0], ids[1])
    assert synthesis.task_type == "synthesis"
    assert synthesis.dependencies == (ids[0], ids[1])
    assert [step.index for step in plan.steps] == [0, 1, 2, 3]


def test_estimate_cost_splits_by_backend_kind(clock) -> None:
    planner = _planner(clock)
    plan = planner.decompose(RESEARCH_TASK)

    cost = planner.estimate_cost(plan)

    assert cost.plan_id == plan.id
    assert cost.step_count == 4
    assert cost.total_api_cost == pytest.approx(0.132)
    assert cost.total_subscription_minutes == 6
    assert cost.total_local_minutes == 6
    assert cost.total_estimated_minutes == 17
    assert cost.needs_approval is False
    assert [line.is_free for line in cost.per_step] == [True, False, True, True]


def test_expensive_plan_needs_approval(clock) -> None:
    planner = _planner(clock, threshold=0.1)
    plan = planner.decompose(RESEARCH_TASK)

    assert planner.estimate_cost(plan).needs_approval is True
    assert "approval required before execution" in planner.format_plan(plan)


def test_format_plan_layout(clock) -> None:
    planner = _planner(clock)
    plan = planner.decompose(RESEARCH_TASK)

    rendered = planner.format_plan(plan)
    lines = rendered.splitlines()

    assert lines[0] == f"=== Task Plan: {plan.id} ==="
    assert lines[2] == "Steps: 4 | Est. time: ~17 min"
    assert "  2. Analyze and synthesize findings: " in rendered
    assert "Backend: api | ~8 min | $0.1320 (after step 1)" in rendered
    assert "(after step 1, 2) [optional]" in rendered
    assert "--- Cost Summary ---" in lines
    assert "  API cost:          $0.1320" in lines
    assert "approval required" not in rendered


@pytest.mark.parametrize(
    ("task", "expected"),
    [
        (Task(description="send a report", tools_needed=("email",)), Backend.API),
        (Task(description="Refactor billing"), Backend.CLAUDE_CODE),
        (Task(description="Generate a stub"), Backend.CODEX),
        (Task(description="Render markdown"), Backend.LOCAL),
        (Task(description="Tidy up", complexity=8), Backend.CLAUDE_CODE),
        (Task(description="Tidy up", complexity=5), Backend.CODEX),
        (Task(description="Tidy up", complexity=1), Backend.LOCAL),
    ],
)
def test_pick_single_backend(task: Task, expected: Backend) -> None:
    assert pick_single_backend(task) == expected


def test_estimate_plan_tokens_has_floor() -> None:
    assert estimate_plan_tokens("short", ()) == 500
    assert estimate_plan_tokens("", ("a", "b")) == 4000


def test_critical_path_follows_longest_chain() -> None:
    steps = [
        _step("a", minutes=2),
        _step("b", minutes=10),
        _step("c", "a", "b", minutes=3),
        _step("d", "a", minutes=1),
    ]

    assert critical_path_minutes(steps) == 13
    assert critical_path_minutes([]) == 0


@pytest.mark.parametrize(
    ("steps", "message"),
    [
        ([_step("a"), _step("a")], "Duplicate plan step id"),
        ([_step("a", "a")], "depends on itself"),
        ([_step("a", "ghost")], "unknown step 'ghost'"),
        ([_step("a", "c"), _step("b", "a"), _step("c", "b")], "cycle detected"),
    ],
)
def test_invalid_plans_are_rejected(steps: list[PlanStep], message: str) -> None:
    with pytest.raises(PlanValidationError, match=message):
        Plan(id="plan_test", steps=steps)
