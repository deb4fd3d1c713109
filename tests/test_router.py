from __future__ import annotations

import random
import re

import allure
import pytest

from task_router.config import Settings
from task_router.routing.errors import AllFallbacksExhausted, PlanNotFoundError, ValidationError
from task_router.routing.models import Backend, PlanProposal, Priority, RoutingResult, Task, Urgency
from task_router.routing.router import build_router, should_queue

pytestmark = [
    allure.epic("Task Routing"),
    allure.feature("Router"),
]

RESEARCH = {
    "description": "Research caching libraries, then analyze the options and write documentation",
    "complexity": 8,
}


@pytest.mark.asyncio
async def test_low_urgency_task_is_queued_not_dispatched(router, adapters) -> None:
    result = await router.route({"description": "Tidy the changelog", "urgency": "low"})

    assert isinstance(result, RoutingResult)
    assert result.queued is True
    assert result.backend == Backend.LOCAL
    assert result.result is None
    [item] = router.queue.items
    assert item.id == result.queue_item_id
    assert item.priority_name == Priority.LOW
    assert item.task.preferred_backend == Backend.LOCAL
    assert all(adapter.calls == [] for adapter in adapters.values())


@pytest.mark.asyncio
async def test_immediate_task_dispatches_to_api(router, adapters) -> None:
    result = await router.route({"description": "Page the on-call", "urgency": "immediate"})

    assert re.fullmatch(r"route_\d{13}_[0-9a-z]{6}", result.task_id)
    assert result.queued is False
    assert result.backend == Backend.API
    assert result.fallback is False
    assert result.result.response == "[api] Page the on-call"
    assert len(adapters[Backend.API].calls) == 1


@pytest.mark.asyncio
async def test_tool_requirements_route_to_api(router) -> None:
    result = await router.route({"description": "Check the weather", "tools_needed": ["web"]})

    assert result.backend == Backend.API
    assert result.scoring.tool_requirement == 25


@pytest.mark.asyncio
async def test_normal_task_uses_seeded_adaptive_scores(router) -> None:
    result = await router.route({"description": "Rename a helper"})

    assert result.backend == Backend.CLAUDE_CODE
    assert result.confirmation_needed is False
    assert router.monitor.get_task_count(Backend.CLAUDE_CODE) == 1


@pytest.mark.asyncio
async def test_dispatcher_fallback_is_reported(router, adapters) -> None:
    adapters[Backend.CLAUDE_CODE].fail_next()

    result = await router.route({"description": "Rename a helper"})

    assert result.backend == Backend.CODEX
    assert result.fallback is True
    assert result.result.attempted == (Backend.CLAUDE_CODE, Backend.CODEX)


@pytest.mark.asyncio
async def test_non_eligible_error_walks_fallback_chain(router, adapters) -> None:
    adapters[Backend.CLAUDE_CODE].fail_next(ValueError("prompt rejected"))

    result = await router.route({"description": "Rename a helper"})

    assert result.fallback is True
    assert result.original_error == "prompt rejected"
    assert result.backend == Backend.CLAUDE_CODE
    assert len(adapters[Backend.CLAUDE_CODE].calls) == 2


@pytest.mark.asyncio
async def test_exhausted_fallbacks_propagate(router, adapters) -> None:
    for adapter in adapters.values():
        adapter.fail_next()

    with pytest.raises(AllFallbacksExhausted):
        await router.route({"description": "Rename a helper"})


@pytest.mark.asyncio
async def test_malformed_task_is_rejected(router) -> None:
    with pytest.raises(ValidationError):
        await router.route({"description": ""})


@pytest.mark.asyncio
async def test_force_backend_argument_overrides_selection(router, adapters) -> None:
    result = await router.route({"description": "Rename a helper"}, force_backend="codex")

    assert result.backend == Backend.CODEX
    assert adapters[Backend.CLAUDE_CODE].calls == []


@pytest.mark.asyncio
async def test_force_route_bypasses_queue(router, adapters) -> None:
    result = await router.force_route({"description": "Tidy", "urgency": "low"}, Backend.LOCAL)

    assert result.backend == Backend.LOCAL
    assert result.queued is False
    assert len(adapters[Backend.LOCAL].calls) == 1
    assert len(router.queue) == 0


@pytest.mark.asyncio
async def test_plan_mode_returns_proposal_without_executing(router, adapters) -> None:
    proposal = await router.route(RESEARCH, plan=True)

    assert isinstance(proposal, PlanProposal)
    assert proposal.needs_approval is False
    assert len(proposal.plan.steps) == 4
    assert proposal.formatted.startswith(f"=== Task Plan: {proposal.plan.id} ===")
    assert router.get_pending_plans() == {}
    assert all(adapter.calls == [] for adapter in adapters.values())


@pytest.mark.asyncio
async def test_expensive_plan_waits_for_approval(router) -> None:
    router.settings.planner.approval_threshold_usd = 0.1

    proposal = await router.route(RESEARCH, plan=True)

    assert proposal.needs_approval is True
    assert list(router.get_pending_plans()) == [proposal.plan.id]

    result = await router.approve_plan(proposal.plan.id)

    assert result.success is True
    assert result.completed_steps == 4
    assert router.get_pending_plans() == {}
    with pytest.raises(PlanNotFoundError):
        await router.approve_plan(proposal.plan.id)


@pytest.mark.asyncio
async def test_cancel_plan(router) -> None:
    router.settings.planner.approval_threshold_usd = 0.1
    proposal = await router.route(RESEARCH, plan=True)

    router.cancel_plan(proposal.plan.id)

    assert router.get_pending_plans() == {}
    with pytest.raises(PlanNotFoundError):
        router.cancel_plan(proposal.plan.id)


@pytest.mark.asyncio
async def test_queued_item_runs_on_preferred_backend(router, adapters) -> None:
    await router.route({"description": "Tidy the changelog", "urgency": "background"})

    released = await router.scheduler.drip_once()

    assert released is not None
    assert len(router.queue) == 0
    assert len(adapters[Backend.LOCAL].calls) == 1


@pytest.mark.asyncio
async def test_failed_queued_item_is_requeued(router, adapters) -> None:
    await router.route({"description": "Tidy the changelog", "urgency": "low"})
    adapters[Backend.LOCAL].fail_next(ValueError("disk full"))

    await router.scheduler.drip_once()

    [item] = router.queue.items
    assert item.retries == 1
    assert item.last_error == "disk full"


@pytest.mark.asyncio
async def test_status_aggregates_components(router) -> None:
    await router.route({"description": "Rename a helper"})
    await router.route({"description": "Tidy the changelog", "urgency": "low"})

    status = router.get_status()

    assert status.queue["total_items"] == 1
    assert status.settings["state_backend"] == "memory"
    assert status.circuit_breakers["claude_code"]["state"] == "closed"
    assert status.rate_governor["claude_code"] == {
        "requests_in_window": 1,
        "current_limit": 20,
        "utilization_percent": 5.0,
    }
    assert status.performance["claude_code"]["total_tasks"] == 1
    assert router.ledger.subscriptions[Backend.CLAUDE_CODE].tasks_completed == 1
    assert status.pending_plans == []


@pytest.mark.parametrize(
    ("urgency", "expected"),
    [
        (Urgency.IMMEDIATE, False),
        (Urgency.HIGH, False),
        (Urgency.NORMAL, False),
        (Urgency.LOW, True),
        (Urgency.BACKGROUND, True),
    ],
)
def test_should_queue(urgency: Urgency, expected: bool) -> None:
    assert should_queue(Task(description="x", urgency=urgency)) is expected


@pytest.mark.asyncio
async def test_json_state_survives_rebuild(tmp_path, adapters, clock) -> None:
    settings = Settings(state_dir=tmp_path, state_backend="json")
    first = build_router(settings, adapters, clock=clock, rng=random.Random(1))
    queued = await first.route({"description": "Tidy the changelog", "urgency": "low"})

    second = build_router(settings, adapters, clock=clock, rng=random.Random(2))

    assert [item.id for item in second.queue.items] == [queued.queue_item_id]
    assert (tmp_path / "queue.json").exists()


def test_build_router_validates_settings(tmp_path) -> None:
    settings = Settings(state_dir=tmp_path, state_backend="redis")

    with pytest.raises(ValueError, match="Unsupported"):
        build_router(settings)
