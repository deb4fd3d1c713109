"""Protocols for collaborators the routing core consumes."""

from __future__ import annotations

from typing import Protocol

from task_router.routing.models import (
    Backend,
    BackendResult,
    BudgetDecision,
    CostBreakdown,
    HealthStatus,
    Plan,
    Task,
)


class BackendAdapter(Protocol):
    """Executes a task on one backend.

    Failures are raised as `BackendExecutionError` carrying `timeout` /
    `should_fallback` hints for the dispatcher classifier.
    """

    async def execute_task(self, task: Task) -> BackendResult:
        """Run the task and return the execution outcome."""


class BudgetLedger(Protocol):
    """Availability gate queried by the selector."""

    def check_budget(self, backend: Backend, estimated_tokens: int) -> BudgetDecision:
        """Return whether the backend may take a task of this size."""

    def estimate_api_cost(self, tokens: int) -> float:
        """Return the USD cost of running `tokens` on the API tier."""


class HealthProbe(Protocol):
    """Live backend health consulted by the selector tie-break."""

    def get_health(self) -> dict[Backend, HealthStatus]:
        """Return the latest health status per backend."""


class AdaptiveHistory(Protocol):
    """Historical per-backend performance feeding adaptive scores."""

    def get_adaptive_score(self, backend: Backend, task: Task) -> float:
        """Return a 0..100 suitability score."""

    def get_task_count(self, backend: Backend) -> int:
        """Return how many results are recorded for the backend."""

    def record_result(  # noqa: PLR0913
        self,
        backend: Backend,
        task: Task,
        *,
        success: bool,
        duration_ms: int,
        tokens: int = 0,
    ) -> None:
        """Record one dispatch outcome."""


class Planner(Protocol):
    """Produces plans consumed by the plan executor."""

    def decompose(self, task: Task) -> Plan:
        """Split a task into dependent steps."""

    def estimate_cost(self, plan: Plan) -> CostBreakdown:
        """Return the plan cost breakdown."""

    def format_plan(self, plan: Plan) -> str:
        """Render the plan for humans."""
