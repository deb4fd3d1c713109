"""Ordered, short-circuiting backend selection rules."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from task_router.config import RoutingSettings
from task_router.routing.circuit_breaker import CircuitBreaker
from task_router.routing.collaborators import BudgetLedger, HealthProbe
from task_router.routing.models import Backend, HealthStatus, Scoring, Task
from task_router.routing.rate_governor import RateGovernor

logger = logging.getLogger(__name__)

IMMEDIATE_URGENCY_SCORE = 100
LOW_URGENCY_SCORE = 25
RESEARCH_COMPLEXITY_MIN = 7
LIGHT_TASK_COMPLEXITY_MAX = 6
HYBRID_COMPLEXITY_MIN = 8
LIGHT_TASK_TYPES = frozenset({"review", "docs"})

HEALTH_TIE_BREAK_ORDER: tuple[Backend, ...] = (Backend.CLAUDE_CODE, Backend.CODEX, Backend.LOCAL)
DEFAULT_ORDER: tuple[Backend, ...] = (
    Backend.CLAUDE_CODE,
    Backend.CODEX,
    Backend.API,
    Backend.LOCAL,
)
_WARM_STATUSES = frozenset({HealthStatus.WARM, HealthStatus.HEALTHY})


@dataclass(slots=True)
class Selection:
    """Chosen backend plus the rule that produced it."""

    backend: Backend
    rule: str
    available: dict[Backend, bool] = field(default_factory=dict)
    reasons: dict[Backend, str] = field(default_factory=dict)


class BackendSelector:
    """Picks one backend for a scored task; never fails to return a backend."""

    def __init__(
        self,
        *,
        routing: RoutingSettings,
        budget: BudgetLedger,
        rate_governor: RateGovernor,
        circuit_breaker: CircuitBreaker,
        health: HealthProbe | None = None,
    ) -> None:
        self.routing = routing
        self.budget = budget
        self.rate_governor = rate_governor
        self.circuit_breaker = circuit_breaker
        self.health = health

    def select_backend(self, task: Task, scoring: Scoring) -> Backend:
        return self.select(task, scoring).backend

    def select(self, task: Task, scoring: Scoring) -> Selection:  # noqa: PLR0911
        if task.force_backend is not None:
            return self._chosen(task.force_backend, "force_backend")

        if scoring.tool_requirement > 0:
            return self._chosen(Backend.API, "tools_required")

        available, reasons = self.availability(scoring)

        def pick(backend: Backend, rule: str) -> Selection:
            return self._chosen(backend, rule, available=available, reasons=reasons)

        if scoring.urgency >= IMMEDIATE_URGENCY_SCORE and available[Backend.API]:
            return pick(Backend.API, "immediate_urgency")

        if task.task_type == "code" and scoring.file_count > 1 and available[Backend.CLAUDE_CODE]:
            return pick(Backend.CLAUDE_CODE, "multi_file_code")

        if (
            task.task_type == "research"
            and scoring.complexity >= RESEARCH_COMPLEXITY_MIN
            and available[Backend.CODEX]
        ):
            return pick(Backend.CODEX, "complex_research")

        if task.task_type in LIGHT_TASK_TYPES and scoring.complexity <= LIGHT_TASK_COMPLEXITY_MAX:
            return pick(Backend.LOCAL, "light_review_or_docs")

        if scoring.urgency <= LOW_URGENCY_SCORE:
            return pick(Backend.LOCAL, "low_urgency")

        if self.routing.hybrid_enabled and scoring.complexity >= HYBRID_COMPLEXITY_MIN:
            return pick(Backend.LOCAL, "hybrid_high_complexity")

        if self.routing.adaptive_scoring_enabled:
            best = self._best_adaptive(scoring.adaptive_scores, available)
            if best is not None:
                return pick(best, "adaptive_score")

        if self.health is not None:
            statuses = self.health.get_health()
            for backend in HEALTH_TIE_BREAK_ORDER:
                if available[backend] and statuses.get(backend) in _WARM_STATUSES:
                    return pick(backend, "health_tie_break")

        for backend in DEFAULT_ORDER:
            if available[backend]:
                return pick(backend, "default_order")
        return pick(Backend.LOCAL, "last_resort")

    def availability(self, scoring: Scoring) -> tuple[dict[Backend, bool], dict[Backend, str]]:
        """Budget, rate and circuit gates per backend, with the reason for each exclusion."""

        available: dict[Backend, bool] = {}
        reasons: dict[Backend, str] = {}
        for backend in Backend:
            budget = self.budget.check_budget(backend, scoring.estimated_tokens)
            if not budget.allowed:
                available[backend] = False
                reasons[backend] = budget.reason or "budget exceeded"
                continue
            rate = self.rate_governor.can_use(backend)
            if not rate.allowed:
                available[backend] = False
                reasons[backend] = rate.reason or "rate limited"
                logger.info("%s rate limited during selection: %s", backend.value, rate.reason)
                continue
            if rate.delay_ms:
                logger.info(
                    "%s soft rate limit: %d ms delay at dispatch (%s)",
                    backend.value,
                    rate.delay_ms,
                    rate.reason,
                )
            if not self.circuit_breaker.is_available(backend):
                available[backend] = False
                reasons[backend] = "circuit open"
                continue
            available[backend] = True
        return available, reasons

    def _best_adaptive(
        self,
        adaptive_scores: dict[Backend, float],
        available: dict[Backend, bool],
    ) -> Backend | None:
        best: Backend | None = None
        best_score = 0.0
        for backend, score in adaptive_scores.items():
            if available.get(backend) and score > best_score:
                best = backend
                best_score = score
        if best is not None and best_score >= self.routing.adaptive_confidence_floor:
            return best
        return None

    @staticmethod
    def _chosen(
        backend: Backend,
        rule: str,
        *,
        available: dict[Backend, bool] | None = None,
        reasons: dict[Backend, str] | None = None,
    ) -> Selection:
        logger.info("Selected %s (rule: %s)", backend.value, rule)
        return Selection(
            backend=backend,
            rule=rule,
            available=dict(available or {}),
            reasons=dict(reasons or {}),
        )
