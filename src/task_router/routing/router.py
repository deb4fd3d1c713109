"""Router facade: normalization, selection, queueing, dispatch and plans."""

from __future__ import annotations

import logging
import random
import string
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from task_router.config import Settings
from task_router.routing.admission_queue import AdmissionQueue
from task_router.routing.backend.simulated import default_adapters
from task_router.routing.budget import UsageLedger
from task_router.routing.circuit_breaker import CircuitBreaker
from task_router.routing.classifier import KeywordTaskClassifier, TaskClassifier
from task_router.routing.collaborators import BackendAdapter, HealthProbe, Planner
from task_router.routing.dispatcher import Dispatcher
from task_router.routing.drip_scheduler import DripScheduler
from task_router.routing.errors import (
    AllFallbacksExhausted,
    PlanNotFoundError,
    ValidationError,
)
from task_router.routing.health import StaticHealthProbe
from task_router.routing.models import (
    URGENCY_TO_PRIORITY,
    Backend,
    BackendResult,
    CostBreakdown,
    Plan,
    PlanProposal,
    PlanResult,
    QueueItem,
    RoutingResult,
    Scoring,
    Task,
    Urgency,
)
from task_router.routing.monitor import PerformanceMonitor
from task_router.routing.plan_executor import PlanExecutor
from task_router.routing.planner import HeuristicPlanner
from task_router.routing.rate_governor import RateGovernor
from task_router.routing.scoring import normalize_task, parse_backend, score_task
from task_router.routing.selector import BackendSelector
from task_router.storage.common import utc_now
from task_router.storage.snapshots import SnapshotStores, build_snapshot_stores

logger = logging.getLogger(__name__)

_ID_ALPHABET = string.digits + string.ascii_lowercase
QUEUED_URGENCIES = frozenset({Urgency.LOW, Urgency.BACKGROUND})


@dataclass(slots=True)
class PendingPlan:
    """Plan awaiting approval because its API cost exceeds the threshold."""

    plan: Plan
    cost_breakdown: CostBreakdown
    created_at: datetime


@dataclass(slots=True)
class RouterStatus:
    """Aggregated component state for status output."""

    settings: dict[str, Any]
    queue: dict[str, Any]
    circuit_breakers: dict[str, dict[str, Any]]
    rate_governor: dict[str, dict[str, Any]]
    performance: dict[str, dict[str, object]]
    usage: dict[str, Any]
    pending_plans: list[str] = field(default_factory=list)


class TaskRouter:
    """Explicitly wired router instance; all state lives in its components."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: Settings,
        classifier: TaskClassifier,
        circuit_breaker: CircuitBreaker,
        rate_governor: RateGovernor,
        queue: AdmissionQueue,
        ledger: UsageLedger,
        monitor: PerformanceMonitor,
        selector: BackendSelector,
        dispatcher: Dispatcher,
        planner: Planner,
        health: HealthProbe,
        clock: Callable[[], datetime] = utc_now,
        rng: random.Random | None = None,
    ) -> None:
        self.settings = settings
        self.classifier = classifier
        self.circuit_breaker = circuit_breaker
        self.rate_governor = rate_governor
        self.queue = queue
        self.ledger = ledger
        self.monitor = monitor
        self.selector = selector
        self.dispatcher = dispatcher
        self.planner = planner
        self.health = health
        self.plan_executor = PlanExecutor(dispatcher=dispatcher, scorer=self.score)
        self.scheduler = DripScheduler(
            queue=queue,
            execute=self.process_queued,
            settings=settings.queue,
            rng=rng,
        )
        self._clock = clock
        self._random = rng or random.Random()  # noqa: S311
        self._pending_plans: dict[str, PendingPlan] = {}

    def normalize(self, raw: Task | Mapping[str, Any]) -> Task:
        return normalize_task(raw, self.classifier)

    def score(self, task: Task) -> Scoring:
        return score_task(
            task,
            routing=self.settings.routing,
            budget=self.ledger,
            monitor=self.monitor,
        )

    async def route(
        self,
        task: Task | Mapping[str, Any],
        *,
        plan: bool = False,
        force_backend: Backend | str | None = None,
    ) -> RoutingResult | PlanProposal:
        """Route one task.

        Raises `ValidationError` for malformed input and `AllFallbacksExhausted`
        when no backend could complete the task.
        """

        normalized = self.normalize(task)
        forced = parse_backend(force_backend)
        if forced is not None:
            normalized = replace(normalized, force_backend=forced)

        if plan:
            return self.propose_plan(normalized)

        started = time.monotonic()
        task_id = self._new_task_id()
        logger.info("Routing task %s: %s", task_id, normalized.description[:100])

        scoring = self.score(normalized)
        selection = self.selector.select(normalized, scoring)
        backend = selection.backend

        if should_queue(normalized):
            queued_task = replace(normalized, preferred_backend=backend)
            item = self.queue.enqueue(queued_task, URGENCY_TO_PRIORITY[normalized.urgency])
            return RoutingResult(
                task_id=task_id,
                backend=backend,
                scoring=scoring,
                duration_ms=_elapsed_ms(started),
                queued=True,
                queue_item_id=item.id,
                message=f"Task queued for {backend.value} execution",
            )

        try:
            result = await self.dispatcher.execute_with_backend(backend, normalized, scoring)
        except AllFallbacksExhausted:
            logger.error("Task %s failed: all fallbacks exhausted", task_id)
            raise
        except Exception as error:  # noqa: BLE001
            logger.error("Task %s failed on %s: %s", task_id, backend.value, error)
            result = await self._execute_fallback(normalized, scoring, str(error))
            return RoutingResult(
                task_id=task_id,
                backend=result.backend,
                scoring=scoring,
                duration_ms=_elapsed_ms(started),
                result=result,
                fallback=True,
                original_error=str(error),
                message=f"Completed via fallback on {result.backend.value}",
            )

        logger.info(
            "Task %s completed via %s in %.1fs",
            task_id,
            result.backend.value,
            result.duration_ms / 1000,
        )
        return RoutingResult(
            task_id=task_id,
            backend=result.backend,
            scoring=scoring,
            duration_ms=_elapsed_ms(started),
            result=result,
            fallback=result.backend != backend,
            confirmation_needed=(
                scoring.estimated_cost > self.settings.routing.confirmation_cost_usd
            ),
            message=f"Completed on {result.backend.value}",
        )

    def propose_plan(self, task: Task) -> PlanProposal:
        plan = self.planner.decompose(task)
        cost = self.planner.estimate_cost(plan)
        if cost.needs_approval:
            self._pending_plans[plan.id] = PendingPlan(
                plan=plan,
                cost_breakdown=cost,
                created_at=self._clock(),
            )
            logger.info(
                "Plan %s awaits approval (API cost $%.4f)",
                plan.id,
                cost.total_api_cost,
            )
        return PlanProposal(
            plan=plan,
            cost_breakdown=cost,
            formatted=self.planner.format_plan(plan),
            needs_approval=cost.needs_approval,
        )

    async def execute_plan(self, plan: Plan) -> PlanResult:
        return await self.plan_executor.execute(plan)

    async def approve_plan(self, plan_id: str) -> PlanResult:
        pending = self._pending_plans.pop(plan_id, None)
        if pending is None:
            raise PlanNotFoundError(f"Plan {plan_id} not found or already resolved")
        logger.info("Plan %s approved, executing", plan_id)
        return await self.execute_plan(pending.plan)

    def cancel_plan(self, plan_id: str) -> None:
        if self._pending_plans.pop(plan_id, None) is None:
            raise PlanNotFoundError(f"Plan {plan_id} not found or already resolved")
        logger.info("Plan %s cancelled", plan_id)

    def get_pending_plans(self) -> dict[str, PendingPlan]:
        return dict(self._pending_plans)

    async def force_route(
        self,
        task: Task | Mapping[str, Any],
        backend: Backend | str,
    ) -> RoutingResult:
        """Dispatch directly on `backend`, bypassing selection and queueing."""

        forced = parse_backend(backend)
        if forced is None:
            raise ValidationError("force_route requires a backend")
        normalized = replace(self.normalize(task), force_backend=forced)
        started = time.monotonic()
        scoring = self.score(normalized)
        result = await self.dispatcher.execute_with_backend(forced, normalized, scoring)
        return RoutingResult(
            task_id=self._new_task_id(),
            backend=result.backend,
            scoring=scoring,
            duration_ms=_elapsed_ms(started),
            result=result,
            fallback=result.backend != forced,
            message=f"Forced route completed on {result.backend.value}",
        )

    async def process_queued(self, item: QueueItem) -> BackendResult:
        """Execute a released queue item; errors propagate to the scheduler."""

        task = item.task
        scoring = self.score(task)
        backend = task.force_backend or task.preferred_backend
        if backend is None:
            backend = self.selector.select_backend(task, scoring)
        logger.info("Processing queued task %s on %s", item.id, backend.value)
        return await self.dispatcher.execute_with_backend(backend, task, scoring)

    def start_scheduler(self) -> None:
        self.scheduler.start()

    async def shutdown(self) -> None:
        logger.info("Shutting down router")
        await self.scheduler.stop()

    def get_status(self) -> RouterStatus:
        queue_status = self.queue.get_queue_status(
            scheduler_active=self.scheduler.is_running,
            is_processing=self.scheduler.is_processing,
        )
        rate_status = self.rate_governor.get_status()
        return RouterStatus(
            settings={
                "hybrid_enabled": self.settings.routing.hybrid_enabled,
                "adaptive_scoring_enabled": self.settings.routing.adaptive_scoring_enabled,
                "fallback_chain": list(self.settings.routing.fallback_chain),
                "state_backend": self.settings.state_backend,
            },
            queue={
                "total_items": queue_status.total_items,
                "ready_items": queue_status.ready_items,
                "scheduled_items": queue_status.scheduled_items,
                "dead_letters": queue_status.dead_letters,
                "scheduler_active": queue_status.scheduler_active,
                "is_processing": queue_status.is_processing,
            },
            circuit_breakers={
                backend.value: {
                    "state": view.state.value,
                    "failures": view.failures,
                    "probe_failures": view.probe_failures,
                }
                for backend, view in self.circuit_breaker.get_all().items()
            },
            rate_governor={
                backend.value: {
                    "requests_in_window": status.requests_in_window,
                    "current_limit": status.current_limit,
                    "utilization_percent": status.utilization,
                }
                for backend, status in rate_status.backends.items()
            },
            performance=self.monitor.get_performance_report(),
            usage={
                "api_daily_usd": round(self.ledger.api.daily_usd, 4),
                "api_monthly_usd": round(self.ledger.api.monthly_usd, 4),
                "subscriptions": {
                    backend.value: round(usage.session_percent, 1)
                    for backend, usage in self.ledger.subscriptions.items()
                },
            },
            pending_plans=sorted(self._pending_plans),
        )

    async def _execute_fallback(
        self,
        task: Task,
        scoring: Scoring,
        original_error: str,
    ) -> BackendResult:
        attempted: list[Backend] = []
        last_error: BaseException | None = None
        for backend in self.dispatcher.fallback_chain:
            budget = self.ledger.check_budget(backend, scoring.estimated_tokens)
            if not budget.allowed:
                logger.info("Fallback %s not available: %s", backend.value, budget.reason)
                continue
            attempted.append(backend)
            logger.info("Trying fallback backend %s", backend.value)
            try:
                return await self.dispatcher.execute_with_backend(backend, task, scoring)
            except Exception as error:  # noqa: BLE001
                logger.warning("Fallback %s failed: %s", backend.value, error)
                last_error = error
        raise AllFallbacksExhausted(
            attempted,
            original_error=original_error,
            last_error=last_error,
        )

    def _new_task_id(self) -> str:
        now_ms = int(self._clock().timestamp() * 1000)
        suffix = "".join(self._random.choice(_ID_ALPHABET) for _ in range(6))
        return f"route_{now_ms}_{suffix}"


def should_queue(task: Task) -> bool:
    """Low and background work is deferred; immediate work never is."""

    if task.urgency == Urgency.IMMEDIATE:
        return False
    return task.urgency in QUEUED_URGENCIES


def build_router(  # noqa: PLR0913
    settings: Settings,
    adapters: Mapping[Backend, BackendAdapter] | None = None,
    *,
    stores: SnapshotStores | None = None,
    health: HealthProbe | None = None,
    classifier: TaskClassifier | None = None,
    clock: Callable[[], datetime] = utc_now,
    rng: random.Random | None = None,
) -> TaskRouter:
    """Wire every component from settings; simulated adapters by default."""

    settings.validate()
    stores = stores or build_snapshot_stores(settings)
    fallback_chain = tuple(Backend(name) for name in settings.routing.fallback_chain)
    circuit_breaker = CircuitBreaker(
        settings=settings.circuit_breaker,
        store=stores.circuit_breaker,
        clock=clock,
    )
    rate_governor = RateGovernor(
        settings=settings.rate_governor,
        store=stores.rate_governor,
        fallback_chain=fallback_chain,
        clock=clock,
    )
    queue = AdmissionQueue(
        settings=settings.queue,
        queue_store=stores.queue,
        dead_letter_store=stores.dead_letters,
        clock=clock,
        rng=rng,
    )
    ledger = UsageLedger(settings=settings.budget, clock=clock)
    monitor = PerformanceMonitor(clock=clock)
    health = health or StaticHealthProbe()
    selector = BackendSelector(
        routing=settings.routing,
        budget=ledger,
        rate_governor=rate_governor,
        circuit_breaker=circuit_breaker,
        health=health,
    )
    dispatcher = Dispatcher(
        adapters=adapters if adapters is not None else default_adapters(),
        circuit_breaker=circuit_breaker,
        rate_governor=rate_governor,
        monitor=monitor,
        ledger=ledger,
        fallback_chain=fallback_chain,
        timeout_seconds=settings.routing.backend_timeout_seconds,
    )
    planner = HeuristicPlanner(settings=settings.planner, clock=clock, rng=rng)
    return TaskRouter(
        settings=settings,
        classifier=classifier or KeywordTaskClassifier(),
        circuit_breaker=circuit_breaker,
        rate_governor=rate_governor,
        queue=queue,
        ledger=ledger,
        monitor=monitor,
        selector=selector,
        dispatcher=dispatcher,
        planner=planner,
        health=health,
        clock=clock,
        rng=rng,
    )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
