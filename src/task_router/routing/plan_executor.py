"""Wave-based execution of validated plans."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass

from task_router.routing.classifier import clamp_complexity
from task_router.routing.dispatcher import Dispatcher
from task_router.routing.errors import DependencyBlocked, ValidationError
from task_router.routing.models import (
    Backend,
    BackendResult,
    Plan,
    PlanResult,
    PlanStep,
    Scoring,
    Task,
    Urgency,
)

logger = logging.getLogger(__name__)

CONTEXT_EXCERPT_CHARS = 1000
DEPENDENCY_CONTEXT_CHARS = 500
TOKENS_PER_COMPLEXITY_POINT = 2000


@dataclass(slots=True)
class _StepOutcome:
    step: PlanStep
    result: BackendResult | None = None
    error: str | None = None


class PlanExecutor:
    """Runs ready steps concurrently, one readiness wave at a time.

    A failed step is retried once on its own backend, then once on the next
    fallback backend. Critical failures block their dependents; optional
    failures are recorded and treated as resolved.
    """

    def __init__(
        self,
        *,
        dispatcher: Dispatcher,
        scorer: Callable[[Task], Scoring],
    ) -> None:
        self.dispatcher = dispatcher
        self.scorer = scorer

    async def execute(self, plan: Plan) -> PlanResult:
        if not plan.steps:
            raise ValidationError("Plan has no steps to execute")

        started = time.monotonic()
        steps = list(plan.steps)
        logger.info("Executing plan %s with %d steps", plan.id, len(steps))

        results: dict[str, BackendResult] = {}
        errors: dict[str, str] = {}
        context: dict[str, str] = {}
        remaining = {step.id for step in steps}
        completed: set[str] = set()
        skipped: set[str] = set()
        failed: set[str] = set()
        blocked: set[str] = set()

        while remaining:
            self._block_dependents(steps, remaining, failed, blocked, errors)
            resolved = completed | skipped
            ready = [
                step
                for step in steps
                if step.id in remaining and all(dep in resolved for dep in step.dependencies)
            ]
            if not ready:
                if remaining:
                    # Unreachable for plans validated at construction.
                    logger.error(
                        "Plan %s has unresolvable steps %s; aborting",
                        plan.id,
                        sorted(remaining),
                    )
                    for step_id in remaining:
                        errors[step_id] = "Aborted: unresolvable dependencies"
                    remaining.clear()
                break

            outcomes = await asyncio.gather(
                *(self._run_step(step, context, total=len(steps)) for step in ready),
            )
            for outcome in outcomes:
                step = outcome.step
                remaining.discard(step.id)
                if outcome.result is not None:
                    results[step.id] = outcome.result
                    context[step.id] = outcome.result.response[:CONTEXT_EXCERPT_CHARS]
                    completed.add(step.id)
                    logger.info(
                        "Step %d/%d completed: %s",
                        step.index + 1,
                        len(steps),
                        step.description[:60],
                    )
                elif step.critical:
                    logger.error(
                        "Critical step %d failed permanently: %s",
                        step.index + 1,
                        outcome.error,
                    )
                    errors[step.id] = outcome.error or "unknown error"
                    failed.add(step.id)
                else:
                    logger.warning(
                        "Optional step %d failed, skipping: %s",
                        step.index + 1,
                        outcome.error,
                    )
                    errors[step.id] = f"Skipped (non-critical): {outcome.error}"
                    skipped.add(step.id)

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Plan %s finished: %d/%d steps completed in %.1fs",
            plan.id,
            len(completed),
            len(steps),
            duration_ms / 1000,
        )
        return PlanResult(
            plan_id=plan.id,
            success=not failed,
            total_steps=len(steps),
            completed_steps=len(completed),
            failed_steps=len(failed),
            results=results,
            errors=errors,
            context=context,
            duration_ms=duration_ms,
        )

    async def _run_step(
        self,
        step: PlanStep,
        context: Mapping[str, str],
        *,
        total: int,
    ) -> _StepOutcome:
        attempts: list[tuple[str, Backend]] = [
            ("initial", step.backend),
            ("retry", step.backend),
        ]
        fallback = self.dispatcher.next_fallback(step.backend)
        if fallback is not None:
            attempts.append(("fallback", fallback))

        error_message = "unknown error"
        for label, backend in attempts:
            if label != "initial":
                logger.warning(
                    "Step %d/%d %s on %s after: %s",
                    step.index + 1,
                    total,
                    label,
                    backend.value,
                    error_message,
                )
            task = step_to_task(step, context)
            try:
                result = await self.dispatcher.execute_with_backend(
                    backend,
                    task,
                    self.scorer(task),
                )
            except Exception as error:  # noqa: BLE001
                error_message = str(error) or type(error).__name__
                continue
            return _StepOutcome(step=step, result=result)
        return _StepOutcome(step=step, error=error_message)

    @staticmethod
    def _block_dependents(  # noqa: PLR0913
        steps: list[PlanStep],
        remaining: set[str],
        failed: set[str],
        blocked: set[str],
        errors: dict[str, str],
    ) -> None:
        changed = True
        while changed:
            changed = False
            for step in steps:
                if step.id not in remaining:
                    continue
                blocking = [dep for dep in step.dependencies if dep in failed or dep in blocked]
                if not blocking:
                    continue
                errors[step.id] = str(DependencyBlocked(step.id, blocking))
                blocked.add(step.id)
                remaining.discard(step.id)
                changed = True
                logger.warning("Step %s blocked by failed dependency: %s", step.id, blocking)


def step_to_task(step: PlanStep, context: Mapping[str, str]) -> Task:
    """Turn a plan step into a routable task carrying its dependencies' context."""

    description = step.description
    snippets = [
        context[dependency][:DEPENDENCY_CONTEXT_CHARS]
        for dependency in step.dependencies
        if context.get(dependency)
    ]
    if snippets:
        description += "\n\nContext from prior steps:\n" + "\n---\n".join(snippets)
    return Task(
        description=description,
        task_type=step.task_type or "other",
        urgency=Urgency.NORMAL,
        complexity=clamp_complexity(math.ceil(step.estimated_tokens / TOKENS_PER_COMPLEXITY_POINT)),
        metadata={"plan_step_id": step.id},
    )
