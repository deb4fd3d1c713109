"""Heuristic task decomposition and plan cost estimation."""

from __future__ import annotations

import logging
import math
import random
import re
import string
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from task_router.config import PlannerSettings
from task_router.routing.models import Backend, CostBreakdown, Plan, PlanStep, StepCost, Task
from task_router.routing.pricing import ModelPricing, estimate_api_cost
from task_router.storage.common import utc_now

logger = logging.getLogger(__name__)

PLAN_ID_SUFFIX_LENGTH = 6
_ID_ALPHABET = string.digits + string.ascii_lowercase

STEP_MINUTES: dict[Backend, float] = {
    Backend.CLAUDE_CODE: 8,
    Backend.CODEX: 5,
    Backend.API: 2,
    Backend.LOCAL: 4,
}

SIMPLE_TASK_MAX_COMPLEXITY = 3
SIMPLE_TASK_MAX_CHARS = 200
SIMPLE_TASK_MAX_FILES = 2
DESCRIPTION_EXCERPT_CHARS = 80

_FILE_OPS = re.compile(
    r"\b(ocr|pars[ei]|extract|scan|ingest|convert|transform file|read file|write file)",
    re.IGNORECASE,
)
_REASONING = re.compile(
    r"\b(analy[sz]e|synthe[sz]i|recommend|evaluat|assess|reason|compar[ei]|review|audit|strateg)",
    re.IGNORECASE,
)
_SIMPLE_TRANSFORM = re.compile(
    r"\b(format|template|render|prettif|reformat|stringify|serialize|markdown)",
    re.IGNORECASE,
)
_MULTI_CODE = re.compile(
    r"\b(refactor|implement across|multi.?file|codebase.?wide|full system|architect)",
    re.IGNORECASE,
)
_QUICK_CODE = re.compile(
    r"\b(generate|write a function|write a script|create a class|stub|scaffold|boilerplate)",
    re.IGNORECASE,
)
_LARGE_CONTEXT = re.compile(
    r"\b(entire codebase|all files|100k|large context|massive|comprehensive scan)",
    re.IGNORECASE,
)
_RESEARCH = re.compile(
    r"\b(research|investigat|survey|benchmark|compar.*options|explore alternatives)",
    re.IGNORECASE,
)
_TESTING = re.compile(r"\b(test|spec|unit test|integration test|e2e|coverage)\b", re.IGNORECASE)
_DOCS = re.compile(r"\b(document|readme|guide|tutorial|api docs|changelog)", re.IGNORECASE)


@dataclass(slots=True)
class _StepDraft:
    description: str
    backend: Backend
    tokens: int
    minutes: float
    task_type: str
    dependencies: list[str] = field(default_factory=list)
    parallelizable: bool = False
    critical: bool = True


class HeuristicPlanner:
    """Keyword-driven planner producing validated acyclic plans."""

    def __init__(
        self,
        *,
        settings: PlannerSettings,
        pricing: ModelPricing | None = None,
        clock: Callable[[], datetime] = utc_now,
        rng: random.Random | None = None,
    ) -> None:
        self.settings = settings
        self.pricing = pricing
        self._clock = clock
        self._random = rng or random.Random()  # noqa: S311

    def decompose(self, task: Task) -> Plan:
        """Split a normalized task into steps; simple tasks become one step."""

        now = self._clock()
        plan_id = self._new_plan_id(now)
        description = task.description.strip()

        if (
            task.complexity <= SIMPLE_TASK_MAX_COMPLEXITY
            and len(description) < SIMPLE_TASK_MAX_CHARS
            and len(task.files) <= SIMPLE_TASK_MAX_FILES
        ):
            drafts = [self._single_step(task, description)]
        else:
            drafts = self._heuristic_drafts(task, description, plan_id)

        steps: list[PlanStep] = []
        for index, draft in enumerate(drafts):
            steps.append(
                PlanStep(
                    id=_step_id(plan_id, index),
                    index=index,
                    description=draft.description,
                    backend=draft.backend,
                    task_type=draft.task_type,
                    dependencies=tuple(draft.dependencies),
                    critical=draft.critical,
                    estimated_tokens=draft.tokens,
                    estimated_cost=self._step_cost(draft.tokens, draft.backend),
                    estimated_minutes=draft.minutes,
                    parallelizable=draft.parallelizable,
                ),
            )
        plan = Plan(id=plan_id, steps=steps, task=task, created_at=now)
        logger.info("Decomposed task into plan %s with %d steps", plan.id, len(steps))
        return plan

    def estimate_cost(self, plan: Plan) -> CostBreakdown:
        api_cost = 0.0
        subscription_minutes = 0.0
        local_minutes = 0.0
        per_step: list[StepCost] = []
        for step in plan.steps:
            is_subscription = step.backend in (Backend.CLAUDE_CODE, Backend.CODEX)
            is_local = step.backend == Backend.LOCAL
            if is_subscription:
                subscription_minutes += step.estimated_minutes
            elif is_local:
                local_minutes += step.estimated_minutes
            else:
                api_cost += step.estimated_cost
            per_step.append(
                StepCost(
                    step_id=step.id,
                    description=step.description[:DESCRIPTION_EXCERPT_CHARS],
                    backend=step.backend,
                    estimated_tokens=step.estimated_tokens,
                    estimated_cost=step.estimated_cost,
                    estimated_minutes=step.estimated_minutes,
                    is_free=is_subscription or is_local,
                ),
            )
        return CostBreakdown(
            plan_id=plan.id,
            total_api_cost=round(api_cost, 4),
            total_subscription_minutes=subscription_minutes,
            total_local_minutes=local_minutes,
            total_estimated_minutes=critical_path_minutes(plan.steps),
            step_count=len(plan.steps),
            needs_approval=api_cost > self.settings.approval_threshold_usd,
            per_step=per_step,
        )

    def format_plan(self, plan: Plan) -> str:
        cost = self.estimate_cost(plan)
        positions = {step.id: position for position, step in enumerate(plan.steps, start=1)}
        task_description = plan.task.description if plan.task else ""
        lines = [
            f"=== Task Plan: {plan.id} ===",
            f"Task: {task_description[:120]}",
            f"Steps: {len(plan.steps)} | Est. time: ~{_minutes(cost.total_estimated_minutes)} min",
            "",
        ]
        for position, (step, step_cost) in enumerate(
            zip(plan.steps, cost.per_step, strict=True),
            start=1,
        ):
            after = ""
            if step.dependencies:
                after = " (after step {})".format(
                    ", ".join(str(positions[dependency]) for dependency in step.dependencies),
                )
            price = "$0 (subscription)" if step_cost.is_free else f"${step.estimated_cost:.4f}"
            tags = (" [parallel]" if step.parallelizable else "") + (
                "" if step.critical else " [optional]"
            )
            lines.append(f"  {position}. {step.description}")
            lines.append(
                f"     Backend: {step.backend.value} | ~{_minutes(step.estimated_minutes)} min | "
                f"{price}{after}{tags}",
            )
        lines.extend(
            [
                "",
                "--- Cost Summary ---",
                f"  API cost:          ${cost.total_api_cost:.4f}",
                f"  Subscription time: ~{_minutes(cost.total_subscription_minutes)} min",
                f"  Local time:        ~{_minutes(cost.total_local_minutes)} min",
                f"  Total wall-clock:  ~{_minutes(cost.total_estimated_minutes)} min",
            ],
        )
        if cost.needs_approval:
            lines.extend(
                [
                    "",
                    f"API cost exceeds ${self.settings.approval_threshold_usd:g} "
                    "- approval required before execution.",
                ],
            )
        return "\n".join(lines)

    def _single_step(self, task: Task, description: str) -> _StepDraft:
        backend = pick_single_backend(task)
        return _StepDraft(
            description=description,
            backend=backend,
            tokens=estimate_plan_tokens(description, task.files),
            minutes=STEP_MINUTES[backend],
            task_type=task.task_type,
        )

    def _heuristic_drafts(  # noqa: C901, PLR0912
        self,
        task: Task,
        description: str,
        plan_id: str,
    ) -> list[_StepDraft]:
        drafts: list[_StepDraft] = []
        complexity = task.complexity
        excerpt = description[:DESCRIPTION_EXCERPT_CHARS]
        files = task.files
        has_multi_code = bool(_MULTI_CODE.search(description))

        def ids(predicate: Callable[[_StepDraft], bool] = lambda _draft: True) -> list[str]:
            return [
                _step_id(plan_id, index)
                for index, draft in enumerate(drafts)
                if predicate(draft)
            ]

        if _FILE_OPS.search(description) or len(files) > SIMPLE_TASK_MAX_FILES:
            drafts.append(
                _StepDraft(
                    description=(
                        "Process/extract data from files: "
                        f"{', '.join(files[:5]) or 'input files'}"
                    ),
                    backend=Backend.CODEX,
                    tokens=len(files) * 3000,
                    minutes=max(3, len(files) * 2),
                    task_type="file-ops",
                    parallelizable=True,
                ),
            )
        if _RESEARCH.search(description):
            drafts.append(
                _StepDraft(
                    description=f"Research and gather information: {excerpt}",
                    backend=Backend.CODEX,
                    tokens=8000,
                    minutes=6,
                    task_type="research",
                    parallelizable=True,
                ),
            )
        if _LARGE_CONTEXT.search(description):
            drafts.append(
                _StepDraft(
                    description="Chunk large context and prepare summaries for downstream steps",
                    backend=Backend.LOCAL,
                    tokens=12000,
                    minutes=5,
                    task_type="preprocessing",
                ),
            )
        if has_multi_code:
            drafts.append(
                _StepDraft(
                    description=f"Implement multi-file code changes: {excerpt}",
                    backend=Backend.CLAUDE_CODE,
                    tokens=complexity * 2000,
                    minutes=max(5, complexity * 1.5),
                    task_type="code",
                    dependencies=ids(),
                ),
            )
        if _QUICK_CODE.search(description) and not has_multi_code:
            drafts.append(
                _StepDraft(
                    description=f"Generate code: {excerpt}",
                    backend=Backend.CODEX,
                    tokens=4000,
                    minutes=4,
                    task_type="code",
                    dependencies=ids(
                        lambda draft: draft.task_type in ("file-ops", "preprocessing"),
                    ),
                    parallelizable=True,
                ),
            )
        if _REASONING.search(description):
            drafts.append(
                _StepDraft(
                    description=f"Analyze and synthesize findings: {excerpt}",
                    backend=Backend.API if complexity >= 7 else Backend.CLAUDE_CODE,
                    tokens=complexity * 2500,
                    minutes=max(4, complexity),
                    task_type="analysis",
                    dependencies=ids(),
                ),
            )
        if _TESTING.search(description):
            code_ids = ids(lambda draft: draft.task_type == "code")
            drafts.append(
                _StepDraft(
                    description="Write and run tests for generated code",
                    backend=Backend.CODEX,
                    tokens=4000,
                    minutes=5,
                    task_type="testing",
                    dependencies=code_ids or ids(),
                    parallelizable=True,
                    critical=False,
                ),
            )
        if _SIMPLE_TRANSFORM.search(description):
            drafts.append(
                _StepDraft(
                    description="Format and template final output",
                    backend=Backend.LOCAL,
                    tokens=2000,
                    minutes=2,
                    task_type="transform",
                    dependencies=ids(),
                    critical=False,
                ),
            )
        if _DOCS.search(description):
            drafts.append(
                _StepDraft(
                    description="Generate documentation",
                    backend=Backend.LOCAL,
                    tokens=3000,
                    minutes=3,
                    task_type="docs",
                    dependencies=ids(),
                    critical=False,
                ),
            )
        if not drafts:
            drafts.append(self._single_step(task, description))
        if len(drafts) >= 2:
            drafts.append(
                _StepDraft(
                    description="Combine outputs and produce final deliverable",
                    backend=Backend.LOCAL,
                    tokens=3000,
                    minutes=3,
                    task_type="synthesis",
                    dependencies=ids(lambda draft: draft.critical),
                ),
            )
        return drafts

    def _step_cost(self, tokens: int, backend: Backend) -> float:
        if backend != Backend.API:
            return 0.0
        return estimate_api_cost(tokens, self.pricing)

    def _new_plan_id(self, now: datetime) -> str:
        suffix = "".join(self._random.choice(_ID_ALPHABET) for _ in range(PLAN_ID_SUFFIX_LENGTH))
        return f"plan_{int(now.timestamp() * 1000)}_{suffix}"


def pick_single_backend(task: Task) -> Backend:
    """Backend for a plan that needs no decomposition."""

    description = task.description
    if task.tools_needed:
        return Backend.API
    if _MULTI_CODE.search(description):
        return Backend.CLAUDE_CODE
    if _QUICK_CODE.search(description):
        return Backend.CODEX
    if _REASONING.search(description):
        return Backend.CLAUDE_CODE
    if _FILE_OPS.search(description):
        return Backend.CODEX
    if _SIMPLE_TRANSFORM.search(description) or _DOCS.search(description):
        return Backend.LOCAL
    if task.complexity >= 7:
        return Backend.CLAUDE_CODE
    if task.complexity >= 4:
        return Backend.CODEX
    return Backend.LOCAL


def estimate_plan_tokens(description: str, files: Sequence[str]) -> int:
    tokens = len(description) / 4 * 1.3
    tokens += len(files) * 2000
    return max(500, math.ceil(tokens))


def critical_path_minutes(steps: Sequence[PlanStep]) -> float:
    """Wall-clock estimate: the longest dependency chain of step durations."""

    by_id = {step.id: step for step in steps}
    finish: dict[str, float] = {}

    def finish_time(step: PlanStep) -> float:
        if step.id not in finish:
            start = max(
                (finish_time(by_id[dependency]) for dependency in step.dependencies),
                default=0.0,
            )
            finish[step.id] = start + step.estimated_minutes
        return finish[step.id]

    return max((finish_time(step) for step in steps), default=0.0)


def _step_id(plan_id: str, index: int) -> str:
    return f"{plan_id}_s{index + 1}"


def _minutes(value: float) -> str:
    return f"{value:g}"
