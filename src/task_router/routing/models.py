"""Domain models for task routing, admission queue and plan execution."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from task_router.routing.errors import PlanValidationError
from task_router.storage.common import from_iso, from_optional_iso, to_iso


class Backend(str, Enum):
    """Fixed execution targets."""

    CLAUDE_CODE = "claude_code"
    CODEX = "codex"
    API = "api"
    LOCAL = "local"


class Urgency(str, Enum):
    """Caller-declared task urgency."""

    IMMEDIATE = "immediate"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"
    BACKGROUND = "background"


class Priority(str, Enum):
    """Admission queue priority names."""

    CRITICAL = "critical"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"
    BACKGROUND = "background"


PRIORITY_VALUES: dict[Priority, int] = {
    Priority.CRITICAL: 100,
    Priority.HIGH: 75,
    Priority.NORMAL: 50,
    Priority.LOW: 25,
    Priority.BACKGROUND: 10,
}

URGENCY_TO_PRIORITY: dict[Urgency, Priority] = {
    Urgency.IMMEDIATE: Priority.CRITICAL,
    Urgency.HIGH: Priority.HIGH,
    Urgency.NORMAL: Priority.NORMAL,
    Urgency.LOW: Priority.LOW,
    Urgency.BACKGROUND: Priority.BACKGROUND,
}


class CircuitStatus(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class HealthStatus(str, Enum):
    """Backend health reported by the health probe."""

    COLD = "cold"
    WARM = "warm"
    HEALTHY = "healthy"
    DEAD = "dead"


class ErrorKind(str, Enum):
    """Dispatcher classification of backend failures."""

    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    OTHER = "other"


@dataclass(slots=True)
class Task:
    """Normalized unit of work.

    Immutable after normalization except for queue annotations
    (`preferred_backend`, and `force_backend` set by overflow handling).
    """

    description: str
    task_type: str = "other"
    urgency: Urgency = Urgency.NORMAL
    complexity: int = 5
    tools_needed: tuple[str, ...] = ()
    files: tuple[str, ...] = ()
    output_path: str | None = None
    force_backend: Backend | None = None
    preferred_backend: Backend | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialize task for queue snapshots."""

        return {
            "description": self.description,
            "type": self.task_type,
            "urgency": self.urgency.value,
            "complexity": self.complexity,
            "tools_needed": list(self.tools_needed),
            "files": list(self.files),
            "output_path": self.output_path,
            "force_backend": self.force_backend.value if self.force_backend else None,
            "preferred_backend": (
                self.preferred_backend.value if self.preferred_backend else None
            ),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Task:
        force_backend = raw.get("force_backend")
        preferred_backend = raw.get("preferred_backend")
        return cls(
            description=str(raw["description"]),
            task_type=str(raw.get("type") or "other"),
            urgency=Urgency(raw.get("urgency") or Urgency.NORMAL.value),
            complexity=int(raw.get("complexity") or 5),
            tools_needed=tuple(raw.get("tools_needed") or ()),
            files=tuple(raw.get("files") or ()),
            output_path=raw.get("output_path"),
            force_backend=Backend(force_backend) if force_backend else None,
            preferred_backend=Backend(preferred_backend) if preferred_backend else None,
            metadata=dict(raw.get("metadata") or {}),
        )


@dataclass(slots=True)
class Scoring:
    """Ephemeral per-attempt routing dimensions; never persisted."""

    complexity: int
    urgency: int
    tool_requirement: int
    estimated_tokens: int
    estimated_cost: float
    file_count: int
    adaptive_scores: dict[Backend, float] = field(default_factory=dict)


@dataclass(slots=True)
class QueueItem:
    """Task wrapper owned and mutated by the admission queue."""

    id: str
    task: Task
    priority: int
    priority_name: Priority
    enqueued_at: datetime
    retries: int = 0
    last_error: str | None = None
    scheduled_for: datetime | None = None
    last_failed_at: datetime | None = None

    def is_ready(self, now: datetime) -> bool:
        return self.scheduled_for is None or self.scheduled_for <= now

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "task": self.task.to_dict(),
            "priority": self.priority,
            "priority_name": self.priority_name.value,
            "enqueued_at": to_iso(self.enqueued_at),
            "retries": self.retries,
            "last_error": self.last_error,
            "scheduled_for": to_iso(self.scheduled_for),
            "last_failed_at": to_iso(self.last_failed_at),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> QueueItem:
        return cls(
            id=str(raw["id"]),
            task=Task.from_dict(raw["task"]),
            priority=int(raw["priority"]),
            priority_name=Priority(raw["priority_name"]),
            enqueued_at=from_iso(raw["enqueued_at"]),
            retries=int(raw.get("retries", 0)),
            last_error=raw.get("last_error"),
            scheduled_for=from_optional_iso(raw.get("scheduled_for")),
            last_failed_at=from_optional_iso(raw.get("last_failed_at")),
        )


@dataclass(frozen=True, slots=True)
class DeadLetter:
    """Terminal snapshot of a queue item that exhausted its retries."""

    id: str
    task: Task
    priority_name: Priority
    enqueued_at: datetime
    retries: int
    final_error: str
    moved_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "task": self.task.to_dict(),
            "priority_name": self.priority_name.value,
            "enqueued_at": to_iso(self.enqueued_at),
            "retries": self.retries,
            "final_error": self.final_error,
            "moved_at": to_iso(self.moved_at),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> DeadLetter:
        return cls(
            id=str(raw["id"]),
            task=Task.from_dict(raw["task"]),
            priority_name=Priority(raw["priority_name"]),
            enqueued_at=from_iso(raw["enqueued_at"]),
            retries=int(raw["retries"]),
            final_error=str(raw["final_error"]),
            moved_at=from_iso(raw["moved_at"]),
        )


@dataclass(slots=True)
class RateDecision:
    """Rate governor admission answer."""

    allowed: bool
    delay_ms: int = 0
    reason: str | None = None
    suggested_backend: Backend | None = None


@dataclass(slots=True)
class BudgetDecision:
    """Budget ledger availability answer."""

    allowed: bool
    reason: str | None = None


@dataclass(slots=True)
class BreakerView:
    """Read-only breaker state for status output."""

    state: CircuitStatus
    failures: int
    last_failure: datetime | None
    cooldown_ends: datetime | None
    probe_failures: int


@dataclass(slots=True)
class BackendResult:
    """Outcome of one successful backend execution."""

    success: bool
    backend: Backend
    duration_ms: int
    tokens: int = 0
    cost: float = 0.0
    output_path: str | None = None
    response: str = ""
    attempted: tuple[Backend, ...] = ()


@dataclass(slots=True)
class PlanStep:
    """One dependent sub-unit of a plan."""

    id: str
    index: int
    description: str
    backend: Backend
    task_type: str = "other"
    dependencies: tuple[str, ...] = ()
    critical: bool = True
    estimated_tokens: int = 2_000
    estimated_cost: float = 0.0
    estimated_minutes: float = 4.0
    parallelizable: bool = False


@dataclass(slots=True)
class Plan:
    """Validated acyclic set of plan steps.

    Construction fails with `PlanValidationError` for duplicate ids, unknown or
    self dependencies and dependency cycles.
    """

    id: str
    steps: list[PlanStep]
    task: Task | None = None
    created_at: datetime | None = None

    def __post_init__(self) -> None:
        validate_plan_steps(self.steps)

    def step(self, step_id: str) -> PlanStep:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(step_id)


@dataclass(slots=True)
class StepCost:
    """Per-step line of a plan cost breakdown."""

    step_id: str
    description: str
    backend: Backend
    estimated_tokens: int
    estimated_cost: float
    estimated_minutes: float
    is_free: bool


@dataclass(slots=True)
class CostBreakdown:
    """Planner cost estimate for a plan."""

    plan_id: str
    total_api_cost: float
    total_subscription_minutes: float
    total_local_minutes: float
    total_estimated_minutes: float
    step_count: int
    needs_approval: bool
    per_step: list[StepCost] = field(default_factory=list)


@dataclass(slots=True)
class PlanResult:
    """Aggregate outcome of plan execution."""

    plan_id: str
    success: bool
    total_steps: int
    completed_steps: int
    failed_steps: int
    results: dict[str, BackendResult]
    errors: dict[str, str]
    context: dict[str, str]
    duration_ms: int


@dataclass(slots=True)
class RoutingResult:
    """Caller-facing result of `TaskRouter.route`."""

    task_id: str
    backend: Backend | None
    scoring: Scoring | None
    duration_ms: int
    result: BackendResult | None = None
    queued: bool = False
    queue_item_id: str | None = None
    fallback: bool = False
    original_error: str | None = None
    confirmation_needed: bool = False
    message: str = ""


@dataclass(slots=True)
class PlanProposal:
    """Plan-mode answer: decomposition plus cost, not executed."""

    plan: Plan
    cost_breakdown: CostBreakdown
    formatted: str
    needs_approval: bool


def validate_plan_steps(steps: list[PlanStep]) -> None:
    """Reject plans with duplicate ids, dangling or self dependencies, or cycles."""

    ids: set[str] = set()
    for step in steps:
        if step.id in ids:
            raise PlanValidationError(f"Duplicate plan step id: {step.id!r}")
        ids.add(step.id)

    for step in steps:
        for dependency in step.dependencies:
            if dependency == step.id:
                raise PlanValidationError(f"Plan step {step.id!r} depends on itself")
            if dependency not in ids:
                raise PlanValidationError(
                    f"Plan step {step.id!r} depends on unknown step {dependency!r}",
                )

    # Kahn's algorithm: anything left unvisited sits on a cycle.
    in_degree = {step.id: len(set(step.dependencies)) for step in steps}
    dependents: dict[str, list[str]] = {step.id: [] for step in steps}
    for step in steps:
        for dependency in set(step.dependencies):
            dependents[dependency].append(step.id)
    frontier = [step_id for step_id, degree in in_degree.items() if degree == 0]
    visited = 0
    while frontier:
        current = frontier.pop()
        visited += 1
        for dependent in dependents[current]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                frontier.append(dependent)
    if visited != len(steps):
        cyclic = sorted(step_id for step_id, degree in in_degree.items() if degree > 0)
        raise PlanValidationError(f"Plan dependency cycle detected among steps: {cyclic}")
