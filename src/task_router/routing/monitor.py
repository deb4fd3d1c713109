"""Per-backend performance history feeding adaptive selection scores."""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from task_router.routing.models import Backend, Task, Urgency
from task_router.storage.common import utc_now

logger = logging.getLogger(__name__)

NEUTRAL_SCORE = 50.0
MIN_SAMPLES = 3
SUCCESS_RATE_WEIGHT = 0.4
TYPE_EXPERIENCE_BONUS = 5.0
URGENCY_BONUS = 5.0
IMMEDIATE_FAST_MINUTES = 5.0

# (upper bound in minutes, bonus); slow backends take a flat penalty.
_SPEED_BONUSES: tuple[tuple[float, float], ...] = ((2.0, 15.0), (5.0, 10.0), (10.0, 5.0))
_SLOW_MINUTES = 15.0
_SLOW_PENALTY = -10.0


@dataclass(slots=True)
class ResultRecord:
    """One recorded dispatch outcome."""

    timestamp: datetime
    success: bool
    duration_ms: int
    tokens: int
    task_type: str
    urgency: Urgency
    complexity: int


@dataclass(slots=True)
class _BackendHistory:
    results: deque[ResultRecord]
    total_tasks: int = 0
    successes: int = 0
    total_duration_ms: int = 0
    total_tokens: int = 0
    task_types: dict[str, int] = field(default_factory=dict)

    @property
    def success_rate(self) -> float:
        return self.successes / self.total_tasks * 100 if self.total_tasks else 0.0

    @property
    def avg_duration_minutes(self) -> float:
        if not self.total_tasks:
            return 0.0
        return self.total_duration_ms / self.total_tasks / 60_000


class PerformanceMonitor:
    """Bounded in-process history of dispatch outcomes per backend."""

    def __init__(
        self,
        *,
        max_results: int = 100,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.max_results = max_results
        self._clock = clock
        self._history: dict[Backend, _BackendHistory] = {
            backend: _BackendHistory(results=deque(maxlen=max_results)) for backend in Backend
        }

    def record_result(  # noqa: PLR0913
        self,
        backend: Backend,
        task: Task,
        *,
        success: bool,
        duration_ms: int,
        tokens: int = 0,
    ) -> None:
        history = self._history[backend]
        history.results.append(
            ResultRecord(
                timestamp=self._clock(),
                success=success,
                duration_ms=duration_ms,
                tokens=tokens,
                task_type=task.task_type,
                urgency=task.urgency,
                complexity=task.complexity,
            ),
        )
        history.total_tasks += 1
        history.successes += int(success)
        history.total_duration_ms += duration_ms
        history.total_tokens += tokens
        history.task_types[task.task_type] = history.task_types.get(task.task_type, 0) + 1
        logger.debug(
            "Recorded %s result for %s in %d ms",
            "successful" if success else "failed",
            backend.value,
            duration_ms,
        )

    def get_task_count(self, backend: Backend) -> int:
        return self._history[backend].total_tasks

    def get_adaptive_score(self, backend: Backend, task: Task) -> float:
        """Score 0..100; neutral 50 until enough samples exist."""

        history = self._history[backend]
        if history.total_tasks < MIN_SAMPLES:
            return NEUTRAL_SCORE

        score = NEUTRAL_SCORE + (history.success_rate - 50) * SUCCESS_RATE_WEIGHT
        score += _speed_bonus(history.avg_duration_minutes)
        if history.task_types.get(task.task_type, 0) >= MIN_SAMPLES and history.successes:
            score += TYPE_EXPERIENCE_BONUS
        if (
            task.urgency == Urgency.IMMEDIATE
            and history.avg_duration_minutes < IMMEDIATE_FAST_MINUTES
        ):
            score += URGENCY_BONUS
        return max(0.0, min(100.0, score))

    def get_performance_report(self) -> dict[str, dict[str, object]]:
        report: dict[str, dict[str, object]] = {}
        for backend, history in self._history.items():
            report[backend.value] = {
                "total_tasks": history.total_tasks,
                "success_rate": round(history.success_rate, 1),
                "avg_duration_minutes": round(history.avg_duration_minutes, 1),
                "avg_tokens": (
                    round(history.total_tokens / history.total_tasks) if history.total_tasks else 0
                ),
                "score": round(
                    self.get_adaptive_score(backend, Task(description="report", task_type="code")),
                    2,
                ),
            }
        return report


def _speed_bonus(avg_minutes: float) -> float:
    for upper_bound, bonus in _SPEED_BONUSES:
        if avg_minutes < upper_bound:
            return bonus
    if avg_minutes > _SLOW_MINUTES:
        return _SLOW_PENALTY
    return 0.0
