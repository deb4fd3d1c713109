"""Deterministic in-process adapter for demos and tests."""

from __future__ import annotations

import asyncio
import math
from collections import deque
from collections.abc import Iterable

from task_router.routing.errors import BackendExecutionError
from task_router.routing.models import Backend, BackendResult, Task
from task_router.routing.pricing import estimate_api_cost


class SimulatedBackend:
    """Echoes the task description back; scripted failures are raised in order.

    Each scripted entry is an exception raised for one call; `None` entries
    let the call succeed.
    """

    def __init__(
        self,
        backend: Backend,
        *,
        failures: Iterable[BaseException | None] = (),
        latency_seconds: float = 0.0,
        duration_ms: int = 1_000,
    ) -> None:
        self.backend = backend
        self.latency_seconds = latency_seconds
        self.duration_ms = duration_ms
        self.calls: list[Task] = []
        self._failures: deque[BaseException | None] = deque(failures)

    def fail_next(self, error: BaseException | None = None) -> None:
        self._failures.append(
            error
            or BackendExecutionError(
                f"{self.backend.value} simulated failure",
                should_fallback=True,
            ),
        )

    async def execute_task(self, task: Task) -> BackendResult:
        self.calls.append(task)
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)
        if self._failures:
            error = self._failures.popleft()
            if error is not None:
                raise error
        tokens = max(1, math.ceil(len(task.description) / 4))
        return BackendResult(
            success=True,
            backend=self.backend,
            duration_ms=self.duration_ms,
            tokens=tokens,
            cost=estimate_api_cost(tokens) if self.backend == Backend.API else 0.0,
            output_path=task.output_path,
            response=f"[{self.backend.value}] {task.description}",
        )


def default_adapters() -> dict[Backend, SimulatedBackend]:
    return {backend: SimulatedBackend(backend) for backend in Backend}
