"""Error taxonomy for routing and dispatch.

Only `ValidationError` and `AllFallbacksExhausted` propagate out of
`TaskRouter.route`; the rest are absorbed by the selector and dispatcher.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from task_router.routing.models import Backend, ErrorKind


class TaskRouterError(Exception):
    """Base exception for task router errors."""


class ValidationError(TaskRouterError, ValueError):
    """Malformed task or plan; fatal and never retried."""


class PlanValidationError(ValidationError):
    """Plan rejected at construction time."""


class PlanNotFoundError(TaskRouterError, LookupError):
    """Pending plan id is unknown or already resolved."""


class BudgetExceeded(TaskRouterError):
    """Backend excluded from selection by the budget ledger."""

    def __init__(self, backend: Backend, reason: str) -> None:
        super().__init__(f"Budget exceeded for {backend.value}: {reason}")
        self.backend = backend
        self.reason = reason


class RateLimited(TaskRouterError):
    """Rate governor rejected the backend."""

    def __init__(
        self,
        backend: Backend,
        reason: str | None,
        *,
        suggested_backend: Backend | None = None,
    ) -> None:
        super().__init__(f"Backend {backend.value} rate limited: {reason or 'limit reached'}")
        self.backend = backend
        self.reason = reason
        self.suggested_backend = suggested_backend


class CircuitOpen(TaskRouterError):
    """Circuit breaker is open for the backend."""

    def __init__(self, backend: Backend) -> None:
        super().__init__(f"Backend {backend.value} circuit breaker is open")
        self.backend = backend


class BackendExecutionError(TaskRouterError):
    """Backend adapter failure with classification hints."""

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        timeout: bool = False,
        should_fallback: bool = False,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.timeout = timeout
        self.should_fallback = should_fallback
        self.kind: ErrorKind | None = None
        self.backend: Backend | None = None


class DependencyBlocked(TaskRouterError):
    """Plan step whose critical dependency failed; reported per step."""

    def __init__(self, step_id: str, blocking: Sequence[str]) -> None:
        blockers = ", ".join(blocking) if blocking else "unknown"
        super().__init__(f"Blocked by failed dependency: {blockers}")
        self.step_id = step_id
        self.blocking = tuple(blocking)


class AllFallbacksExhausted(TaskRouterError):
    """Every backend in the fallback chain was tried and failed."""

    def __init__(
        self,
        attempted: Sequence[Backend],
        *,
        original_error: str | None,
        last_error: BaseException | None = None,
    ) -> None:
        tried = ", ".join(backend.value for backend in attempted) or "none"
        detail = original_error or (str(last_error) if last_error is not None else "unknown")
        super().__init__(f"All fallbacks exhausted (tried: {tried}). Original error: {detail}")
        self.attempted = tuple(attempted)
        self.original_error = original_error
        self.last_error = last_error
