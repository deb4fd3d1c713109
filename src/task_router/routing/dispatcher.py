"""Single integration point between routing decisions and backend adapters."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import replace

from task_router.routing.budget import UsageLedger
from task_router.routing.circuit_breaker import CircuitBreaker
from task_router.routing.collaborators import AdaptiveHistory, BackendAdapter
from task_router.routing.errors import AllFallbacksExhausted, CircuitOpen, RateLimited
from task_router.routing.failure_classifier import classify_dispatch_failure, stamp_classification
from task_router.routing.models import Backend, BackendResult, ErrorKind, Scoring, Task
from task_router.routing.rate_governor import RateGovernor

logger = logging.getLogger(__name__)


def next_fallback(
    backend: Backend,
    chain: tuple[Backend, ...] = tuple(Backend),
) -> Backend | None:
    """Next backend of the static chain; off-chain backends fall to local."""

    if backend == Backend.LOCAL:
        return None
    if backend not in chain:
        return Backend.LOCAL
    index = chain.index(backend)
    if index + 1 < len(chain):
        return chain[index + 1]
    return None


class Dispatcher:
    """Applies breaker and governor gates, invokes adapters, records outcomes.

    Fallback substitution walks the static chain in an explicit loop bounded by
    the chain length.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        adapters: Mapping[Backend, BackendAdapter],
        circuit_breaker: CircuitBreaker,
        rate_governor: RateGovernor,
        monitor: AdaptiveHistory | None = None,
        ledger: UsageLedger | None = None,
        fallback_chain: tuple[Backend, ...] = tuple(Backend),
        timeout_seconds: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.adapters = dict(adapters)
        self.circuit_breaker = circuit_breaker
        self.rate_governor = rate_governor
        self.monitor = monitor
        self.ledger = ledger
        self.fallback_chain = fallback_chain
        self.timeout_seconds = timeout_seconds
        self._sleep = sleep

    def next_fallback(self, backend: Backend) -> Backend | None:
        return next_fallback(backend, self.fallback_chain)

    async def execute_with_backend(
        self,
        backend: Backend,
        task: Task,
        scoring: Scoring | None = None,
    ) -> BackendResult:
        """Run `task` on `backend`, substituting fallbacks on soft or eligible failures.

        Raises the adapter error unchanged when it is not fallback-eligible and
        `AllFallbacksExhausted` when the chain runs out.
        """

        attempted: list[Backend] = []
        first_error: BaseException | None = None
        last_error: BaseException | None = None
        current: Backend | None = backend
        max_attempts = len(self.fallback_chain) + 2

        for _ in range(max_attempts):
            if current is None:
                break
            attempted.append(current)

            adapter = self.adapters.get(current)
            if adapter is None:
                logger.warning("No adapter configured for %s", current.value)
                current = self._substitute(current, "no adapter")
                continue

            if not self.circuit_breaker.can_execute(current):
                last_error = CircuitOpen(current)
                first_error = first_error or last_error
                current = self._substitute(current, "circuit open")
                continue

            decision = self.rate_governor.can_use(current)
            if not decision.allowed:
                # A half-open probe claimed above is returned unsent.
                self.circuit_breaker.release_probe(current)
                last_error = RateLimited(
                    current,
                    decision.reason,
                    suggested_backend=decision.suggested_backend,
                )
                first_error = first_error or last_error
                current = self._substitute(current, f"rate limited: {decision.reason}")
                continue

            started = time.monotonic()
            try:
                if decision.delay_ms:
                    logger.info(
                        "Soft rate limit delay %d ms for %s (%s)",
                        decision.delay_ms,
                        current.value,
                        decision.reason,
                    )
                    await self._sleep(decision.delay_ms / 1000)
                    started = time.monotonic()
                result = await self._invoke(adapter, task)
            except Exception as error:
                duration_ms = int((time.monotonic() - started) * 1000)
                classification = classify_dispatch_failure(error)
                stamp_classification(error, classification)
                self._record_failure(current, task, error, classification.kind, duration_ms)
                logger.warning(
                    "Backend %s failed (%s): %s",
                    current.value,
                    classification.kind.value,
                    error,
                    extra={"classification": classification.to_log_details()},
                )
                if not classification.fallback_eligible:
                    raise
                first_error = first_error or error
                last_error = error
                current = self._substitute(current, classification.kind.value)
                continue
            except BaseException:
                self.circuit_breaker.release_probe(current)
                raise

            duration_ms = result.duration_ms or int((time.monotonic() - started) * 1000)
            self._record_success(current, task, result, duration_ms)
            return replace(result, backend=current, attempted=tuple(attempted))

        raise AllFallbacksExhausted(
            attempted,
            original_error=str(first_error) if first_error is not None else None,
            last_error=last_error,
        )

    async def _invoke(self, adapter: BackendAdapter, task: Task) -> BackendResult:
        if self.timeout_seconds:
            return await asyncio.wait_for(adapter.execute_task(task), timeout=self.timeout_seconds)
        return await adapter.execute_task(task)

    def _substitute(self, backend: Backend, reason: str) -> Backend | None:
        fallback = self.next_fallback(backend)
        if fallback is None:
            logger.warning("No fallback after %s (%s)", backend.value, reason)
        else:
            logger.warning("Fallback %s -> %s (%s)", backend.value, fallback.value, reason)
        return fallback

    def _record_success(
        self,
        backend: Backend,
        task: Task,
        result: BackendResult,
        duration_ms: int,
    ) -> None:
        self.circuit_breaker.record_success(backend)
        self.rate_governor.record_request(backend, success=True)
        if self.monitor is not None:
            self.monitor.record_result(
                backend,
                task,
                success=True,
                duration_ms=duration_ms,
                tokens=result.tokens,
            )
        if self.ledger is not None:
            self.ledger.record_usage(backend, result.tokens)

    def _record_failure(
        self,
        backend: Backend,
        task: Task,
        error: BaseException,
        kind: ErrorKind,
        duration_ms: int,
    ) -> None:
        self.circuit_breaker.record_failure(backend, kind=kind)
        self.rate_governor.record_request(backend, success=False)
        if kind == ErrorKind.RATE_LIMITED:
            self.rate_governor.record_throttle(
                backend,
                {"error": str(error), "detected_by": "dispatcher"},
            )
        if self.monitor is not None:
            self.monitor.record_result(
                backend,
                task,
                success=False,
                duration_ms=duration_ms,
            )
