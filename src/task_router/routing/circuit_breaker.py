"""Per-backend circuit breaker with closed/open/half-open states."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any

from task_router.config import CircuitBreakerSettings
from task_router.routing.models import Backend, BreakerView, CircuitStatus, ErrorKind
from task_router.storage.common import from_iso, from_optional_iso, to_iso, utc_now
from task_router.storage.snapshots import SnapshotStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _BreakerState:
    state: CircuitStatus = CircuitStatus.CLOSED
    failures: list[datetime] = field(default_factory=list)
    last_failure: datetime | None = None
    cooldown_ends: datetime | None = None
    probe_active: bool = False
    probe_failures: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "failures": [to_iso(failure) for failure in self.failures],
            "last_failure": to_iso(self.last_failure),
            "cooldown_ends": to_iso(self.cooldown_ends),
            "probe_active": self.probe_active,
            "probe_failures": self.probe_failures,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> _BreakerState:
        return cls(
            state=CircuitStatus(raw.get("state") or CircuitStatus.CLOSED.value),
            failures=[from_iso(value) for value in raw.get("failures") or []],
            last_failure=from_optional_iso(raw.get("last_failure")),
            cooldown_ends=from_optional_iso(raw.get("cooldown_ends")),
            # An in-flight probe does not survive a restart.
            probe_active=False,
            probe_failures=int(raw.get("probe_failures", 0)),
        )


class CircuitBreaker:
    """Gates backend attempts on recent failure history.

    `record_success` and `record_failure` are called by the dispatcher only.
    Every mutation is written through to the snapshot store.
    """

    def __init__(
        self,
        *,
        settings: CircuitBreakerSettings,
        store: SnapshotStore,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = replace(settings)
        self.store = store
        self._clock = clock
        self._breakers: dict[Backend, _BreakerState] = {}
        self._load()

    def can_execute(self, backend: Backend) -> bool:
        """Dispatcher gate; claims the single half-open probe when granted."""

        if not self.settings.enabled:
            return True
        breaker = self._ensure(backend)
        self._check_cooldown_expiry(backend, breaker)
        if breaker.state == CircuitStatus.CLOSED:
            return True
        if breaker.state == CircuitStatus.OPEN:
            return False
        if breaker.probe_active:
            return False
        breaker.probe_active = True
        logger.info("Circuit breaker %s: half-open probe allowed", backend.value)
        self._save()
        return True

    def is_available(self, backend: Backend) -> bool:
        """Side-effect-free availability read used during selection."""

        if not self.settings.enabled:
            return True
        breaker = self._breakers.get(backend)
        if breaker is None:
            return True
        if breaker.state == CircuitStatus.CLOSED:
            return True
        if breaker.state == CircuitStatus.OPEN and not self._cooldown_elapsed(breaker):
            return False
        return not breaker.probe_active

    def record_success(self, backend: Backend) -> None:
        breaker = self._ensure(backend)
        self._check_cooldown_expiry(backend, breaker)
        if breaker.state == CircuitStatus.HALF_OPEN:
            breaker.state = CircuitStatus.CLOSED
            breaker.failures = []
            breaker.cooldown_ends = None
            breaker.probe_active = False
            breaker.probe_failures = 0
            logger.info(
                "Circuit breaker %s: half-open -> closed (recovery confirmed)",
                backend.value,
            )
            self._save()
            return
        if breaker.state == CircuitStatus.CLOSED and breaker.failures:
            breaker.failures = []
            self._save()

    def record_failure(
        self,
        backend: Backend,
        *,
        kind: ErrorKind | None = None,
        probe: bool = False,
    ) -> None:
        """Record a failed attempt; `probe=True` failures never count toward the threshold."""

        breaker = self._ensure(backend)
        now = self._clock()
        breaker.last_failure = now
        self._check_cooldown_expiry(backend, breaker)

        if breaker.state == CircuitStatus.HALF_OPEN:
            breaker.probe_failures += 1
            cooldown = self._probe_cooldown(breaker.probe_failures)
            breaker.state = CircuitStatus.OPEN
            breaker.cooldown_ends = now + cooldown
            breaker.probe_active = False
            logger.warning(
                "Circuit breaker %s: half-open -> open (probe failed, cooldown %ss)",
                backend.value,
                int(cooldown.total_seconds()),
            )
            self._save()
            return

        if probe:
            logger.info("Circuit breaker %s: probe failure not counted", backend.value)
            self._save()
            return

        breaker.failures.append(now)
        self._prune_failures(breaker, now)
        if (
            breaker.state == CircuitStatus.CLOSED
            and len(breaker.failures) >= self.settings.failure_threshold
        ):
            breaker.state = CircuitStatus.OPEN
            breaker.cooldown_ends = now + timedelta(seconds=self.settings.cooldown_seconds)
            logger.warning(
                "Circuit breaker %s: closed -> open (%d failures in window, last kind=%s)",
                backend.value,
                len(breaker.failures),
                kind.value if kind else "unknown",
            )
        self._save()

    def release_probe(self, backend: Backend) -> None:
        """Return a claimed half-open probe that was never sent."""

        breaker = self._breakers.get(backend)
        if breaker is None or not breaker.probe_active:
            return
        breaker.probe_active = False
        logger.info("Circuit breaker %s: half-open probe released unsent", backend.value)
        self._save()

    def get_state(self, backend: Backend) -> BreakerView:
        breaker = self._ensure(backend)
        self._check_cooldown_expiry(backend, breaker)
        return BreakerView(
            state=breaker.state,
            failures=len(breaker.failures),
            last_failure=breaker.last_failure,
            cooldown_ends=breaker.cooldown_ends,
            probe_failures=breaker.probe_failures,
        )

    def get_all(self) -> dict[Backend, BreakerView]:
        return {backend: self.get_state(backend) for backend in Backend}

    def reset(self, backend: Backend) -> None:
        """Force the breaker back to closed and forget its history."""

        self._breakers[backend] = _BreakerState()
        logger.info("Circuit breaker %s: manually reset to closed", backend.value)
        self._save()

    def configure(
        self,
        *,
        failure_threshold: int | None = None,
        failure_window_seconds: int | None = None,
        cooldown_seconds: int | None = None,
        max_cooldown_seconds: int | None = None,
    ) -> None:
        if failure_threshold:
            self.settings.failure_threshold = failure_threshold
        if failure_window_seconds:
            self.settings.failure_window_seconds = failure_window_seconds
        if cooldown_seconds:
            self.settings.cooldown_seconds = cooldown_seconds
        if max_cooldown_seconds:
            self.settings.max_cooldown_seconds = max_cooldown_seconds

    def snapshot(self) -> dict[str, Any]:
        return {
            "breakers": {
                backend.value: breaker.to_dict() for backend, breaker in self._breakers.items()
            },
            "last_saved": to_iso(self._clock()),
        }

    def _ensure(self, backend: Backend) -> _BreakerState:
        breaker = self._breakers.get(backend)
        if breaker is None:
            breaker = _BreakerState()
            self._breakers[backend] = breaker
        return breaker

    def _cooldown_elapsed(self, breaker: _BreakerState) -> bool:
        return breaker.cooldown_ends is not None and self._clock() >= breaker.cooldown_ends

    def _check_cooldown_expiry(self, backend: Backend, breaker: _BreakerState) -> None:
        if breaker.state == CircuitStatus.OPEN and self._cooldown_elapsed(breaker):
            breaker.state = CircuitStatus.HALF_OPEN
            breaker.probe_active = False
            logger.info("Circuit breaker %s: open -> half-open (cooldown expired)", backend.value)
            self._save()

    def _prune_failures(self, breaker: _BreakerState, now: datetime) -> None:
        cutoff = now - timedelta(seconds=self.settings.failure_window_seconds)
        breaker.failures = [failure for failure in breaker.failures if failure > cutoff]

    def _probe_cooldown(self, probe_failures: int) -> timedelta:
        seconds = min(
            self.settings.cooldown_seconds * (2**probe_failures),
            self.settings.max_cooldown_seconds,
        )
        return timedelta(seconds=seconds)

    def _load(self) -> None:
        snapshot = self.store.load()
        if not snapshot:
            logger.debug("Circuit breaker: no saved state, starting fresh")
            return
        for name, raw in (snapshot.get("breakers") or {}).items():
            try:
                backend = Backend(name)
            except ValueError:
                logger.warning("Circuit breaker: ignoring unknown backend %r in snapshot", name)
                continue
            self._breakers[backend] = _BreakerState.from_dict(raw)
        logger.debug("Circuit breaker: loaded state for %d backends", len(self._breakers))

    def _save(self) -> None:
        self.store.save(self.snapshot())
