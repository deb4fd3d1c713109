from __future__ import annotations

from datetime import timedelta

import allure

from task_router.config import CircuitBreakerSettings
from task_router.routing.circuit_breaker import CircuitBreaker
from task_router.routing.models import Backend, CircuitStatus, ErrorKind
from task_router.storage.snapshots import MemorySnapshotStore

pytestmark = [
    allure.epic("Task Routing"),
    allure.feature("Circuit Breaker"),
]


def _breaker(clock, store=None, **overrides) -> CircuitBreaker:
    settings = CircuitBreakerSettings(
        failure_threshold=overrides.pop("failure_threshold", 3),
        **overrides,
    )
    return CircuitBreaker(settings=settings, store=store or MemorySnapshotStore(), clock=clock)


def _trip(breaker: CircuitBreaker, backend: Backend = Backend.CODEX, count: int = 3) -> None:
    for _ in range(count):
        breaker.record_failure(backend, kind=ErrorKind.OTHER)


def test_opens_after_threshold_failures(clock) -> None:
    breaker = _breaker(clock)

    _trip(breaker, count=2)
    assert breaker.can_execute(Backend.CODEX) is True

    breaker.record_failure(Backend.CODEX, kind=ErrorKind.OTHER)

    view = breaker.get_state(Backend.CODEX)
    assert view.state == CircuitStatus.OPEN
    assert view.failures == 3
    assert view.cooldown_ends == clock() + timedelta(seconds=600)
    assert breaker.can_execute(Backend.CODEX) is False
    assert breaker.can_execute(Backend.CLAUDE_CODE) is True


def test_half_open_allows_exactly_one_probe(clock) -> None:
    breaker = _breaker(clock)
    _trip(breaker)

    clock.advance(seconds=600)

    assert breaker.is_available(Backend.CODEX) is True
    assert breaker.can_execute(Backend.CODEX) is True
    assert breaker.get_state(Backend.CODEX).state == CircuitStatus.HALF_OPEN
    assert breaker.can_execute(Backend.CODEX) is False
    assert breaker.is_available(Backend.CODEX) is False


def test_probe_success_closes_breaker(clock) -> None:
    breaker = _breaker(clock)
    _trip(breaker)
    clock.advance(seconds=600)
    assert breaker.can_execute(Backend.CODEX) is True

    breaker.record_success(Backend.CODEX)

    view = breaker.get_state(Backend.CODEX)
    assert view.state == CircuitStatus.CLOSED
    assert view.failures == 0
    assert view.cooldown_ends is None
    assert view.probe_failures == 0


def test_success_while_closed_clears_failures(clock) -> None:
    breaker = _breaker(clock)
    _trip(breaker, count=2)

    breaker.record_success(Backend.CODEX)
    _trip(breaker, count=2)

    assert breaker.get_state(Backend.CODEX).state == CircuitStatus.CLOSED
    assert breaker.get_state(Backend.CODEX).failures == 2


def test_failed_probe_doubles_cooldown_up_to_cap(clock) -> None:
    breaker = _breaker(clock, max_cooldown_seconds=2000)
    _trip(breaker)

    clock.advance(seconds=600)
    assert breaker.can_execute(Backend.CODEX) is True
    breaker.record_failure(Backend.CODEX, probe=True)

    view = breaker.get_state(Backend.CODEX)
    assert view.state == CircuitStatus.OPEN
    assert view.probe_failures == 1
    assert (view.cooldown_ends - clock()).total_seconds() == 1200

    clock.advance(seconds=1200)
    assert breaker.can_execute(Backend.CODEX) is True
    breaker.record_failure(Backend.CODEX, probe=True)

    view = breaker.get_state(Backend.CODEX)
    assert view.probe_failures == 2
    assert (view.cooldown_ends - clock()).total_seconds() == 2000


def test_probe_flagged_failures_do_not_count_while_closed(clock) -> None:
    breaker = _breaker(clock)

    for _ in range(5):
        breaker.record_failure(Backend.API, probe=True)

    view = breaker.get_state(Backend.API)
    assert view.state == CircuitStatus.CLOSED
    assert view.failures == 0
    assert view.last_failure == clock()


def test_failures_outside_window_are_pruned(clock) -> None:
    breaker = _breaker(clock)
    _trip(breaker, count=2)

    clock.advance(minutes=16)
    breaker.record_failure(Backend.CODEX)

    view = breaker.get_state(Backend.CODEX)
    assert view.state == CircuitStatus.CLOSED
    assert view.failures == 1


def test_is_available_has_no_side_effects(clock) -> None:
    store = MemorySnapshotStore()
    breaker = _breaker(clock, store=store)
    _trip(breaker)
    clock.advance(seconds=600)
    saves_before = store.save_count

    assert breaker.is_available(Backend.CODEX) is True
    assert breaker.is_available(Backend.CODEX) is True

    assert store.save_count == saves_before
    assert breaker.can_execute(Backend.CODEX) is True


def test_state_survives_reload_from_store(clock) -> None:
    store = MemorySnapshotStore()
    _trip(_breaker(clock, store=store))

    reloaded = _breaker(clock, store=store)

    view = reloaded.get_state(Backend.CODEX)
    assert view.state == CircuitStatus.OPEN
    assert view.failures == 3
    assert reloaded.can_execute(Backend.CODEX) is False


def test_released_half_open_trial_can_be_claimed_again(clock) -> None:
    breaker = _breaker(clock)
    _trip(breaker)
    clock.advance(seconds=601)
    assert breaker.can_execute(Backend.CODEX) is True
    assert breaker.is_available(Backend.CODEX) is False

    breaker.release_probe(Backend.CODEX)

    assert breaker.get_state(Backend.CODEX).state == CircuitStatus.HALF_OPEN
    assert breaker.is_available(Backend.CODEX) is True
    assert breaker.can_execute(Backend.CODEX) is True


def test_claimed_half_open_trial_does_not_survive_reload(clock) -> None:
    store = MemorySnapshotStore()
    breaker = _breaker(clock, store=store)
    _trip(breaker)
    clock.advance(seconds=601)
    assert breaker.can_execute(Backend.CODEX) is True

    reloaded = _breaker(clock, store=store)

    assert reloaded.get_state(Backend.CODEX).state == CircuitStatus.HALF_OPEN
    assert reloaded.can_execute(Backend.CODEX) is True


def test_reset_closes_breaker(clock) -> None:
    breaker = _breaker(clock)
    _trip(breaker)

    breaker.reset(Backend.CODEX)

    assert breaker.get_state(Backend.CODEX).state == CircuitStatus.CLOSED
    assert breaker.can_execute(Backend.CODEX) is True


def test_disabled_breaker_always_allows(clock) -> None:
    breaker = _breaker(clock, enabled=False)
    _trip(breaker, count=10)

    assert breaker.can_execute(Backend.CODEX) is True
    assert breaker.is_available(Backend.CODEX) is True


def test_get_all_reports_every_backend(clock) -> None:
    breaker = _breaker(clock)

    states = breaker.get_all()

    assert set(states) == set(Backend)
    assert all(view.state == CircuitStatus.CLOSED for view in states.values())
