"""Admission control and dispatch across execution backends.

Requests pass through four gates before any backend runs them: the scoring
engine, the backend selector (budget, rate and circuit availability plus the
ordered selection rules), the admission queue for low-urgency work, and the
dispatcher, which re-checks the circuit breaker and rate governor at call time
and walks the static fallback chain on eligible failures.

Every stateful component is an explicit instance owned by `TaskRouter`;
nothing is shared at module level, so tests build isolated routers with
in-memory snapshot stores.
"""
