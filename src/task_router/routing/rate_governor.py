"""Per-backend request-rate admission control with throttle learning."""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any

from task_router.config import RateGovernorSettings
from task_router.routing.models import Backend, RateDecision
from task_router.storage.common import from_iso, from_optional_iso, to_iso, utc_now
from task_router.storage.snapshots import SnapshotStore

logger = logging.getLogger(__name__)

EFFECTIVENESS_THROTTLE_PENALTY = 20
RECENT_THROTTLE_SAMPLE = 5
RECOMMEND_THROTTLE_COUNT = 3
HIGH_UTILIZATION = 0.9
HIGH_GLOBAL_THROTTLES = 10
MAX_THROTTLE_EVENTS = 50


@dataclass(slots=True)
class _RequestRecord:
    timestamp: datetime
    success: bool


@dataclass(slots=True)
class ThrottleEvent:
    """One backend-reported throttle and the limit it produced."""

    timestamp: datetime
    pre_throttle_count: int
    previous_limit: int | None
    new_limit: int
    cooldown_until: datetime
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": to_iso(self.timestamp),
            "pre_throttle_count": self.pre_throttle_count,
            "previous_limit": self.previous_limit,
            "new_limit": self.new_limit,
            "cooldown_until": to_iso(self.cooldown_until),
            "details": dict(self.details),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ThrottleEvent:
        return cls(
            timestamp=from_iso(raw["timestamp"]),
            pre_throttle_count=int(raw.get("pre_throttle_count", 0)),
            previous_limit=raw.get("previous_limit"),
            new_limit=int(raw["new_limit"]),
            cooldown_until=from_iso(raw["cooldown_until"]),
            details=dict(raw.get("details") or {}),
        )


@dataclass(slots=True)
class _BackendWindow:
    baseline_limit: int | None
    current_limit: int | None
    requests: list[_RequestRecord] = field(default_factory=list)
    throttle_events: list[ThrottleEvent] = field(default_factory=list)
    last_throttle: datetime | None = None
    cooldown_until: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "baseline_limit": self.baseline_limit,
            "current_limit": self.current_limit,
            "requests": [
                {"timestamp": to_iso(record.timestamp), "success": record.success}
                for record in self.requests
            ],
            "throttle_events": [event.to_dict() for event in self.throttle_events],
            "last_throttle": to_iso(self.last_throttle),
            "cooldown_until": to_iso(self.cooldown_until),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any], *, baseline_limit: int | None) -> _BackendWindow:
        return cls(
            baseline_limit=baseline_limit,
            current_limit=raw.get("current_limit", baseline_limit),
            requests=[
                _RequestRecord(timestamp=from_iso(item["timestamp"]), success=bool(item["success"]))
                for item in raw.get("requests") or []
            ],
            throttle_events=[
                ThrottleEvent.from_dict(item) for item in raw.get("throttle_events") or []
            ],
            last_throttle=from_optional_iso(raw.get("last_throttle")),
            cooldown_until=from_optional_iso(raw.get("cooldown_until")),
        )


@dataclass(slots=True)
class RateBackendStatus:
    """Per-backend rate governor status row."""

    backend: Backend
    requests_in_window: int
    current_limit: int | None
    default_limit: int | None
    utilization: float
    throttle_events: int
    last_throttle: datetime | None
    in_cooldown: bool
    cooldown_until: datetime | None
    can_use: RateDecision
    success_rate: float


@dataclass(slots=True)
class RateStatus:
    """Aggregate governor status for CLI and router reports."""

    backends: dict[Backend, RateBackendStatus]
    total_requests: int
    total_throttles: int
    average_recovery_minutes: int
    most_problematic_backend: Backend | None
    last_updated: datetime | None


@dataclass(slots=True)
class _Learnings:
    total_throttle_events: int = 0
    average_recovery_seconds: float = 0.0
    most_problematic_backend: Backend | None = None
    adaptive_tightening: dict[str, dict[str, Any]] = field(default_factory=dict)
    last_analysis_date: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_throttle_events": self.total_throttle_events,
            "average_recovery_seconds": self.average_recovery_seconds,
            "most_problematic_backend": (
                self.most_problematic_backend.value if self.most_problematic_backend else None
            ),
            "adaptive_tightening": {
                key: dict(value) for key, value in self.adaptive_tightening.items()
            },
            "last_analysis_date": to_iso(self.last_analysis_date),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> _Learnings:
        problematic = raw.get("most_problematic_backend")
        return cls(
            total_throttle_events=int(raw.get("total_throttle_events", 0)),
            average_recovery_seconds=float(raw.get("average_recovery_seconds", 0.0)),
            most_problematic_backend=Backend(problematic) if problematic else None,
            adaptive_tightening=dict(raw.get("adaptive_tightening") or {}),
            last_analysis_date=from_optional_iso(raw.get("last_analysis_date")),
        )


class RateGovernor:
    """Sliding-window request counter with soft and hard thresholds.

    Backend-reported throttles tighten a backend's limit for a cooldown period;
    once the cooldown expires without another throttle the configured baseline
    limit is restored.
    """

    def __init__(
        self,
        *,
        settings: RateGovernorSettings,
        store: SnapshotStore,
        fallback_chain: tuple[Backend, ...] = tuple(Backend),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = replace(settings, limits=dict(settings.limits))
        self.store = store
        self.fallback_chain = fallback_chain
        self._clock = clock
        self._backends: dict[Backend, _BackendWindow] = {}
        self._learnings = _Learnings()
        self._last_updated: datetime | None = None
        self._load()

    def can_use(self, backend: Backend) -> RateDecision:
        """Fresh admission check; never mutates counters beyond expiring old data."""

        self._clean_expired()
        window = self._ensure(backend)
        limit = window.current_limit
        if limit is None:
            return RateDecision(allowed=True)

        now = self._clock()
        if window.cooldown_until is not None and now < window.cooldown_until:
            return RateDecision(
                allowed=False,
                reason=f"Backend in throttle cooldown until {to_iso(window.cooldown_until)}",
                suggested_backend=self._suggest_fallback(backend),
            )

        count = len(window.requests)
        if count >= limit:
            return RateDecision(
                allowed=False,
                reason=f"Hard limit reached: {count}/{limit} requests per window",
                suggested_backend=self._suggest_fallback(backend),
            )

        soft_limit = math.floor(limit * self.settings.soft_limit_ratio)
        if count >= soft_limit:
            return RateDecision(
                allowed=True,
                delay_ms=self.settings.soft_delay_ms,
                reason=f"Soft limit: {count}/{soft_limit} requests per window, adding delay",
            )
        return RateDecision(allowed=True)

    def record_request(self, backend: Backend, *, success: bool = True) -> None:
        window = self._ensure(backend)
        window.requests.append(_RequestRecord(timestamp=self._clock(), success=success))
        logger.debug(
            "Rate governor %s: recorded %s request",
            backend.value,
            "successful" if success else "failed",
        )
        self._save()

    def record_throttle(self, backend: Backend, details: Mapping[str, Any] | None = None) -> None:
        """Tighten the backend limit after a backend-reported rate limit."""

        self._clean_expired()
        window = self._ensure(backend)
        now = self._clock()
        pre_throttle_count = len(window.requests)
        new_limit = max(1, math.floor(pre_throttle_count * self.settings.throttle_multiplier))
        cooldown_until = now + timedelta(seconds=self.settings.throttle_cooldown_seconds)
        event = ThrottleEvent(
            timestamp=now,
            pre_throttle_count=pre_throttle_count,
            previous_limit=window.current_limit,
            new_limit=new_limit,
            cooldown_until=cooldown_until,
            details=dict(details or {}),
        )
        window.throttle_events.append(event)
        if len(window.throttle_events) > MAX_THROTTLE_EVENTS:
            window.throttle_events = window.throttle_events[-MAX_THROTTLE_EVENTS:]
        window.current_limit = new_limit
        window.last_throttle = now
        window.cooldown_until = cooldown_until
        self._learnings.total_throttle_events += 1
        self._update_learnings()
        logger.warning(
            "Rate governor %s: throttled, limit %s -> %d (%d requests preceded throttle), "
            "cooldown until %s",
            backend.value,
            _format_limit(event.previous_limit),
            new_limit,
            pre_throttle_count,
            to_iso(cooldown_until),
        )
        self._save()

    def get_status(self) -> RateStatus:
        self._clean_expired()
        now = self._clock()
        rows: dict[Backend, RateBackendStatus] = {}
        total_requests = 0
        for backend in Backend:
            window = self._ensure(backend)
            count = len(window.requests)
            total_requests += count
            rows[backend] = RateBackendStatus(
                backend=backend,
                requests_in_window=count,
                current_limit=window.current_limit,
                default_limit=window.baseline_limit,
                utilization=_utilization_percent(count, window.current_limit),
                throttle_events=len(window.throttle_events),
                last_throttle=window.last_throttle,
                in_cooldown=window.cooldown_until is not None and now < window.cooldown_until,
                cooldown_until=window.cooldown_until,
                can_use=self.can_use(backend),
                success_rate=_success_rate(window.requests),
            )
        return RateStatus(
            backends=rows,
            total_requests=total_requests,
            total_throttles=self._learnings.total_throttle_events,
            average_recovery_minutes=round(self._learnings.average_recovery_seconds / 60),
            most_problematic_backend=self._learnings.most_problematic_backend,
            last_updated=self._last_updated,
        )

    def get_learnings(self) -> dict[str, Any]:
        """Return throttle learnings with recommendations and interval patterns."""

        self._clean_expired()
        insights = self._learnings.to_dict()
        recommendations: list[str] = []
        patterns: dict[str, dict[str, str]] = {}
        for backend, window in self._backends.items():
            throttle_count = len(window.throttle_events)
            if throttle_count > RECOMMEND_THROTTLE_COUNT:
                recommendations.append(
                    f"Consider increasing capacity or reducing usage for {backend.value} "
                    f"({throttle_count} throttle events)",
                )
            if window.current_limit:
                utilization = len(window.requests) / window.current_limit
                if utilization > HIGH_UTILIZATION:
                    recommendations.append(
                        f"{backend.value} is at {round(utilization * 100)}% capacity "
                        "- consider load balancing",
                    )
            if throttle_count >= 2:
                intervals = [
                    (current.timestamp - previous.timestamp).total_seconds()
                    for previous, current in zip(
                        window.throttle_events,
                        window.throttle_events[1:],
                        strict=False,
                    )
                ]
                average_interval = sum(intervals) / len(intervals)
                patterns[backend.value] = {
                    "throttle_frequency": f"Every {round(average_interval / 60)} minutes average",
                    "trend": "increasing" if throttle_count > RECENT_THROTTLE_SAMPLE else "stable",
                }

        total = self._learnings.total_throttle_events
        if total == 0:
            recommendations.append(
                "No throttle events recorded - current limits appear appropriate",
            )
        elif total > HIGH_GLOBAL_THROTTLES:
            recommendations.append(
                "High throttle frequency detected - consider reviewing usage patterns",
            )
        insights["recommendations"] = recommendations
        insights["patterns"] = patterns
        return insights

    def reset_backend(self, backend: Backend, limit: int | None = None) -> None:
        """Clear history and cooldown; restore the baseline or an explicit limit."""

        window = self._ensure(backend)
        window.current_limit = limit or window.baseline_limit
        window.cooldown_until = None
        window.requests = []
        logger.info(
            "Rate governor %s: reset to limit %s",
            backend.value,
            _format_limit(window.current_limit),
        )
        self._save()

    def adjust_limit(self, backend: Backend, limit: int) -> None:
        window = self._ensure(backend)
        previous = window.current_limit
        window.current_limit = max(1, limit)
        logger.info(
            "Rate governor %s: limit adjusted %s -> %d",
            backend.value,
            _format_limit(previous),
            window.current_limit,
        )
        self._save()

    def configure_limits(self, limits: Mapping[Backend | str, int | None]) -> None:
        """Replace baseline limits; `0` or `None` means unlimited."""

        for key, value in limits.items():
            backend = Backend(key)
            normalized = value or None
            self.settings.limits[backend.value] = normalized
            window = self._ensure(backend)
            window.baseline_limit = normalized
            window.current_limit = normalized
            logger.info(
                "Rate governor %s: configured limit %s per window",
                backend.value,
                _format_limit(normalized),
            )
        self._save()

    def snapshot(self) -> dict[str, Any]:
        return {
            "backends": {
                backend.value: window.to_dict() for backend, window in self._backends.items()
            },
            "learnings": self._learnings.to_dict(),
            "last_updated": to_iso(self._last_updated),
        }

    def _ensure(self, backend: Backend) -> _BackendWindow:
        window = self._backends.get(backend)
        if window is None:
            baseline = self.settings.limits.get(backend.value)
            window = _BackendWindow(baseline_limit=baseline, current_limit=baseline)
            self._backends[backend] = window
        return window

    def _clean_expired(self) -> None:
        now = self._clock()
        window_start = now - timedelta(seconds=self.settings.window_seconds)
        for backend, window in self._backends.items():
            window.requests = [
                record for record in window.requests if record.timestamp > window_start
            ]
            if window.cooldown_until is not None and now >= window.cooldown_until:
                window.cooldown_until = None
                window.current_limit = window.baseline_limit
                logger.info(
                    "Rate governor %s: throttle cooldown expired, limit restored to %s",
                    backend.value,
                    _format_limit(window.baseline_limit),
                )

    def _is_usable(self, backend: Backend) -> bool:
        window = self._ensure(backend)
        if window.current_limit is None:
            return True
        if window.cooldown_until is not None and self._clock() < window.cooldown_until:
            return False
        return len(window.requests) < window.current_limit

    def _suggest_fallback(self, backend: Backend) -> Backend:
        chain = self.fallback_chain
        if backend in chain:
            index = chain.index(backend)
            if index < len(chain) - 1:
                return chain[index + 1]
        for candidate in chain:
            if candidate != backend and self._is_usable(candidate):
                return candidate
        return Backend.LOCAL

    def _update_learnings(self) -> None:
        now = self._clock()
        recovery_total = 0.0
        recovery_count = 0
        throttle_counts: dict[Backend, int] = {}
        for backend, window in self._backends.items():
            throttle_counts[backend] = len(window.throttle_events)
            for previous, current in zip(
                window.throttle_events,
                window.throttle_events[1:],
                strict=False,
            ):
                recovery_total += (current.timestamp - previous.timestamp).total_seconds()
                recovery_count += 1
        if recovery_count:
            self._learnings.average_recovery_seconds = round(recovery_total / recovery_count)

        ranked = sorted(
            ((backend, count) for backend, count in throttle_counts.items() if count > 0),
            key=lambda item: item[1],
            reverse=True,
        )
        if ranked:
            self._learnings.most_problematic_backend = ranked[0][0]

        for backend, window in self._backends.items():
            if not window.throttle_events:
                continue
            recent = window.throttle_events[-RECENT_THROTTLE_SAMPLE:]
            average_pre_count = sum(event.pre_throttle_count for event in recent) / len(recent)
            self._learnings.adaptive_tightening[backend.value] = {
                "frequency": len(window.throttle_events),
                "avg_pre_throttle_count": round(average_pre_count),
                "current_limit": window.current_limit,
                "effectiveness": self._effectiveness(window, now),
            }
        self._learnings.last_analysis_date = now

    def _effectiveness(self, window: _BackendWindow, now: datetime) -> int:
        if not window.requests:
            return 100
        day_ago = now - timedelta(hours=24)
        recent_throttles = sum(1 for event in window.throttle_events if event.timestamp > day_ago)
        success_percent = _success_rate(window.requests)
        return max(0, round(success_percent - recent_throttles * EFFECTIVENESS_THROTTLE_PENALTY))

    def _load(self) -> None:
        snapshot = self.store.load()
        if not snapshot:
            logger.debug("Rate governor: no saved state, starting with configured limits")
            return
        for name, raw in (snapshot.get("backends") or {}).items():
            try:
                backend = Backend(name)
            except ValueError:
                logger.warning("Rate governor: ignoring unknown backend %r in snapshot", name)
                continue
            self._backends[backend] = _BackendWindow.from_dict(
                raw,
                baseline_limit=self.settings.limits.get(backend.value),
            )
        self._learnings = _Learnings.from_dict(snapshot.get("learnings") or {})
        self._last_updated = from_optional_iso(snapshot.get("last_updated"))
        self._clean_expired()

    def _save(self) -> None:
        self._last_updated = self._clock()
        self.store.save(self.snapshot())


def _success_rate(requests: list[_RequestRecord]) -> float:
    if not requests:
        return 100.0
    successes = sum(1 for record in requests if record.success)
    return round(successes / len(requests) * 100, 1)


def _utilization_percent(count: int, limit: int | None) -> float:
    if not limit:
        return 0.0
    return round(count / limit * 100, 1)


def _format_limit(limit: int | None) -> str:
    return "unlimited" if limit is None else str(limit)
