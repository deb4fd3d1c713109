"""Runtime configuration for routing, admission control and persistence."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

KNOWN_BACKENDS = ("claude_code", "codex", "api", "local")
STATE_BACKENDS = ("json", "sqlite", "memory")


@dataclass(slots=True)
class RoutingSettings:
    """Backend selection and fallback policy."""

    hybrid_enabled: bool = False
    adaptive_scoring_enabled: bool = True
    adaptive_confidence_floor: float = 70.0
    fast_learning_threshold: int = 20
    fast_learning_multiplier: float = 2.0
    initial_scores: dict[str, float] = field(
        default_factory=lambda: {"claude_code": 75.0, "codex": 65.0, "api": 60.0, "local": 55.0},
    )
    fallback_chain: tuple[str, ...] = KNOWN_BACKENDS
    confirmation_cost_usd: float = 2.0
    backend_timeout_seconds: float | None = None


@dataclass(slots=True)
class CircuitBreakerSettings:
    """Per-backend failure gate thresholds."""

    enabled: bool = True
    failure_threshold: int = 5
    failure_window_seconds: int = 15 * 60
    cooldown_seconds: int = 10 * 60
    max_cooldown_seconds: int = 80 * 60


@dataclass(slots=True)
class RateGovernorSettings:
    """Per-backend request-rate admission control."""

    window_seconds: int = 60 * 60
    limits: dict[str, int | None] = field(
        default_factory=lambda: {"claude_code": 20, "codex": 30, "api": None, "local": None},
    )
    soft_limit_ratio: float = 0.8
    soft_delay_ms: int = 5_000
    throttle_multiplier: float = 0.8
    throttle_cooldown_seconds: int = 15 * 60


@dataclass(slots=True)
class QueueSettings:
    """Admission queue and drip scheduler settings."""

    max_size: int = 10
    max_retries: int = 3
    backoff_base_minutes: float = 5.0
    overflow_downgrade_count: int = 3
    dead_letter_cap: int = 100
    dead_letter_retention_days: int = 7
    drip_min_minutes: int = 20
    drip_max_minutes: int = 60
    critical_check_seconds: float = 60.0


@dataclass(slots=True)
class PlannerSettings:
    """Plan decomposition and approval settings."""

    approval_threshold_usd: float = 2.0


@dataclass(slots=True)
class BudgetSettings:
    """Usage ledger limits used as the selection budget gate."""

    enabled_backends: tuple[str, ...] = KNOWN_BACKENDS
    claude_code_max_usage_percent: float = 80.0
    codex_max_usage_percent: float = 70.0
    api_daily_budget_usd: float = 10.0
    api_monthly_budget_usd: float = 100.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by component."""

    state_dir: Path = Path(".task_router")
    state_backend: str = "json"
    routing: RoutingSettings = field(default_factory=RoutingSettings)
    circuit_breaker: CircuitBreakerSettings = field(default_factory=CircuitBreakerSettings)
    rate_governor: RateGovernorSettings = field(default_factory=RateGovernorSettings)
    queue: QueueSettings = field(default_factory=QueueSettings)
    planner: PlannerSettings = field(default_factory=PlannerSettings)
    budget: BudgetSettings = field(default_factory=BudgetSettings)

    @classmethod
    def from_env(cls, state_dir: Path | None = None) -> Settings:
        """Load settings from environment with defaults suitable for local use."""

        timeout_raw = os.getenv("TASK_ROUTER_BACKEND_TIMEOUT_SECONDS", "").strip()
        return cls(
            state_dir=state_dir or Path(os.getenv("TASK_ROUTER_STATE_DIR", ".task_router")),
            state_backend=os.getenv("TASK_ROUTER_STATE_BACKEND", "json").strip().lower(),
            routing=RoutingSettings(
                hybrid_enabled=_env_bool("TASK_ROUTER_HYBRID_ENABLED", default=False),
                adaptive_scoring_enabled=_env_bool(
                    "TASK_ROUTER_ADAPTIVE_SCORING_ENABLED",
                    default=True,
                ),
                adaptive_confidence_floor=float(
                    os.getenv("TASK_ROUTER_ADAPTIVE_CONFIDENCE_FLOOR", "70"),
                ),
                fast_learning_threshold=int(
                    os.getenv("TASK_ROUTER_FAST_LEARNING_THRESHOLD", "20"),
                ),
                fast_learning_multiplier=float(
                    os.getenv("TASK_ROUTER_FAST_LEARNING_MULTIPLIER", "2"),
                ),
                fallback_chain=_env_csv(
                    "TASK_ROUTER_FALLBACK_CHAIN",
                    default=KNOWN_BACKENDS,
                ),
                confirmation_cost_usd=float(
                    os.getenv("TASK_ROUTER_CONFIRMATION_COST_USD", "2.0"),
                ),
                backend_timeout_seconds=float(timeout_raw) if timeout_raw else None,
            ),
            circuit_breaker=CircuitBreakerSettings(
                enabled=_env_bool("TASK_ROUTER_BREAKER_ENABLED", default=True),
                failure_threshold=int(os.getenv("TASK_ROUTER_BREAKER_FAILURE_THRESHOLD", "5")),
                failure_window_seconds=int(
                    os.getenv("TASK_ROUTER_BREAKER_FAILURE_WINDOW_SECONDS", "900"),
                ),
                cooldown_seconds=int(os.getenv("TASK_ROUTER_BREAKER_COOLDOWN_SECONDS", "600")),
                max_cooldown_seconds=int(
                    os.getenv("TASK_ROUTER_BREAKER_MAX_COOLDOWN_SECONDS", "4800"),
                ),
            ),
            rate_governor=RateGovernorSettings(
                window_seconds=int(os.getenv("TASK_ROUTER_RATE_WINDOW_SECONDS", "3600")),
                limits=_collect_rate_limits(),
                soft_limit_ratio=float(os.getenv("TASK_ROUTER_RATE_SOFT_RATIO", "0.8")),
                soft_delay_ms=int(os.getenv("TASK_ROUTER_RATE_SOFT_DELAY_MS", "5000")),
                throttle_multiplier=float(
                    os.getenv("TASK_ROUTER_RATE_THROTTLE_MULTIPLIER", "0.8"),
                ),
                throttle_cooldown_seconds=int(
                    os.getenv("TASK_ROUTER_RATE_THROTTLE_COOLDOWN_SECONDS", "900"),
                ),
            ),
            queue=QueueSettings(
                max_size=int(os.getenv("TASK_ROUTER_QUEUE_MAX_SIZE", "10")),
                max_retries=int(os.getenv("TASK_ROUTER_QUEUE_MAX_RETRIES", "3")),
                backoff_base_minutes=float(
                    os.getenv("TASK_ROUTER_QUEUE_BACKOFF_BASE_MINUTES", "5"),
                ),
                overflow_downgrade_count=int(
                    os.getenv("TASK_ROUTER_QUEUE_OVERFLOW_DOWNGRADE_COUNT", "3"),
                ),
                dead_letter_cap=int(os.getenv("TASK_ROUTER_DEAD_LETTER_CAP", "100")),
                dead_letter_retention_days=int(
                    os.getenv("TASK_ROUTER_DEAD_LETTER_RETENTION_DAYS", "7"),
                ),
                drip_min_minutes=int(os.getenv("TASK_ROUTER_DRIP_MIN_MINUTES", "20")),
                drip_max_minutes=int(os.getenv("TASK_ROUTER_DRIP_MAX_MINUTES", "60")),
                critical_check_seconds=float(
                    os.getenv("TASK_ROUTER_CRITICAL_CHECK_SECONDS", "60"),
                ),
            ),
            planner=PlannerSettings(
                approval_threshold_usd=float(
                    os.getenv("TASK_ROUTER_PLAN_APPROVAL_THRESHOLD_USD", "2.0"),
                ),
            ),
            budget=BudgetSettings(
                enabled_backends=_env_csv(
                    "TASK_ROUTER_ENABLED_BACKENDS",
                    default=KNOWN_BACKENDS,
                ),
                claude_code_max_usage_percent=float(
                    os.getenv("TASK_ROUTER_CLAUDE_CODE_MAX_USAGE_PERCENT", "80"),
                ),
                codex_max_usage_percent=float(
                    os.getenv("TASK_ROUTER_CODEX_MAX_USAGE_PERCENT", "70"),
                ),
                api_daily_budget_usd=float(os.getenv("TASK_ROUTER_API_DAILY_BUDGET_USD", "10")),
                api_monthly_budget_usd=float(
                    os.getenv("TASK_ROUTER_API_MONTHLY_BUDGET_USD", "100"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for inconsistent settings."""

        if self.state_backend not in STATE_BACKENDS:
            raise ValueError(
                f"Unsupported TASK_ROUTER_STATE_BACKEND: {self.state_backend!r}. "
                f"Use one of {STATE_BACKENDS}.",
            )
        if not self.routing.fallback_chain:
            raise ValueError("TASK_ROUTER_FALLBACK_CHAIN must list at least one backend.")
        for backend in (*self.routing.fallback_chain, *self.budget.enabled_backends):
            _validate_backend_name(backend)
        if len(set(self.routing.fallback_chain)) != len(self.routing.fallback_chain):
            raise ValueError("TASK_ROUTER_FALLBACK_CHAIN must not repeat backends.")
        for backend, limit in self.rate_governor.limits.items():
            _validate_backend_name(backend)
            if limit is not None and limit < 0:
                raise ValueError(f"Rate limit for {backend!r} must be >= 0, got {limit}.")
        if self.circuit_breaker.failure_threshold <= 0:
            raise ValueError("TASK_ROUTER_BREAKER_FAILURE_THRESHOLD must be > 0.")
        if self.circuit_breaker.cooldown_seconds <= 0:
            raise ValueError("TASK_ROUTER_BREAKER_COOLDOWN_SECONDS must be > 0.")
        if self.circuit_breaker.max_cooldown_seconds < self.circuit_breaker.cooldown_seconds:
            raise ValueError("Breaker max cooldown must be >= base cooldown.")
        if self.rate_governor.window_seconds <= 0:
            raise ValueError("TASK_ROUTER_RATE_WINDOW_SECONDS must be > 0.")
        if not 0 < self.rate_governor.soft_limit_ratio <= 1:
            raise ValueError("TASK_ROUTER_RATE_SOFT_RATIO must be in (0, 1].")
        if self.queue.max_size <= 0:
            raise ValueError("TASK_ROUTER_QUEUE_MAX_SIZE must be > 0.")
        if self.queue.max_retries <= 0:
            raise ValueError("TASK_ROUTER_QUEUE_MAX_RETRIES must be > 0.")
        queue = self.queue
        if queue.drip_min_minutes <= 0 or queue.drip_min_minutes > queue.drip_max_minutes:
            raise ValueError(
                "Drip interval must satisfy 0 < TASK_ROUTER_DRIP_MIN_MINUTES "
                "<= TASK_ROUTER_DRIP_MAX_MINUTES.",
            )
        if self.queue.critical_check_seconds <= 0:
            raise ValueError("TASK_ROUTER_CRITICAL_CHECK_SECONDS must be > 0.")


def _collect_rate_limits() -> dict[str, int | None]:
    """Parse `TASK_ROUTER_RATE_LIMITS`.

    Format: `backend:requests_per_window` entries separated by `,`.
    `0` or `none` means unlimited. Backends not listed keep their defaults.
    """

    limits: dict[str, int | None] = dict(RateGovernorSettings().limits)
    raw = os.getenv("TASK_ROUTER_RATE_LIMITS", "").strip()
    if not raw:
        return limits
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if ":" not in token:
            raise ValueError(
                f"Invalid TASK_ROUTER_RATE_LIMITS entry: {token!r}. "
                "Expected format '<backend>:<requests>'.",
            )
        backend, value = (piece.strip() for piece in token.split(":", 1))
        backend = backend.lower()
        _validate_backend_name(backend)
        if value.lower() in {"", "none", "0", "inf", "unlimited"}:
            limits[backend] = None
            continue
        try:
            limits[backend] = int(value)
        except ValueError as error:
            raise ValueError(
                f"Invalid TASK_ROUTER_RATE_LIMITS value for {backend!r}: {value!r}",
            ) from error
    return limits


def _validate_backend_name(value: str) -> None:
    if value not in KNOWN_BACKENDS:
        raise ValueError(f"Unknown backend: {value!r}. Use one of {KNOWN_BACKENDS}.")


def _env_csv(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return tuple(part.strip().lower() for part in raw.split(",") if part.strip())


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
