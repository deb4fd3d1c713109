"""Usage ledger acting as the selection budget gate."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from task_router.config import BudgetSettings
from task_router.routing.models import Backend, BudgetDecision
from task_router.routing.pricing import ModelPricing, estimate_api_cost
from task_router.storage.common import utc_now

logger = logging.getLogger(__name__)

SESSION_PERIOD = timedelta(hours=5)
WEEKLY_PERIOD = timedelta(days=7)
DAILY_PERIOD = timedelta(days=1)
MONTHLY_PERIOD = timedelta(days=30)

# Subscription usage grows by tokens / 50k * 10 percent, at most 15 points per task.
_USAGE_TOKENS_PER_STEP = 50_000
_USAGE_PERCENT_PER_STEP = 10.0
_MAX_USAGE_INCREASE = 15.0


@dataclass(slots=True)
class SubscriptionUsage:
    """Session and weekly usage percentages of a subscription backend."""

    session_percent: float = 0.0
    weekly_percent: float = 0.0
    session_reset_at: datetime | None = None
    weekly_reset_at: datetime | None = None
    tasks_completed: int = 0


@dataclass(slots=True)
class ApiSpend:
    """Pay-per-token spend against daily and monthly budgets."""

    daily_usd: float = 0.0
    monthly_usd: float = 0.0
    daily_tokens: int = 0
    monthly_tokens: int = 0
    daily_reset_at: datetime | None = None
    monthly_reset_at: datetime | None = None
    tasks_completed: int = 0


class UsageLedger:
    """In-process usage accounting with periodic resets."""

    def __init__(
        self,
        *,
        settings: BudgetSettings,
        pricing: ModelPricing | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings
        self.pricing = pricing
        self._clock = clock
        self.subscriptions: dict[Backend, SubscriptionUsage] = {
            Backend.CLAUDE_CODE: SubscriptionUsage(),
            Backend.CODEX: SubscriptionUsage(),
        }
        self.api = ApiSpend()
        self.local_tasks = 0

    def is_enabled(self, backend: Backend) -> bool:
        return backend.value in self.settings.enabled_backends

    def estimate_api_cost(self, tokens: int) -> float:
        return estimate_api_cost(tokens, self.pricing)

    def check_budget(self, backend: Backend, estimated_tokens: int = 0) -> BudgetDecision:
        self._apply_resets()
        if not self.is_enabled(backend):
            return BudgetDecision(allowed=False, reason=f"{backend.value} disabled")

        if backend in self.subscriptions:
            usage = self.subscriptions[backend]
            max_percent = self._max_usage_percent(backend)
            if usage.session_percent >= max_percent:
                return BudgetDecision(
                    allowed=False,
                    reason=(
                        f"Session usage at {usage.session_percent:.1f}%, limit {max_percent:g}%"
                    ),
                )
            if usage.weekly_percent >= max_percent:
                return BudgetDecision(
                    allowed=False,
                    reason=f"Weekly usage at {usage.weekly_percent:.1f}%, limit {max_percent:g}%",
                )
            return BudgetDecision(allowed=True)

        if backend == Backend.API:
            estimated_cost = self.estimate_api_cost(estimated_tokens)
            daily_remaining = self.settings.api_daily_budget_usd - self.api.daily_usd
            monthly_remaining = self.settings.api_monthly_budget_usd - self.api.monthly_usd
            if estimated_cost > daily_remaining:
                return BudgetDecision(
                    allowed=False,
                    reason=(
                        f"Estimated cost ${estimated_cost:.2f} exceeds daily remaining "
                        f"${daily_remaining:.2f}"
                    ),
                )
            if estimated_cost > monthly_remaining:
                return BudgetDecision(
                    allowed=False,
                    reason=(
                        f"Estimated cost ${estimated_cost:.2f} exceeds monthly remaining "
                        f"${monthly_remaining:.2f}"
                    ),
                )
        return BudgetDecision(allowed=True)

    def record_usage(self, backend: Backend, tokens: int) -> None:
        """Account for a completed task on `backend`."""

        self._apply_resets()
        if backend in self.subscriptions:
            usage = self.subscriptions[backend]
            increase = min(
                tokens / _USAGE_TOKENS_PER_STEP * _USAGE_PERCENT_PER_STEP,
                _MAX_USAGE_INCREASE,
            )
            usage.session_percent += increase
            usage.weekly_percent += increase
            usage.tasks_completed += 1
        elif backend == Backend.API:
            cost = self.estimate_api_cost(tokens)
            self.api.daily_usd += cost
            self.api.monthly_usd += cost
            self.api.daily_tokens += tokens
            self.api.monthly_tokens += tokens
            self.api.tasks_completed += 1
        else:
            self.local_tasks += 1
        logger.debug("Recorded usage for %s: %d tokens", backend.value, tokens)

    def _max_usage_percent(self, backend: Backend) -> float:
        if backend == Backend.CLAUDE_CODE:
            return self.settings.claude_code_max_usage_percent
        return self.settings.codex_max_usage_percent

    def _apply_resets(self) -> None:
        now = self._clock()
        for backend, usage in self.subscriptions.items():
            if _due(usage.session_reset_at, SESSION_PERIOD, now):
                usage.session_percent = 0.0
                usage.session_reset_at = now
                logger.debug("%s session usage reset", backend.value)
            if _due(usage.weekly_reset_at, WEEKLY_PERIOD, now):
                usage.weekly_percent = 0.0
                usage.weekly_reset_at = now
                logger.debug("%s weekly usage reset", backend.value)
        if _due(self.api.daily_reset_at, DAILY_PERIOD, now):
            self.api.daily_usd = 0.0
            self.api.daily_tokens = 0
            self.api.daily_reset_at = now
        if _due(self.api.monthly_reset_at, MONTHLY_PERIOD, now):
            self.api.monthly_usd = 0.0
            self.api.monthly_tokens = 0
            self.api.monthly_reset_at = now


def _due(reset_at: datetime | None, period: timedelta, now: datetime) -> bool:
    return reset_at is None or now - reset_at > period
