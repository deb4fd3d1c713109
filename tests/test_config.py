from __future__ import annotations

from pathlib import Path

import allure
import pytest

from task_router.config import QueueSettings, RoutingSettings, Settings

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


def test_from_env_uses_defaults(monkeypatch) -> None:
    for name in (
        "TASK_ROUTER_STATE_DIR",
        "TASK_ROUTER_STATE_BACKEND",
        "TASK_ROUTER_RATE_LIMITS",
        "TASK_ROUTER_FALLBACK_CHAIN",
        "TASK_ROUTER_BACKEND_TIMEOUT_SECONDS",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.state_dir == Path(".task_router")
    assert settings.state_backend == "json"
    assert settings.circuit_breaker.failure_threshold == 5
    assert settings.circuit_breaker.cooldown_seconds == 600
    assert settings.rate_governor.limits == {
        "claude_code": 20,
        "codex": 30,
        "api": None,
        "local": None,
    }
    assert settings.queue.max_size == 10
    assert settings.queue.drip_min_minutes == 20
    assert settings.planner.approval_threshold_usd == 2.0
    assert settings.routing.fallback_chain == ("claude_code", "codex", "api", "local")
    assert settings.routing.backend_timeout_seconds is None
    settings.validate()


def test_from_env_reads_overrides(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TASK_ROUTER_STATE_BACKEND", "SQLite")
    monkeypatch.setenv("TASK_ROUTER_HYBRID_ENABLED", "yes")
    monkeypatch.setenv("TASK_ROUTER_RATE_LIMITS", "codex:5, api:none")
    monkeypatch.setenv("TASK_ROUTER_FALLBACK_CHAIN", "codex,local")
    monkeypatch.setenv("TASK_ROUTER_BACKEND_TIMEOUT_SECONDS", "30")

    settings = Settings.from_env(state_dir=tmp_path)

    assert settings.state_dir == tmp_path
    assert settings.state_backend == "sqlite"
    assert settings.routing.hybrid_enabled is True
    assert settings.rate_governor.limits["codex"] == 5
    assert settings.rate_governor.limits["api"] is None
    assert settings.rate_governor.limits["claude_code"] == 20
    assert settings.routing.fallback_chain == ("codex", "local")
    assert settings.routing.backend_timeout_seconds == 30.0


def test_invalid_boolean_env_raises(monkeypatch) -> None:
    monkeypatch.setenv("TASK_ROUTER_BREAKER_ENABLED", "maybe")

    with pytest.raises(ValueError, match="Invalid boolean value"):
        Settings.from_env()


def test_rate_limits_reject_unknown_backend(monkeypatch) -> None:
    monkeypatch.setenv("TASK_ROUTER_RATE_LIMITS", "gemini:3")

    with pytest.raises(ValueError, match="Unknown backend"):
        Settings.from_env()


def test_rate_limits_reject_malformed_entry(monkeypatch) -> None:
    monkeypatch.setenv("TASK_ROUTER_RATE_LIMITS", "codex")

    with pytest.raises(ValueError, match="Expected format"):
        Settings.from_env()


def test_validate_rejects_unknown_fallback_backend() -> None:
    settings = Settings(routing=RoutingSettings(fallback_chain=("codex", "gemini")))

    with pytest.raises(ValueError, match="Unknown backend"):
        settings.validate()


def test_validate_rejects_inverted_drip_interval() -> None:
    settings = Settings(queue=QueueSettings(drip_min_minutes=30, drip_max_minutes=10))

    with pytest.raises(ValueError, match="Drip interval"):
        settings.validate()


def test_validate_rejects_unknown_state_backend() -> None:
    settings = Settings(state_backend="redis")

    with pytest.raises(ValueError, match="Unsupported TASK_ROUTER_STATE_BACKEND"):
        settings.validate()
