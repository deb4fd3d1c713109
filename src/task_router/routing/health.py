"""Settable backend health map used by the selector tie-break."""

from __future__ import annotations

from collections.abc import Mapping

from task_router.routing.models import Backend, HealthStatus


class StaticHealthProbe:
    """Health probe whose statuses are set explicitly; unknown backends are cold."""

    def __init__(self, statuses: Mapping[Backend, HealthStatus] | None = None) -> None:
        self._statuses: dict[Backend, HealthStatus] = {
            backend: HealthStatus.COLD for backend in Backend
        }
        if statuses:
            self._statuses.update(statuses)

    def set_status(self, backend: Backend, status: HealthStatus) -> None:
        self._statuses[backend] = status

    def get_health(self) -> dict[Backend, HealthStatus]:
        return dict(self._statuses)
