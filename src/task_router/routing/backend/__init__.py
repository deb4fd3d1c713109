"""Backend adapter implementations."""

from task_router.routing.backend.cli_backend import CommandBackend
from task_router.routing.backend.simulated import SimulatedBackend, default_adapters

__all__ = [
    "CommandBackend",
    "SimulatedBackend",
    "default_adapters",
]
