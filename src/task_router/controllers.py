"""Controllers for task router CLI commands."""

from __future__ import annotations

import asyncio
import contextlib
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from task_router.config import Settings
from task_router.routing.errors import TaskRouterError
from task_router.routing.models import Backend, PlanProposal, RoutingResult
from task_router.routing.router import TaskRouter, build_router
from task_router.storage.common import to_iso


@dataclass(slots=True)
class RouteCommand:
    """CLI input for routing one task."""

    state_dir: Path | None
    description: str
    task_type: str | None
    urgency: str | None
    complexity: int | None
    tools_needed: tuple[str, ...]
    files: tuple[str, ...]
    output_path: str | None
    force_backend: str | None
    plan: bool = False


@dataclass(slots=True)
class PlanCommand:
    """CLI input for plan decomposition without execution."""

    state_dir: Path | None
    description: str
    task_type: str | None
    complexity: int | None
    files: tuple[str, ...]


@dataclass(slots=True)
class StateCommand:
    """CLI input for read-only status commands."""

    state_dir: Path | None
    output_format: str = "table"


@dataclass(slots=True)
class DeadLettersCommand:
    """CLI input for dead-letter listing."""

    state_dir: Path | None
    limit: int


@dataclass(slots=True)
class RetryDeadLetterCommand:
    """CLI input for dead-letter resurrection."""

    state_dir: Path | None
    dead_letter_id: str
    priority: str


@dataclass(slots=True)
class BackendCommand:
    """CLI input for per-backend admin operations."""

    state_dir: Path | None
    backend: str
    limit: int | None = None


@dataclass(slots=True)
class DripCommand:
    """CLI input for a one-shot queue release."""

    state_dir: Path | None
    max_items: int = 1


@dataclass(slots=True)
class RunSchedulerCommand:
    """CLI input for running the drip scheduler in the foreground."""

    state_dir: Path | None
    duration_seconds: float | None = None


class RouterCliController:
    """Builds a router per command from environment settings and renders lines."""

    def route(self, command: RouteCommand) -> list[str]:
        router = _router(command.state_dir)
        raw: dict[str, Any] = {
            "description": command.description,
            "type": command.task_type,
            "urgency": command.urgency,
            "complexity": command.complexity,
            "tools_needed": list(command.tools_needed),
            "files": list(command.files),
            "output_path": command.output_path,
        }
        outcome = asyncio.run(
            router.route(raw, plan=command.plan, force_backend=command.force_backend),
        )
        if isinstance(outcome, PlanProposal):
            return _plan_lines(outcome)
        return _routing_lines(outcome)

    def plan(self, command: PlanCommand) -> list[str]:
        router = _router(command.state_dir)
        outcome = asyncio.run(
            router.route(
                {
                    "description": command.description,
                    "type": command.task_type,
                    "complexity": command.complexity,
                    "files": list(command.files),
                },
                plan=True,
            ),
        )
        if not isinstance(outcome, PlanProposal):
            raise TaskRouterError("Plan mode returned a routing result")
        return _plan_lines(outcome)

    def status(self, command: StateCommand) -> list[str]:
        status = _router(command.state_dir).get_status()
        if command.output_format == "json":
            return [
                json.dumps(
                    {
                        "settings": status.settings,
                        "queue": status.queue,
                        "circuit_breakers": status.circuit_breakers,
                        "rate_governor": status.rate_governor,
                        "performance": status.performance,
                        "usage": status.usage,
                        "pending_plans": status.pending_plans,
                    },
                    indent=2,
                    sort_keys=True,
                ),
            ]
        lines = [
            "Router status:",
            f"  state_backend={status.settings['state_backend']} "
            f"fallback_chain={','.join(status.settings['fallback_chain'])}",
            f"  queue: total={status.queue['total_items']} ready={status.queue['ready_items']} "
            f"scheduled={status.queue['scheduled_items']} "
            f"dead_letters={status.queue['dead_letters']}",
            "Circuit breakers:",
        ]
        lines.extend(
            f"  {backend}: state={row['state']} failures={row['failures']}"
            for backend, row in status.circuit_breakers.items()
        )
        lines.append("Rate governor:")
        lines.extend(
            f"  {backend}: requests={row['requests_in_window']} "
            f"limit={_limit(row['current_limit'])} utilization={row['utilization_percent']:.0f}%"
            for backend, row in status.rate_governor.items()
        )
        return lines

    def queue_status(self, command: StateCommand) -> list[str]:
        router = _router(command.state_dir)
        status = router.queue.get_queue_status()
        lines = [
            "Queue status: "
            f"total={status.total_items} ready={status.ready_items} "
            f"scheduled={status.scheduled_items} dead_letters={status.dead_letters}",
        ]
        for priority, count in sorted(
            status.priority_counts.items(),
            key=lambda entry: entry[0].value,
        ):
            lines.append(f"  {priority.value}: {count}")
        if status.next_scheduled is not None:
            lines.append(
                f"Next scheduled: {status.next_scheduled.id} "
                f"({status.next_scheduled.priority_name.value}) in "
                f"{status.next_scheduled.minutes_until_ready} min",
            )
        for item in router.queue.items:
            lines.append(
                f"- {item.id} priority={item.priority_name.value} retries={item.retries} "
                f"backend={_backend(item.task.force_backend or item.task.preferred_backend)} "
                f"task={item.task.description[:60]}",
            )
        return lines

    def drip(self, command: DripCommand) -> list[str]:
        router = _router(command.state_dir)
        return asyncio.run(_drip(router, command.max_items))

    def run_scheduler(self, command: RunSchedulerCommand) -> list[str]:
        router = _router(command.state_dir)
        with contextlib.suppress(KeyboardInterrupt):
            asyncio.run(_serve(router, command.duration_seconds))
        return ["Drip scheduler stopped.", _queue_summary(router)]

    def dead_letters(self, command: DeadLettersCommand) -> list[str]:
        dead_letters = _router(command.state_dir).queue.get_dead_letters(command.limit)
        if not dead_letters:
            return ["No dead letters."]
        return [
            f"- {dead_letter.id} retries={dead_letter.retries} "
            f"moved_at={to_iso(dead_letter.moved_at)} error={dead_letter.final_error}"
            for dead_letter in dead_letters
        ]

    def retry_dead_letter(self, command: RetryDeadLetterCommand) -> list[str]:
        item = _router(command.state_dir).queue.retry_dead_letter(
            command.dead_letter_id,
            command.priority,
        )
        if item is None:
            raise TaskRouterError(f"Dead letter not found: {command.dead_letter_id}")
        return [f"Dead letter {command.dead_letter_id} requeued as {item.id}"]

    def clear_dead_letters(self, command: StateCommand) -> list[str]:
        cleared = _router(command.state_dir).queue.clear_dead_letters()
        return [f"Cleared {cleared} dead letters."]

    def cleanup(self, command: StateCommand) -> list[str]:
        removed = _router(command.state_dir).queue.cleanup()
        return [f"Removed {removed} expired dead letters."]

    def breaker_status(self, command: StateCommand) -> list[str]:
        lines = ["Circuit breakers:"]
        for backend, view in _router(command.state_dir).circuit_breaker.get_all().items():
            lines.append(
                f"  {backend.value}: state={view.state.value} failures={view.failures} "
                f"probe_failures={view.probe_failures} "
                f"cooldown_ends={to_iso(view.cooldown_ends) or '-'}",
            )
        return lines

    def breaker_reset(self, command: BackendCommand) -> list[str]:
        backend = _parse_backend(command.backend)
        _router(command.state_dir).circuit_breaker.reset(backend)
        return [f"Circuit breaker reset for {backend.value}."]

    def rate_status(self, command: StateCommand) -> list[str]:
        status = _router(command.state_dir).rate_governor.get_status()
        lines = [
            "Rate governor: "
            f"total_requests={status.total_requests} total_throttles={status.total_throttles}",
        ]
        for backend, row in status.backends.items():
            lines.append(
                f"  {backend.value}: requests={row.requests_in_window} "
                f"limit={_limit(row.current_limit)}/{_limit(row.default_limit)} "
                f"utilization={row.utilization:.0f}% throttles={row.throttle_events} "
                f"cooldown={'yes' if row.in_cooldown else 'no'} "
                f"success_rate={row.success_rate:.0f}%",
            )
        return lines

    def rate_reset(self, command: BackendCommand) -> list[str]:
        backend = _parse_backend(command.backend)
        _router(command.state_dir).rate_governor.reset_backend(backend, command.limit)
        return [f"Rate limits reset for {backend.value}."]

    def rate_learnings(self, command: StateCommand) -> list[str]:
        learnings = _router(command.state_dir).rate_governor.get_learnings()
        return [json.dumps(learnings, indent=2, sort_keys=True, default=str)]


def _router(state_dir: Path | None) -> TaskRouter:
    return build_router(Settings.from_env(state_dir=state_dir))


async def _drip(router: TaskRouter, max_items: int) -> list[str]:
    critical = await router.scheduler.process_critical()
    lines = [f"Critical items processed: {critical}"]
    released = 0
    while released < max_items:
        item = await router.scheduler.drip_once()
        if item is None:
            break
        released += 1
        lines.append(
            f"Released {item.id} priority={item.priority_name.value} retries={item.retries}",
        )
    if not released:
        lines.append("No queued tasks ready.")
    lines.append(_queue_summary(router))
    return lines


async def _serve(router: TaskRouter, duration_seconds: float | None) -> None:
    router.start_scheduler()
    try:
        # Critical items left from a previous run go first.
        await router.scheduler.process_critical()
        if duration_seconds is None:
            await asyncio.Event().wait()
        else:
            await asyncio.sleep(duration_seconds)
    finally:
        await router.shutdown()


def _queue_summary(router: TaskRouter) -> str:
    status = router.queue.get_queue_status()
    return (
        f"Queue: total={status.total_items} ready={status.ready_items} "
        f"scheduled={status.scheduled_items} dead_letters={status.dead_letters}"
    )


def _parse_backend(value: str) -> Backend:
    normalized = value.strip().lower().replace("-", "_")
    try:
        return Backend(normalized)
    except ValueError as error:
        raise TaskRouterError(
            f"Unknown backend: {value!r}. Use one of {[backend.value for backend in Backend]}.",
        ) from error


def _routing_lines(outcome: RoutingResult) -> list[str]:
    if outcome.queued:
        return [
            f"Task {outcome.task_id} queued: item={outcome.queue_item_id} "
            f"preferred_backend={_backend(outcome.backend)}",
        ]
    lines = [
        f"Task {outcome.task_id} completed: backend={_backend(outcome.backend)} "
        f"fallback={'yes' if outcome.fallback else 'no'} duration_ms={outcome.duration_ms}",
    ]
    if outcome.scoring is not None:
        lines.append(
            f"Scoring: complexity={outcome.scoring.complexity} urgency={outcome.scoring.urgency} "
            f"tools={outcome.scoring.tool_requirement} tokens={outcome.scoring.estimated_tokens} "
            f"cost=${outcome.scoring.estimated_cost:.4f}",
        )
    if outcome.original_error:
        lines.append(f"Original error: {outcome.original_error}")
    if outcome.confirmation_needed:
        lines.append("Estimated cost exceeds the confirmation threshold.")
    if outcome.result is not None and outcome.result.response:
        lines.append(outcome.result.response)
    return lines


def _plan_lines(proposal: PlanProposal) -> list[str]:
    lines = proposal.formatted.splitlines()
    if proposal.needs_approval:
        lines.append(f"Plan {proposal.plan.id} stored as pending approval.")
    return lines


def _backend(backend: Backend | None) -> str:
    return backend.value if backend is not None else "-"


def _limit(limit: int | None) -> str:
    return "unlimited" if limit is None else str(limit)
