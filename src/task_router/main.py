"""CLI entrypoint for task-router."""

import logging
from pathlib import Path

import rich_click as click

from task_router import __version__
from task_router.controllers import (
    BackendCommand,
    DeadLettersCommand,
    DripCommand,
    PlanCommand,
    RetryDeadLetterCommand,
    RouteCommand,
    RouterCliController,
    RunSchedulerCommand,
    StateCommand,
)
from task_router.routing.errors import TaskRouterError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = RouterCliController()

BACKEND_CHOICES = click.Choice(["claude_code", "codex", "api", "local"], case_sensitive=False)
URGENCY_CHOICES = click.Choice(
    ["immediate", "high", "normal", "low", "background"],
    case_sensitive=False,
)
PRIORITY_CHOICES = click.Choice(
    ["critical", "high", "normal", "low", "background"],
    case_sensitive=False,
)

state_dir_option = click.option(
    "--state-dir",
    type=click.Path(path_type=Path),
    default=None,
    help="Directory holding router snapshots.",
)


@click.group()
@click.version_option(version=__version__, prog_name="task-router")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def task_router(log_level: str) -> None:
    """Route tasks across coding agents, the API tier and the local tier."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@task_router.command("route")
@state_dir_option
@click.argument("description")
@click.option("--type", "task_type", default=None, help="Task type, inferred when omitted.")
@click.option("--urgency", type=URGENCY_CHOICES, default=None, help="Task urgency.")
@click.option(
    "--complexity",
    type=click.IntRange(min=1, max=10),
    default=None,
    help="Complexity 1-10, inferred when omitted.",
)
@click.option("--tool", "tools_needed", multiple=True, help="Required tool. Can be repeated.")
@click.option("--file", "files", multiple=True, help="Input file. Can be repeated.")
@click.option("--output-path", default=None, help="Where the backend should write output.")
@click.option("--force-backend", type=BACKEND_CHOICES, default=None, help="Skip selection.")
@click.option("--plan", is_flag=True, help="Return a plan instead of executing.")
def route(  # noqa: PLR0913
    state_dir: Path | None,
    description: str,
    task_type: str | None,
    urgency: str | None,
    complexity: int | None,
    tools_needed: tuple[str, ...],
    files: tuple[str, ...],
    output_path: str | None,
    force_backend: str | None,
    plan: bool,
) -> None:
    """Route one task, or queue it when its urgency is low."""

    _run(
        CONTROLLER.route,
        RouteCommand(
            state_dir=state_dir,
            description=description,
            task_type=task_type,
            urgency=urgency,
            complexity=complexity,
            tools_needed=tools_needed,
            files=files,
            output_path=output_path,
            force_backend=force_backend,
            plan=plan,
        ),
    )


@task_router.command("plan")
@state_dir_option
@click.argument("description")
@click.option("--type", "task_type", default=None, help="Task type, inferred when omitted.")
@click.option("--complexity", type=click.IntRange(min=1, max=10), default=None)
@click.option("--file", "files", multiple=True, help="Input file. Can be repeated.")
def plan(
    state_dir: Path | None,
    description: str,
    task_type: str | None,
    complexity: int | None,
    files: tuple[str, ...],
) -> None:
    """Decompose a task into a plan and print it with its cost."""

    _run(
        CONTROLLER.plan,
        PlanCommand(
            state_dir=state_dir,
            description=description,
            task_type=task_type,
            complexity=complexity,
            files=files,
        ),
    )


@task_router.command("status")
@state_dir_option
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"]),
    default="table",
    show_default=True,
)
def status(state_dir: Path | None, output_format: str) -> None:
    """Show router component status."""

    _run(CONTROLLER.status, StateCommand(state_dir=state_dir, output_format=output_format))


@task_router.group()
def queue() -> None:
    """Admission queue commands."""


@queue.command("status")
@state_dir_option
def queue_status(state_dir: Path | None) -> None:
    """Show queued items and counters."""

    _run(CONTROLLER.queue_status, StateCommand(state_dir=state_dir))


@queue.command("drip")
@state_dir_option
@click.option(
    "--max-items",
    type=click.IntRange(min=1, max=100),
    default=1,
    show_default=True,
    help="Ready items to release in this run.",
)
def queue_drip(state_dir: Path | None, max_items: int) -> None:
    """Run ready critical items, then release queued items one at a time."""

    _run(CONTROLLER.drip, DripCommand(state_dir=state_dir, max_items=max_items))


@queue.command("run")
@state_dir_option
@click.option(
    "--duration",
    "duration_seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Stop after this many seconds. Runs until interrupted when omitted.",
)
def queue_run(state_dir: Path | None, duration_seconds: float | None) -> None:
    """Run the drip scheduler and the critical lane in the foreground."""

    if duration_seconds is None:
        click.echo("Drip scheduler running, press Ctrl+C to stop.")
    _run(
        CONTROLLER.run_scheduler,
        RunSchedulerCommand(state_dir=state_dir, duration_seconds=duration_seconds),
    )


@queue.command("dead-letters")
@state_dir_option
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
)
def queue_dead_letters(state_dir: Path | None, limit: int) -> None:
    """List tasks that exhausted their retries."""

    _run(CONTROLLER.dead_letters, DeadLettersCommand(state_dir=state_dir, limit=limit))


@queue.command("retry-dead-letter")
@state_dir_option
@click.argument("dead_letter_id")
@click.option("--priority", type=PRIORITY_CHOICES, default="normal", show_default=True)
def queue_retry_dead_letter(state_dir: Path | None, dead_letter_id: str, priority: str) -> None:
    """Requeue a dead letter with a fresh retry count."""

    _run(
        CONTROLLER.retry_dead_letter,
        RetryDeadLetterCommand(
            state_dir=state_dir,
            dead_letter_id=dead_letter_id,
            priority=priority,
        ),
    )


@queue.command("clear-dead-letters")
@state_dir_option
def queue_clear_dead_letters(state_dir: Path | None) -> None:
    """Delete every dead letter."""

    _run(CONTROLLER.clear_dead_letters, StateCommand(state_dir=state_dir))


@queue.command("cleanup")
@state_dir_option
def queue_cleanup(state_dir: Path | None) -> None:
    """Drop dead letters older than the retention period."""

    _run(CONTROLLER.cleanup, StateCommand(state_dir=state_dir))


@task_router.group()
def breaker() -> None:
    """Circuit breaker commands."""


@breaker.command("status")
@state_dir_option
def breaker_status(state_dir: Path | None) -> None:
    """Show per-backend breaker state."""

    _run(CONTROLLER.breaker_status, StateCommand(state_dir=state_dir))


@breaker.command("reset")
@state_dir_option
@click.argument("backend", type=BACKEND_CHOICES)
def breaker_reset(state_dir: Path | None, backend: str) -> None:
    """Close the breaker for a backend."""

    _run(CONTROLLER.breaker_reset, BackendCommand(state_dir=state_dir, backend=backend))


@task_router.group()
def rate() -> None:
    """Rate governor commands."""


@rate.command("status")
@state_dir_option
def rate_status(state_dir: Path | None) -> None:
    """Show per-backend request windows and limits."""

    _run(CONTROLLER.rate_status, StateCommand(state_dir=state_dir))


@rate.command("reset")
@state_dir_option
@click.argument("backend", type=BACKEND_CHOICES)
@click.option("--limit", type=click.IntRange(min=1), default=None, help="Defaults to baseline.")
def rate_reset(state_dir: Path | None, backend: str, limit: int | None) -> None:
    """Clear a backend's window and restore or replace its limit."""

    _run(
        CONTROLLER.rate_reset,
        BackendCommand(state_dir=state_dir, backend=backend, limit=limit),
    )


@rate.command("learnings")
@state_dir_option
def rate_learnings(state_dir: Path | None) -> None:
    """Show throttle learnings and recommendations."""

    _run(CONTROLLER.rate_learnings, StateCommand(state_dir=state_dir))


def _run(handler, command) -> None:
    try:
        lines = handler(command)
    except (TaskRouterError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    task_router()
