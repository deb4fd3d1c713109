from __future__ import annotations

import shlex
import sys
from pathlib import Path

import allure
import pytest

from task_router.routing.backend.cli_backend import CommandBackend, build_run_args
from task_router.routing.errors import BackendExecutionError
from task_router.routing.models import Backend, Task

pytestmark = [
    allure.epic("Task Routing"),
    allure.feature("Command Backend"),
]

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="POSIX subprocess semantics")

PYTHON = shlex.quote(sys.executable)
ECHO_AGENT = f"{PYTHON} -m task_router.routing.backend.echo_agent --prompt-file {{prompt_file}}"


def test_build_run_args_keeps_prompt_as_single_argument() -> None:
    argv = build_run_args(
        command_template="agent run --type {task_type} {prompt}",
        prompt="fix the 'login' form; then rm -rf /",
        prompt_file=Path("prompt.txt"),
        task_type="code",
    )

    assert argv == ["agent", "run", "--type", "code", "fix the 'login' form; then rm -rf /"]


def test_build_run_args_renders_prompt_file_path() -> None:
    argv = build_run_args(
        command_template="agent --input {prompt_file}",
        prompt="ignored",
        prompt_file=Path("some dir/prompt.txt"),
        task_type="other",
    )

    assert argv == ["agent", "--input", "some dir/prompt.txt"]


@pytest.mark.parametrize(
    ("template", "message"),
    [
        ("   ", "empty"),
        ("agent --type {task_type}", "must include"),
        ("agent --model {model} {prompt}", "Unsupported command template placeholder"),
    ],
)
def test_build_run_args_rejects_bad_templates(template: str, message: str) -> None:
    with pytest.raises(BackendExecutionError, match=message):
        build_run_args(
            command_template=template,
            prompt="hello",
            prompt_file=Path("prompt.txt"),
            task_type="other",
        )


@posix_only
@pytest.mark.asyncio
async def test_command_backend_runs_echo_agent() -> None:
    backend = CommandBackend(
        Backend.CODEX,
        ECHO_AGENT,
        env={"TASK_ROUTER_ECHO_BACKEND": "codex"},
    )

    result = await backend.execute_task(
        Task(description="Summarize the release notes", output_path="out.md"),
    )

    assert result.success is True
    assert result.backend == Backend.CODEX
    assert result.tokens == 7
    assert result.cost == 0.0
    assert result.output_path == "out.md"
    assert result.response == "[codex] Summarize the release notes\n7 tokens"


@posix_only
@pytest.mark.asyncio
async def test_non_zero_exit_maps_to_execution_error() -> None:
    backend = CommandBackend(Backend.LOCAL, f"{ECHO_AGENT} --exit-code 3")

    with pytest.raises(BackendExecutionError, match="exited with code 3") as caught:
        await backend.execute_task(Task(description="Render the docs"))

    assert caught.value.code == "EXIT_3"
    assert caught.value.should_fallback is False


@posix_only
@pytest.mark.asyncio
async def test_rate_limit_output_is_reported() -> None:
    backend = CommandBackend(Backend.CLAUDE_CODE, ECHO_AGENT)

    with pytest.raises(BackendExecutionError, match="rate limit hit"):
        await backend.execute_task(Task(description="Too many requests today"))


@posix_only
@pytest.mark.asyncio
async def test_missing_command_is_fallback_eligible() -> None:
    backend = CommandBackend(Backend.CODEX, "task-router-missing-agent-binary {prompt}")

    with pytest.raises(BackendExecutionError, match="command not found") as caught:
        await backend.execute_task(Task(description="anything"))

    assert caught.value.should_fallback is True


@posix_only
@pytest.mark.asyncio
async def test_timeout_terminates_process() -> None:
    backend = CommandBackend(
        Backend.CODEX,
        f"{PYTHON} -c 'import time; time.sleep(30)' {{prompt}}",
        timeout_seconds=0.2,
    )

    with pytest.raises(BackendExecutionError, match="timeout") as caught:
        await backend.execute_task(Task(description="slow"))

    assert caught.value.timeout is True
    assert caught.value.should_fallback is True
    assert caught.value.code == "CODEX_TIMEOUT"
