"""Subprocess-based backend adapter for CLI agents."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
import os
import re
import shlex
import tempfile
import time
from pathlib import Path

from task_router.routing.errors import BackendExecutionError
from task_router.routing.models import Backend, BackendResult, Task
from task_router.routing.pricing import estimate_api_cost

logger = logging.getLogger(__name__)

OUTPUT_TAIL_CHARS = 500
_TOKEN_COUNT = re.compile(r"(\d+)\s+tokens?", re.IGNORECASE)
_RATE_LIMIT_MARKERS = ("rate limit", "quota exceeded", "too many requests", "usage limit")


class CommandBackend:
    """Run a command template per task as an asyncio subprocess.

    Supported placeholders: `{prompt}`, `{prompt_file}`, `{task_type}`.
    """

    def __init__(
        self,
        backend: Backend,
        command_template: str,
        *,
        timeout_seconds: float = 600.0,
        env: dict[str, str] | None = None,
    ) -> None:
        self.backend = backend
        self.command_template = command_template
        self.timeout_seconds = timeout_seconds
        self.env = env

    async def execute_task(self, task: Task) -> BackendResult:
        started = time.monotonic()
        with tempfile.TemporaryDirectory(prefix="task-router-") as workdir:
            prompt_file = Path(workdir) / "task_prompt.txt"
            prompt_file.write_text(task.description, "utf-8")
            argv = build_run_args(
                command_template=self.command_template,
                prompt=task.description,
                prompt_file=prompt_file,
                task_type=task.task_type,
            )
            stdout, stderr, returncode = await self._run(argv)

        output = stdout.decode("utf-8", errors="replace")
        error_output = stderr.decode("utf-8", errors="replace")
        lowered = output.lower()
        if any(marker in lowered for marker in _RATE_LIMIT_MARKERS):
            raise BackendExecutionError(f"{self.backend.value} rate limit hit - session exhausted")
        if returncode != 0:
            raise BackendExecutionError(
                f"{self.backend.value} process exited with code {returncode}. "
                f"Output: {(output or error_output)[-OUTPUT_TAIL_CHARS:]}",
                code=f"EXIT_{returncode}",
            )

        tokens = _parse_tokens(output)
        return BackendResult(
            success=True,
            backend=self.backend,
            duration_ms=int((time.monotonic() - started) * 1000),
            tokens=tokens,
            cost=estimate_api_cost(tokens) if self.backend == Backend.API else 0.0,
            output_path=task.output_path,
            response=output.strip(),
        )

    async def _run(self, argv: list[str]) -> tuple[bytes, bytes, int]:
        env = os.environ.copy()
        if self.env:
            env.update(self.env)
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except FileNotFoundError as error:
            raise BackendExecutionError(
                f"{self.backend.value} command not found: {argv[0]}",
                should_fallback=True,
            ) from error
        except OSError as error:
            raise BackendExecutionError(
                f"{self.backend.value} failed to start: {error}",
                should_fallback=True,
            ) from error

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(),
                timeout=self.timeout_seconds,
            )
        except TimeoutError as error:
            await _terminate_process(process)
            logger.error(
                "%s task timed out after %ss",
                self.backend.value,
                self.timeout_seconds,
            )
            raise BackendExecutionError(
                f"{self.backend.value} backend timeout - task exceeded "
                f"{self.timeout_seconds:g} seconds",
                code=f"{self.backend.name}_TIMEOUT",
                timeout=True,
                should_fallback=True,
            ) from error
        return stdout, stderr, process.returncode if process.returncode is not None else -1


def build_run_args(
    *,
    command_template: str,
    prompt: str,
    prompt_file: Path,
    task_type: str,
) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise BackendExecutionError("Backend command template is empty.")
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise BackendExecutionError(
            "Backend command template must include {prompt} or {prompt_file}.",
        )
    try:
        rendered = stripped.format(
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
            task_type=shlex.quote(task_type),
        )
    except KeyError as error:
        raise BackendExecutionError(
            f"Unsupported command template placeholder: {error}",
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise BackendExecutionError("Backend command template rendered empty command.")
    return argv


def _parse_tokens(output: str) -> int:
    counts = [int(match) for match in _TOKEN_COUNT.findall(output)]
    if counts:
        return max(counts)
    return math.ceil(len(output) / 4)


async def _terminate_process(process: asyncio.subprocess.Process) -> None:
    with contextlib.suppress(ProcessLookupError):
        process.terminate()
    try:
        await asyncio.wait_for(process.wait(), timeout=2)
    except TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await process.wait()
