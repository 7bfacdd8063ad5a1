"""Grade a task by running its language's unit test commands."""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import sys
from dataclasses import dataclass
from pathlib import Path

from code_evals.evals.errors import GradingCommandError, GradingTimeoutError
from code_evals.evals.models import TaskView
from code_evals.evals.process_tree import ProcessTreeKiller, select_process_tree_killer

logger = logging.getLogger(__name__)

DEFAULT_UNIT_TEST_TIMEOUT_SECONDS = 120.0
SETTLE_TIMEOUT_SECONDS = 10.0
OUTPUT_PREVIEW_CHARS = 2_000


@dataclass(slots=True)
class TestCommandSpec:
    """Commands run in order inside the exercise directory."""

    __test__ = False

    commands: tuple[str, ...]
    timeout_seconds: float | None = None
    cwd: str | None = None


@dataclass(slots=True)
class CommandOutcome:
    command: str
    exit_code: int
    stdout: str
    stderr: str


def default_test_commands(platform: str | None = None) -> dict[str, TestCommandSpec]:
    windows = (platform or sys.platform).startswith("win")
    return {
        "go": TestCommandSpec(commands=("go test",)),
        "java": TestCommandSpec(commands=("gradlew.bat test" if windows else "./gradlew test",)),
        "javascript": TestCommandSpec(commands=("pnpm install", "pnpm test")),
        "python": TestCommandSpec(
            commands=(
                "uv run python -m pytest -o markers=task ."
                if windows
                else "uv run python3 -m pytest -o markers=task .",
            ),
        ),
        "rust": TestCommandSpec(commands=("cargo test",)),
    }


class VerificationRunner:
    """Runs grading commands with a hard timeout and process-tree teardown.

    Grading is conservative: a timeout, a non-zero exit, a spawn failure or any
    other error fails the task and stops the remaining commands.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        exercises_root: Path,
        commands: dict[str, TestCommandSpec] | None = None,
        default_timeout_seconds: float = DEFAULT_UNIT_TEST_TIMEOUT_SECONDS,
        killer: ProcessTreeKiller | None = None,
        settle_timeout_seconds: float = SETTLE_TIMEOUT_SECONDS,
    ) -> None:
        self.exercises_root = exercises_root
        self.commands = commands if commands is not None else default_test_commands()
        self.default_timeout_seconds = default_timeout_seconds
        self.killer = killer or select_process_tree_killer()
        self.settle_timeout_seconds = settle_timeout_seconds
        self._windows = sys.platform.startswith("win")

    def working_directory(self, task: TaskView, spec: TestCommandSpec) -> Path:
        directory = self.exercises_root / task.language / task.exercise
        if spec.cwd:
            directory = directory / spec.cwd
        return directory

    async def verify(self, task: TaskView) -> bool:
        spec = self.commands.get(task.language)
        if spec is None:
            logger.error("[%s] no grading commands for language %s", task.label, task.language)
            return False

        cwd = self.working_directory(task, spec)
        timeout_seconds = spec.timeout_seconds or self.default_timeout_seconds
        for command in spec.commands:
            try:
                await self.run_command(command, cwd=cwd, timeout_seconds=timeout_seconds)
            except GradingTimeoutError as error:
                logger.warning("[%s] %s", task.label, error)
                return False
            except GradingCommandError as error:
                logger.info(
                    "[%s] %r failed with exit code %s\nstdout:\n%s\nstderr:\n%s",
                    task.label,
                    error.command,
                    error.exit_code,
                    _preview(error.stdout),
                    _preview(error.stderr),
                )
                return False
            except Exception:
                logger.exception("[%s] grading command %r could not be run", task.label, command)
                return False
        logger.info("[%s] all %d grading command(s) passed", task.label, len(spec.commands))
        return True

    async def run_command(
        self,
        command: str,
        *,
        cwd: Path,
        timeout_seconds: float,
    ) -> CommandOutcome:
        """Run one command; raise on timeout or non-zero exit."""

        args = shlex.split(command, posix=not self._windows)
        env = os.environ.copy()
        env["CI"] = "1"
        env["GIT_TERMINAL_PROMPT"] = "0"
        process = await asyncio.create_subprocess_exec(
            *args,
            cwd=str(cwd),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )
        communicate = asyncio.ensure_future(process.communicate())
        try:
            stdout, stderr = await asyncio.wait_for(
                asyncio.shield(communicate),
                timeout=timeout_seconds,
            )
        except TimeoutError:
            killed = await asyncio.to_thread(self.killer.kill_tree, process.pid)
            logger.info("%r timed out after %ss, killed %s", command, timeout_seconds, killed)
            try:
                await asyncio.wait_for(communicate, timeout=self.settle_timeout_seconds)
            except TimeoutError:
                logger.warning("%r did not settle after kill (pid %s)", command, process.pid)
            raise GradingTimeoutError(
                f"{command!r} timed out after {timeout_seconds}s",
                command=command,
                timeout_seconds=timeout_seconds,
            ) from None

        outcome = CommandOutcome(
            command=command,
            exit_code=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )
        if outcome.exit_code != 0:
            raise GradingCommandError(
                f"{command!r} exited with {outcome.exit_code}",
                command=command,
                exit_code=outcome.exit_code,
                stdout=outcome.stdout,
                stderr=outcome.stderr,
            )
        return outcome


def _preview(value: str) -> str:
    text = value.strip()
    if len(text) <= OUTPUT_PREVIEW_CHARS:
        return text
    return text[:OUTPUT_PREVIEW_CHARS] + "..."
