from __future__ import annotations

import asyncio
import os
import sys
import time
from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest
from conftest import python_command

from code_evals.evals.errors import GradingCommandError, GradingTimeoutError
from code_evals.evals.models import TaskView
from code_evals.evals.verification import (
    TestCommandSpec,
    VerificationRunner,
    default_test_commands,
)

pytestmark = [allure.epic("Grading"), allure.feature("Unit Test Commands")]

GRANDCHILD_SCRIPT = """
import subprocess, sys, time
child = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
with open("grandchild.pid", "w") as handle:
    handle.write(str(child.pid))
time.sleep(60)
"""


def _task(language: str = "python", exercise: str = "alpha") -> TaskView:
    return TaskView(
        id=1,
        run_id=1,
        language=language,
        exercise=exercise,
        passed=None,
        started_at=None,
        finished_at=None,
        task_metrics_id=None,
        created_at=datetime.now(UTC),
    )


def _runner(exercises_root: Path, *commands: str, **kwargs) -> VerificationRunner:
    return VerificationRunner(
        exercises_root=exercises_root,
        commands={"python": TestCommandSpec(commands=commands)},
        **kwargs,
    )


def _alive(pid: int) -> bool:
    stat = Path(f"/proc/{pid}/stat")
    if stat.parent.parent.is_dir():
        try:
            state = stat.read_text("utf-8").rpartition(")")[2].split()[0]
        except OSError:
            return False
        return state not in {"Z", "X"}
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    return True


def test_all_commands_passing_grades_task(exercises_root: Path) -> None:
    runner = _runner(
        exercises_root,
        python_command("open('first', 'w').close()"),
        python_command("import os, sys; sys.exit(0 if os.path.exists('first') else 1)"),
    )

    assert asyncio.run(runner.verify(_task())) is True
    assert (exercises_root / "python" / "alpha" / "first").exists()


def test_first_failure_stops_remaining_commands(exercises_root: Path) -> None:
    runner = _runner(
        exercises_root,
        python_command("import sys; sys.exit(3)"),
        python_command("open('second-ran', 'w').close()"),
    )

    assert asyncio.run(runner.verify(_task())) is False
    assert not (exercises_root / "python" / "alpha" / "second-ran").exists()


def test_non_zero_exit_carries_output(exercises_root: Path) -> None:
    runner = _runner(exercises_root)
    command = python_command(
        "import sys; print('out'); print('boom', file=sys.stderr); sys.exit(3)"
    )

    with pytest.raises(GradingCommandError) as error:
        asyncio.run(
            runner.run_command(command, cwd=exercises_root, timeout_seconds=10),
        )

    assert error.value.exit_code == 3
    assert error.value.stdout.strip() == "out"
    assert error.value.stderr.strip() == "boom"


def test_commands_run_with_ci_environment(exercises_root: Path) -> None:
    runner = _runner(
        exercises_root,
        python_command(
            "import os, sys; "
            "sys.exit(0 if os.environ.get('CI') == '1' "
            "and os.environ.get('GIT_TERMINAL_PROMPT') == '0' else 1)",
        ),
    )

    assert asyncio.run(runner.verify(_task())) is True


def test_language_without_commands_fails(exercises_root: Path) -> None:
    runner = _runner(exercises_root, python_command("pass"))

    assert asyncio.run(runner.verify(_task("go", "hello"))) is False


def test_command_that_cannot_start_fails(exercises_root: Path) -> None:
    runner = _runner(exercises_root, "definitely-not-an-installed-binary-7f3a --version")

    assert asyncio.run(runner.verify(_task())) is False


def test_command_cwd_is_relative_to_exercise(exercises_root: Path) -> None:
    runner = _runner(exercises_root)

    directory = runner.working_directory(
        _task(),
        TestCommandSpec(commands=("make",), cwd="build"),
    )

    assert directory == exercises_root / "python" / "alpha" / "build"


@pytest.mark.skipif(sys.platform.startswith("win"), reason="POSIX process tree")
def test_timeout_kills_whole_process_tree(exercises_root: Path) -> None:
    runner = _runner(exercises_root, settle_timeout_seconds=5)
    workspace = exercises_root / "python" / "alpha"

    started = time.monotonic()
    with pytest.raises(GradingTimeoutError) as error:
        asyncio.run(
            runner.run_command(
                python_command(GRANDCHILD_SCRIPT),
                cwd=workspace,
                timeout_seconds=3,
            ),
        )
    elapsed = time.monotonic() - started

    assert error.value.timeout_seconds == 3
    assert elapsed < 30
    grandchild = int((workspace / "grandchild.pid").read_text("utf-8"))
    deadline = time.monotonic() + 5
    while _alive(grandchild) and time.monotonic() < deadline:
        time.sleep(0.05)
    assert not _alive(grandchild)


def test_default_command_table_covers_every_language() -> None:
    posix = default_test_commands("linux")
    windows = default_test_commands("win32")

    assert set(posix) == {"go", "java", "javascript", "python", "rust"}
    assert posix["javascript"].commands == ("pnpm install", "pnpm test")
    assert posix["java"].commands == ("./gradlew test",)
    assert windows["java"].commands == ("gradlew.bat test",)
    assert "python3" in posix["python"].commands[0]
    assert "python3" not in windows["python"].commands[0]
