"""Shared test fixtures."""

from __future__ import annotations

import asyncio
import os
import shlex
import shutil
import sys
import tempfile
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from code_evals.evals.models import RunCreate, RunView, TaskView
from code_evals.evals.repository import EvalsRepository

SRC_DIR = Path(__file__).resolve().parents[1] / "src"

ECHO_WORKER_COMMAND_TEMPLATE = (
    f"{shlex.quote(sys.executable)} -m code_evals.evals.echo_worker {{workspace}}"
)


def python_command(code: str) -> str:
    """Shell-style command line running ``code`` with the current interpreter."""

    return f"{shlex.quote(sys.executable)} -c {shlex.quote(code)}"


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() >= deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture()
def socket_dir() -> Iterator[Path]:
    """Short directory for Unix socket endpoints (path length is limited)."""

    path = Path(tempfile.mkdtemp(prefix="ce-"))
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)


@pytest.fixture()
def worker_env(monkeypatch) -> None:
    """Make ``python -m code_evals...`` importable from child processes."""

    existing = os.environ.get("PYTHONPATH")
    value = str(SRC_DIR) if not existing else os.pathsep.join([str(SRC_DIR), existing])
    monkeypatch.setenv("PYTHONPATH", value)


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[EvalsRepository]:
    repo = EvalsRepository(tmp_path / "evals.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def exercises_root(tmp_path: Path) -> Path:
    root = tmp_path / "exercises"
    for language, exercises in {"python": ("alpha", "beta"), "go": ("hello",)}.items():
        for exercise in exercises:
            (root / language / exercise).mkdir(parents=True)
        (root / language / ".hidden").mkdir()
    (root / "prompts").mkdir()
    (root / "prompts" / "python.md").write_text("Solve the python exercise.", "utf-8")
    (root / "prompts" / "go.md").write_text("Solve the go exercise.", "utf-8")
    return root


def create_run(repository: EvalsRepository, socket_path: Path, *, concurrency: int = 2) -> RunView:
    return repository.create_run(
        RunCreate(
            model="test/model",
            concurrency=concurrency,
            settings={"openRouterModelId": "test/model"},
            socket_path=str(socket_path),
            pid=os.getpid(),
        ),
    )


def create_tasks(
    repository: EvalsRepository,
    run: RunView,
    pairs: list[tuple[str, str]],
) -> list[TaskView]:
    return [
        repository.create_task(run_id=run.id, language=language, exercise=exercise)
        for language, exercise in pairs
    ]
