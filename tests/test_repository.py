from __future__ import annotations

import sqlite3
from pathlib import Path

import allure
import pytest
from conftest import create_run, create_tasks

from code_evals.evals.errors import EvalsError
from code_evals.evals.models import TokenUsage
from code_evals.evals.repository import EvalsRepository
from code_evals.storage.common import utc_now

pytestmark = [
    allure.epic("Run Orchestration"),
    allure.feature("Persist & Run Accounting"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = EvalsRepository(tmp_path / "migrations.db")
    repository.init_schema()
    repository.init_schema()
    repository.close()

    with sqlite3.connect(tmp_path / "migrations.db") as connection:
        version = connection.execute("SELECT version_num FROM alembic_version").fetchall()
        tables = connection.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name != 'alembic_version' "
            "ORDER BY name",
        ).fetchall()

    assert version == [("20261019_0001",)]
    assert [name for (name,) in tables] == ["runs", "task_metrics", "tasks", "tool_errors"]


def test_run_is_created_with_settings_snapshot(repository: EvalsRepository, tmp_path: Path) -> None:
    run = create_run(repository, tmp_path / "sock" / "run.sock", concurrency=3)

    loaded = repository.find_run(run.id)

    assert loaded.model == "test/model"
    assert loaded.concurrency == 3
    assert loaded.settings == {"openRouterModelId": "test/model"}
    assert loaded.socket_dir == tmp_path / "sock"
    assert loaded.finished_at is None
    assert loaded.created_at.tzinfo is not None


def test_missing_run_raises(repository: EvalsRepository) -> None:
    with pytest.raises(EvalsError, match="Run not found: 404"):
        repository.find_run(404)


def test_create_task_is_idempotent_per_run(repository: EvalsRepository, tmp_path: Path) -> None:
    run = create_run(repository, tmp_path / "run.sock")
    other = create_run(repository, tmp_path / "other.sock")

    first = repository.create_task(run_id=run.id, language="go", exercise="hello")
    again = repository.create_task(run_id=run.id, language="go", exercise="hello")
    elsewhere = repository.create_task(run_id=other.id, language="go", exercise="hello")

    assert again.id == first.id
    assert elsewhere.id != first.id
    assert [task.id for task in repository.get_tasks(run.id)] == [first.id]


def test_update_task_leaves_unset_fields(repository: EvalsRepository, tmp_path: Path) -> None:
    run = create_run(repository, tmp_path / "run.sock")
    (task,) = create_tasks(repository, run, [("rust", "clock")])
    started = utc_now()

    repository.update_task(task.id, started_at=started)
    updated = repository.update_task(task.id, passed=False)

    assert updated.started_at == started
    assert updated.finished_at is None
    assert updated.passed is False
    assert updated.label == f"rust / clock #{task.id}"


def test_metrics_and_tool_errors_round_trip(repository: EvalsRepository, tmp_path: Path) -> None:
    run = create_run(repository, tmp_path / "run.sock")
    (task,) = create_tasks(repository, run, [("python", "alpha")])
    metrics = repository.create_task_metrics()

    repository.update_task_metrics(
        metrics.id,
        usage=TokenUsage(total_cost=1.25, tokens_in=10, tokens_out=4, context_tokens=14),
        duration_ms=-5,
    )
    stored = repository.update_task_metrics(
        metrics.id,
        tool_usage={"read_file": {"attempts": 3, "failures": 1}},
    )
    repository.create_tool_error(
        run_id=run.id,
        task_id=task.id,
        tool_name="apply_diff",
        error="patch did not apply",
    )
    repository.create_tool_error(run_id=None, task_id=None, tool_name="x", error="orphan")

    assert stored.cost == 1.25
    assert stored.tokens_context == 14
    assert stored.duration_ms == 0
    assert stored.tool_usage == {"read_file": {"attempts": 3, "failures": 1}}
    assert [error.tool_name for error in repository.list_tool_errors(run_id=run.id)] == [
        "apply_diff",
    ]
    assert len(repository.list_tool_errors()) == 2


def test_finish_run_summarizes_tasks(repository: EvalsRepository, tmp_path: Path) -> None:
    run = create_run(repository, tmp_path / "run.sock")
    passed, failed, pending = create_tasks(
        repository,
        run,
        [("go", "a"), ("go", "b"), ("go", "c")],
    )
    for task, cost, duration in ((passed, 0.5, 1000), (failed, 0.25, 500)):
        metrics = repository.create_task_metrics()
        repository.update_task_metrics(
            metrics.id,
            usage=TokenUsage(total_cost=cost, tokens_in=100, tokens_out=10),
            duration_ms=duration,
        )
        repository.update_task(task.id, task_metrics_id=metrics.id)
    repository.update_task(passed.id, passed=True)
    repository.update_task(failed.id, passed=False)

    finished = repository.finish_run(run.id)

    assert finished.passed == 1
    assert finished.failed == 1
    assert finished.cost == pytest.approx(0.75)
    assert finished.tokens_in == 200
    assert finished.tokens_out == 20
    assert finished.duration_ms == 1500
    assert finished.finished_at is not None
    assert repository.get_task(pending.id).passed is None  # type: ignore[union-attr]


def test_finish_run_without_metrics(repository: EvalsRepository, tmp_path: Path) -> None:
    run = create_run(repository, tmp_path / "run.sock")

    finished = repository.finish_run(run.id)

    assert (finished.passed, finished.failed, finished.cost, finished.tokens_in) == (0, 0, 0.0, 0)


def test_list_runs_is_newest_first(repository: EvalsRepository, tmp_path: Path) -> None:
    ids = [create_run(repository, tmp_path / f"{index}.sock").id for index in range(3)]

    assert [run.id for run in repository.list_runs(limit=2)] == [ids[2], ids[1]]
