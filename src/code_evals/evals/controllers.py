"""Controllers for eval CLI commands."""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from code_evals.config import Settings
from code_evals.evals.coordinator import RunCoordinator
from code_evals.evals.exercises import ExerciseCatalog
from code_evals.evals.models import RunSelection, RunView, TaskResult, phase_from_record
from code_evals.evals.repository import EvalsRepository
from code_evals.evals.workspace import GitWorkspace
from code_evals.logs import configure_logging, default_log_file


@dataclass(slots=True)
class EvalRunCommand:
    """CLI input for executing or resuming a run."""

    db_path: Path | None
    language: str | None
    exercise: str | None
    run_id: int | None = None
    concurrency: int | None = None
    task_paths: tuple[str, ...] = ()
    git_isolation: bool | None = None


@dataclass(slots=True)
class EvalRunsCommand:
    """CLI input for run listing."""

    db_path: Path | None
    limit: int = 20


@dataclass(slots=True)
class EvalInspectCommand:
    """CLI input for per-task run inspection."""

    db_path: Path | None
    run_id: int


class ExercisesPathMissingError(FileNotFoundError):
    """The configured exercises checkout does not exist."""


class EvalsCliController:
    """Coordinates run execution and inspection CLI operations."""

    def exercise_choices(self, language: str) -> list[str]:
        settings = Settings.from_env()
        catalog = ExerciseCatalog(settings.exercises_path)
        if not catalog.exists():
            raise ExercisesPathMissingError(
                f"Exercises path does not exist: {settings.exercises_path}",
            )
        return catalog.exercises(language)

    def run(self, command: EvalRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if command.concurrency is not None:
            settings.run.concurrency = command.concurrency
        if command.git_isolation is not None:
            settings.run.git_isolation = command.git_isolation
        settings.validate()
        if not settings.exercises_path.is_dir():
            raise ExercisesPathMissingError(
                f"Exercises path does not exist: {settings.exercises_path}",
            )

        log_file = configure_logging(settings.log_file or default_log_file(settings.logs_dir))
        with _repository(settings) as repository:
            coordinator = RunCoordinator(
                settings=settings,
                repository=repository,
                workspace=(
                    GitWorkspace(settings.exercises_path) if settings.run.git_isolation else None
                ),
                concurrency=command.concurrency,
            )
            outcome = asyncio.run(
                coordinator.run(
                    RunSelection(
                        language=command.language,
                        exercise=command.exercise,
                        run_id=command.run_id,
                        task_paths=command.task_paths,
                    ),
                ),
            )

        lines = [
            _run_summary(outcome.run),
            f"Tasks: {len(outcome.results)} max_in_flight={outcome.max_in_flight}",
        ]
        lines.extend(_result_line(task_id, result) for task_id, result in outcome.results)
        if log_file is not None:
            lines.append(f"Log: {log_file}")
        return lines

    def list_runs(self, command: EvalRunsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            runs = repository.list_runs(limit=command.limit)

        lines = [f"Runs: {len(runs)}"]
        lines.extend(f"  {_run_summary(run)}" for run in runs)
        return lines

    def inspect_run(self, command: EvalInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            run = repository.find_run(command.run_id)
            tasks = repository.get_tasks(run.id)
            metrics = {
                task.id: repository.get_task_metrics(task.task_metrics_id)
                for task in tasks
                if task.task_metrics_id is not None
            }
            tool_errors = repository.list_tool_errors(run_id=run.id)

        lines = [_run_summary(run), f"Tasks: {len(tasks)}"]
        for task in tasks:
            task_metrics = metrics.get(task.id)
            usage = (
                f"cost=${task_metrics.cost:.4f} tokens_in={task_metrics.tokens_in} "
                f"tokens_out={task_metrics.tokens_out} duration_ms={task_metrics.duration_ms}"
                if task_metrics is not None
                else "metrics=-"
            )
            lines.append(
                f"  #{task.id} {task.language}/{task.exercise} "
                f"phase={phase_from_record(task).value} passed={_tri_state(task.passed)} {usage}",
            )
        lines.append(f"Tool errors: {len(tool_errors)}")
        for tool_error in tool_errors:
            lines.append(
                f"  task=#{tool_error.task_id} tool={tool_error.tool_name} "
                f"error={tool_error.error}",
            )
        return lines


def _run_summary(run: RunView) -> str:
    finished = run.finished_at.isoformat() if run.finished_at is not None else "-"
    return (
        f"Run #{run.id} model={run.model} concurrency={run.concurrency} "
        f"passed={run.passed} failed={run.failed} cost=${run.cost:.4f} "
        f"tokens_in={run.tokens_in} tokens_out={run.tokens_out} "
        f"created_at={run.created_at.isoformat()} finished_at={finished}"
    )


def _result_line(task_id: int, result: TaskResult) -> str:
    return f"  #{task_id} success={result.success} passed={_tri_state(result.passed)}"


def _tri_state(value: bool | None) -> str:
    if value is None:
        return "-"
    return "yes" if value else "no"


@contextmanager
def _repository(settings: Settings) -> Iterator[EvalsRepository]:
    repository = EvalsRepository(db_path=settings.db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
