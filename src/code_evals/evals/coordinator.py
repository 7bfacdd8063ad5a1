"""Create or resume a run, schedule its tasks and finalize the summary."""

from __future__ import annotations

import logging
import os
import tempfile
from contextlib import suppress
from pathlib import Path
from typing import Any
from uuid import uuid4

from code_evals.config import Settings
from code_evals.evals.errors import TaskListError
from code_evals.evals.exercises import (
    SUPPORTED_LANGUAGES,
    ExerciseCatalog,
    parse_task_path,
    validate_language,
)
from code_evals.evals.launcher import WorkerLauncher
from code_evals.evals.lifecycle import EventFilters, PhaseTracker, TaskLifecycleMonitor
from code_evals.evals.models import ALL, RunCreate, RunOutcome, RunSelection, RunView
from code_evals.evals.process_tree import ProcessTreeKiller, select_process_tree_killer
from code_evals.evals.repository import EvalsRepository
from code_evals.evals.scheduler import TaskGrader, TaskScheduler
from code_evals.evals.verification import VerificationRunner
from code_evals.evals.workspace import GitWorkspace
from code_evals.ipc.channel import IpcServer
from code_evals.ipc.messages import IpcOrigin

logger = logging.getLogger(__name__)

AGENT_DEFAULTS: dict[str, Any] = {
    "apiProvider": "openrouter",
    "mode": "code",
    "autoApprovalEnabled": True,
    "alwaysAllowReadOnly": True,
    "alwaysAllowReadOnlyOutsideWorkspace": False,
    "alwaysAllowWrite": True,
    "alwaysAllowWriteOutsideWorkspace": False,
    "alwaysAllowExecute": True,
    "alwaysAllowBrowser": True,
    "alwaysApproveResubmit": True,
    "allowedCommands": ["*"],
    "requestDelaySeconds": 10,
}
API_KEY_SETTING = "openRouterApiKey"
MODEL_SETTING = "openRouterModelId"


def merged_agent_settings(model: str, overrides: dict[str, Any] | None = None) -> dict[str, Any]:
    return {**AGENT_DEFAULTS, MODEL_SETTING: model, **(overrides or {})}


def agent_configuration(run: RunView, *, api_key_env: str) -> dict[str, Any]:
    """Agent defaults, then the API key from the environment, then the run's settings."""

    configuration: dict[str, Any] = dict(AGENT_DEFAULTS)
    api_key = os.getenv(api_key_env)
    if api_key:
        configuration[API_KEY_SETTING] = api_key
    configuration.update(run.settings)
    return configuration


def new_run_socket_path() -> Path:
    return Path(tempfile.gettempdir()) / f"code-evals-{uuid4().hex[:8]}" / "run.sock"


class RunCoordinator:
    """Wires channel, launcher, lifecycle, scheduler and grading for one run."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: Settings,
        repository: EvalsRepository,
        catalog: ExerciseCatalog | None = None,
        workspace: GitWorkspace | None = None,
        verifier: TaskGrader | None = None,
        killer: ProcessTreeKiller | None = None,
        concurrency: int | None = None,
        filters: EventFilters | None = None,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.catalog = catalog or ExerciseCatalog(settings.exercises_path)
        self.workspace = workspace
        self.killer = killer or select_process_tree_killer()
        self.verifier = verifier or VerificationRunner(
            exercises_root=self.catalog.root,
            default_timeout_seconds=settings.timing.unit_test_timeout_seconds,
            killer=self.killer,
        )
        self.concurrency = concurrency
        self.filters = filters
        self.phases = PhaseTracker()

    def task_pairs(self, selection: RunSelection) -> list[tuple[str, str]]:
        """Expand a selection into (language, exercise) pairs."""

        language = selection.language
        exercise = selection.exercise
        if language == ALL:
            return [
                (name, item)
                for name, items in self.catalog.all_exercises().items()
                for item in items
            ]
        if not language:
            raise TaskListError("A language is required to create a run.")
        try:
            language = validate_language(language)
        except ValueError as error:
            raise TaskListError(str(error)) from error
        if exercise == ALL:
            return [(language, item) for item in self.catalog.exercises(language)]
        if not exercise:
            raise TaskListError("An exercise is required when a single language is selected.")
        if exercise not in self.catalog.exercises(language):
            raise TaskListError(f"Exercise not found: {language}/{exercise}")
        return [(language, exercise)]

    def create_run(
        self,
        pairs: list[tuple[str, str]],
        *,
        settings_overrides: dict[str, Any] | None = None,
    ) -> RunView:
        if not pairs:
            raise TaskListError("No tasks found.")
        model = self.settings.run.model
        run = self.repository.create_run(
            RunCreate(
                model=model,
                concurrency=self.concurrency or self.settings.run.concurrency,
                settings=merged_agent_settings(model, settings_overrides),
                socket_path=str(new_run_socket_path()),
                pid=os.getpid(),
            ),
        )
        for language, exercise in pairs:
            self.repository.create_task(run_id=run.id, language=language, exercise=exercise)
        logger.info("Created run #%s with %d task(s)", run.id, len(pairs))
        return run

    def resolve_run(self, selection: RunSelection) -> RunView:
        if selection.run_id is not None:
            return self.repository.find_run(selection.run_id)
        if selection.task_paths:
            try:
                pairs = [parse_task_path(path) for path in selection.task_paths]
            except ValueError as error:
                raise TaskListError(str(error)) from error
        else:
            pairs = self.task_pairs(selection)
        return self.create_run(pairs)

    async def run(self, selection: RunSelection) -> RunOutcome:
        """Execute a run end to end. ``ChannelBindError`` and ``TaskListError`` are fatal."""

        if selection.language not in (None, ALL, *SUPPORTED_LANGUAGES):
            raise TaskListError(f"Language is invalid: {selection.language}")

        run = self.resolve_run(selection)
        tasks = self.repository.get_tasks(run.id)
        if not tasks:
            raise TaskListError("No tasks found.")
        logger.info(
            "Run #%s: %d task(s), model=%s, concurrency=%s",
            run.id,
            len(tasks),
            run.model,
            run.concurrency,
        )

        if self.workspace is not None:
            self.workspace.prepare_run_branch(run.id)
            self.workspace.write_settings(run.settings)

        server = IpcServer(run.socket_path, origin=IpcOrigin.COORDINATOR)
        await server.listen()
        try:
            timing = self.settings.timing
            launcher = WorkerLauncher(
                socket_dir=run.socket_dir,
                command_template=self.settings.worker.command_template,
                socket_env_var=self.settings.worker.socket_env_var,
                connect_timeout_seconds=timing.connect_timeout_seconds,
                connect_poll_seconds=timing.connect_poll_seconds,
                spawn_settle_seconds=timing.spawn_settle_seconds,
                logs_dir=self.settings.logs_dir / f"run-{run.id}",
                killer=self.killer,
            )
            monitor = TaskLifecycleMonitor(
                repository=self.repository,
                server=server,
                launcher=launcher,
                catalog=self.catalog,
                run=run,
                agent_configuration=agent_configuration(
                    run,
                    api_key_env=self.settings.run.api_key_env,
                ),
                task_timeout_seconds=timing.task_timeout_seconds,
                cancel_grace_seconds=timing.cancel_grace_seconds,
                close_grace_seconds=timing.close_grace_seconds,
                filters=self.filters,
                phases=self.phases,
            )
            scheduler = TaskScheduler(
                repository=self.repository,
                server=server,
                lifecycle=monitor,
                verifier=self.verifier,
                concurrency=run.concurrency,
                task_start_delay_seconds=timing.task_start_delay_seconds,
                phases=self.phases,
            )
            results = await scheduler.run(tasks)
            finished = self.repository.finish_run(run.id)
        finally:
            await server.close()
            with suppress(OSError):
                run.socket_dir.rmdir()

        logger.info(
            "Run #%s finished: passed=%s failed=%s cost=%.4f",
            finished.id,
            finished.passed,
            finished.failed,
            finished.cost,
        )
        if self.workspace is not None:
            self.workspace.commit_run(run.id)
        return RunOutcome(run=finished, results=results, max_in_flight=scheduler.max_in_flight)
