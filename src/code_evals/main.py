"""CLI entrypoint for code-evals."""

from pathlib import Path

import rich_click as click

from code_evals import __version__
from code_evals.evals.controllers import (
    EvalInspectCommand,
    EvalRunCommand,
    EvalRunsCommand,
    EvalsCliController,
    ExercisesPathMissingError,
)
from code_evals.evals.errors import EvalsError
from code_evals.evals.exercises import SUPPORTED_LANGUAGES
from code_evals.evals.models import ALL
from code_evals.ipc.channel import ChannelBindError

click.rich_click.USE_MARKDOWN = True
EVALS_CONTROLLER = EvalsCliController()


@click.group()
@click.version_option(version=__version__, prog_name="code-evals")
def code_evals() -> None:
    """Coding-agent benchmark runner."""


@code_evals.command("run")
@click.argument(
    "language",
    required=False,
    type=click.Choice([*SUPPORTED_LANGUAGES, ALL], case_sensitive=False),
)
@click.argument("exercise", required=False)
@click.option("--run-id", type=click.IntRange(min=1), default=None, help="Resume an existing run.")
@click.option(
    "--task",
    "task_paths",
    multiple=True,
    help="Explicit `language/exercise` to include. Can be repeated.",
)
@click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Max tasks in flight. Defaults to EVALS_CONCURRENCY.",
)
@click.option(
    "--git-isolation/--no-git-isolation",
    default=None,
    help=(
        "Branch and commit the exercises checkout around the run. "
        "Defaults to EVALS_GIT_ISOLATION."
    ),
)
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def run_command(  # noqa: PLR0913
    language: str | None,
    exercise: str | None,
    run_id: int | None,
    task_paths: tuple[str, ...],
    concurrency: int | None,
    git_isolation: bool | None,
    db_path: Path | None,
) -> None:
    """Run benchmark exercises, or resume a run with `--run-id`.

    Pass `all` as LANGUAGE for the full suite, or `all` as EXERCISE for every
    exercise of one language. A missing language or exercise is prompted for.
    """

    language = language.lower() if language else None
    try:
        if run_id is None and not task_paths:
            if language is None:
                language = click.prompt(
                    "Language",
                    type=click.Choice([*SUPPORTED_LANGUAGES, ALL], case_sensitive=False),
                ).lower()
            if language != ALL and exercise is None:
                choices = EVALS_CONTROLLER.exercise_choices(language)
                exercise = click.prompt("Exercise", type=click.Choice([*choices, ALL]))
        lines = EVALS_CONTROLLER.run(
            EvalRunCommand(
                db_path=db_path,
                language=language,
                exercise=exercise,
                run_id=run_id,
                concurrency=concurrency,
                task_paths=task_paths,
                git_isolation=git_isolation,
            ),
        )
    except (ValueError, ExercisesPathMissingError, EvalsError, ChannelBindError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@code_evals.command("runs")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="How many latest runs to display.",
)
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def runs_command(limit: int, db_path: Path | None) -> None:
    """List runs with their pass/fail and usage summary."""

    _emit_lines(EVALS_CONTROLLER.list_runs(EvalRunsCommand(db_path=db_path, limit=limit)))


@code_evals.command("inspect")
@click.option("--run-id", type=click.IntRange(min=1), required=True, help="Run to inspect.")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def inspect_command(run_id: int, db_path: Path | None) -> None:
    """Show tasks of a run with phase, result, metrics and tool errors."""

    try:
        lines = EVALS_CONTROLLER.inspect_run(EvalInspectCommand(db_path=db_path, run_id=run_id))
    except EvalsError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    code_evals()
