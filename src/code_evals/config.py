"""Runtime configuration for eval runs."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_MODEL = "anthropic/claude-3.7-sonnet"
DEFAULT_WORKER_COMMAND = "code --disable-workspace-trust -n {workspace}"
DEFAULT_SOCKET_ENV_VAR = "CODE_EVALS_IPC_SOCKET_PATH"


@dataclass(slots=True)
class RunDefaults:
    """Defaults applied when a new run is created."""

    model: str = DEFAULT_MODEL
    concurrency: int = 2
    api_key_env: str = "OPENROUTER_API_KEY"
    git_isolation: bool = True


@dataclass(slots=True)
class TimingSettings:
    """Timeouts, grace periods and poll intervals, in seconds."""

    task_start_delay_seconds: float = 10.0
    task_timeout_seconds: float = 300.0
    unit_test_timeout_seconds: float = 120.0
    connect_timeout_seconds: float = 5.0
    connect_poll_seconds: float = 0.25
    spawn_settle_seconds: float = 3.0
    cancel_grace_seconds: float = 5.0
    close_grace_seconds: float = 2.0


@dataclass(slots=True)
class WorkerSettings:
    """How an agent worker process is started."""

    command_template: str = DEFAULT_WORKER_COMMAND
    socket_env_var: str = DEFAULT_SOCKET_ENV_VAR


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".code_evals.db")
    exercises_path: Path = Path("exercises")
    logs_dir: Path = Path("logs")
    log_file: Path | None = None
    run: RunDefaults = field(default_factory=RunDefaults)
    timing: TimingSettings = field(default_factory=TimingSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        log_file = os.getenv("EVALS_LOG_FILE", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("EVALS_DB_PATH", ".code_evals.db")),
            exercises_path=Path(os.getenv("EVALS_EXERCISES_PATH", "exercises")),
            logs_dir=Path(os.getenv("EVALS_LOGS_DIR", "logs")),
            log_file=Path(log_file) if log_file else None,
            run=RunDefaults(
                model=os.getenv("EVALS_MODEL", DEFAULT_MODEL),
                concurrency=_env_int("EVALS_CONCURRENCY", 2),
                api_key_env=os.getenv("EVALS_API_KEY_ENV", "OPENROUTER_API_KEY"),
                git_isolation=_env_bool("EVALS_GIT_ISOLATION", default=True),
            ),
            timing=TimingSettings(
                task_start_delay_seconds=_env_float("EVALS_TASK_START_DELAY_SECONDS", 10.0),
                task_timeout_seconds=_env_float("EVALS_TASK_TIMEOUT_SECONDS", 300.0),
                unit_test_timeout_seconds=_env_float("EVALS_UNIT_TEST_TIMEOUT_SECONDS", 120.0),
                connect_timeout_seconds=_env_float("EVALS_CONNECT_TIMEOUT_SECONDS", 5.0),
                connect_poll_seconds=_env_float("EVALS_CONNECT_POLL_SECONDS", 0.25),
                spawn_settle_seconds=_env_float("EVALS_SPAWN_SETTLE_SECONDS", 3.0),
                cancel_grace_seconds=_env_float("EVALS_CANCEL_GRACE_SECONDS", 5.0),
                close_grace_seconds=_env_float("EVALS_CLOSE_GRACE_SECONDS", 2.0),
            ),
            worker=WorkerSettings(
                command_template=os.getenv("EVALS_WORKER_COMMAND", DEFAULT_WORKER_COMMAND),
                socket_env_var=os.getenv("EVALS_SOCKET_ENV_VAR", DEFAULT_SOCKET_ENV_VAR),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if run settings are unusable."""

        if self.run.concurrency < 1:
            raise ValueError("EVALS_CONCURRENCY must be >= 1.")
        if not self.run.model.strip():
            raise ValueError("EVALS_MODEL must not be empty.")
        if "{workspace}" not in self.worker.command_template:
            raise ValueError(
                "EVALS_WORKER_COMMAND must contain a {workspace} placeholder: "
                f"{self.worker.command_template!r}",
            )
        if not self.worker.socket_env_var.strip():
            raise ValueError("EVALS_SOCKET_ENV_VAR must not be empty.")

        timing = self.timing
        positive = {
            "EVALS_TASK_TIMEOUT_SECONDS": timing.task_timeout_seconds,
            "EVALS_UNIT_TEST_TIMEOUT_SECONDS": timing.unit_test_timeout_seconds,
            "EVALS_CONNECT_TIMEOUT_SECONDS": timing.connect_timeout_seconds,
            "EVALS_CONNECT_POLL_SECONDS": timing.connect_poll_seconds,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ValueError(f"{name} must be > 0.")
        non_negative = {
            "EVALS_TASK_START_DELAY_SECONDS": timing.task_start_delay_seconds,
            "EVALS_SPAWN_SETTLE_SECONDS": timing.spawn_settle_seconds,
            "EVALS_CANCEL_GRACE_SECONDS": timing.cancel_grace_seconds,
            "EVALS_CLOSE_GRACE_SECONDS": timing.close_grace_seconds,
        }
        for name, value in non_negative.items():
            if value < 0:
                raise ValueError(f"{name} must be >= 0.")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as error:
        raise ValueError(f"Invalid number for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as error:
        raise ValueError(f"Invalid number for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
