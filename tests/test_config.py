from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

import allure
import pytest

from code_evals.config import DEFAULT_SOCKET_ENV_VAR, DEFAULT_WORKER_COMMAND, Settings
from code_evals.logs import configure_logging, default_log_file

pytestmark = [
    allure.epic("Run Orchestration"),
    allure.feature("Configuration"),
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "EVALS_DB_PATH",
        "EVALS_EXERCISES_PATH",
        "EVALS_LOGS_DIR",
        "EVALS_LOG_FILE",
        "EVALS_MODEL",
        "EVALS_CONCURRENCY",
        "EVALS_GIT_ISOLATION",
        "EVALS_WORKER_COMMAND",
        "EVALS_SOCKET_ENV_VAR",
        "EVALS_TASK_TIMEOUT_SECONDS",
        "EVALS_TASK_START_DELAY_SECONDS",
    ):
        monkeypatch.delenv(name, raising=False)


def test_defaults_without_environment() -> None:
    settings = Settings.from_env()

    assert settings.db_path == Path(".code_evals.db")
    assert settings.exercises_path == Path("exercises")
    assert settings.log_file is None
    assert settings.run.concurrency == 2
    assert settings.run.git_isolation is True
    assert settings.timing.task_start_delay_seconds == 10.0
    assert settings.timing.task_timeout_seconds == 300.0
    assert settings.timing.unit_test_timeout_seconds == 120.0
    assert settings.worker.command_template == DEFAULT_WORKER_COMMAND
    assert settings.worker.socket_env_var == DEFAULT_SOCKET_ENV_VAR
    settings.validate()


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("EVALS_EXERCISES_PATH", str(tmp_path / "ex"))
    monkeypatch.setenv("EVALS_LOG_FILE", str(tmp_path / "run.log"))
    monkeypatch.setenv("EVALS_MODEL", "openai/gpt-4.1")
    monkeypatch.setenv("EVALS_CONCURRENCY", "4")
    monkeypatch.setenv("EVALS_GIT_ISOLATION", "off")
    monkeypatch.setenv("EVALS_TASK_TIMEOUT_SECONDS", "45.5")
    monkeypatch.setenv("EVALS_WORKER_COMMAND", "worker --dir {workspace}")

    settings = Settings.from_env(db_path=tmp_path / "explicit.db")

    assert settings.db_path == tmp_path / "explicit.db"
    assert settings.exercises_path == tmp_path / "ex"
    assert settings.log_file == tmp_path / "run.log"
    assert settings.run.model == "openai/gpt-4.1"
    assert settings.run.concurrency == 4
    assert settings.run.git_isolation is False
    assert settings.timing.task_timeout_seconds == 45.5
    assert settings.worker.command_template == "worker --dir {workspace}"


@pytest.mark.parametrize(
    ("name", "value", "match"),
    [
        ("EVALS_GIT_ISOLATION", "maybe", "Invalid boolean value for EVALS_GIT_ISOLATION"),
        ("EVALS_TASK_TIMEOUT_SECONDS", "soon", "Invalid number for EVALS_TASK_TIMEOUT_SECONDS"),
        ("EVALS_CONCURRENCY", "two", "Invalid number for EVALS_CONCURRENCY"),
    ],
)
def test_unparseable_environment_values(
    monkeypatch: pytest.MonkeyPatch,
    name: str,
    value: str,
    match: str,
) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=match):
        Settings.from_env()


def test_validate_rejects_zero_concurrency() -> None:
    settings = Settings()
    settings.run.concurrency = 0

    with pytest.raises(ValueError, match="EVALS_CONCURRENCY must be >= 1"):
        settings.validate()


def test_validate_requires_workspace_placeholder() -> None:
    settings = Settings()
    settings.worker.command_template = "code -n"

    with pytest.raises(ValueError, match="placeholder"):
        settings.validate()


def test_validate_rejects_non_positive_timeouts() -> None:
    settings = Settings()
    settings.timing.task_timeout_seconds = 0

    with pytest.raises(ValueError, match="EVALS_TASK_TIMEOUT_SECONDS must be > 0"):
        settings.validate()


def test_validate_allows_zero_start_delay() -> None:
    settings = Settings()
    settings.timing.task_start_delay_seconds = 0
    settings.validate()

    settings.timing.cancel_grace_seconds = -1
    with pytest.raises(ValueError, match="EVALS_CANCEL_GRACE_SECONDS must be >= 0"):
        settings.validate()


def test_default_log_file_is_timestamped(tmp_path: Path) -> None:
    path = default_log_file(tmp_path, now=datetime(2026, 10, 19, 8, 5, 3))

    assert path == tmp_path / "test-run-20261019080503.log"


def test_configure_logging_writes_file_and_replaces_handlers(tmp_path: Path) -> None:
    log_file = tmp_path / "logs" / "run.log"
    logger = logging.getLogger("code_evals")
    try:
        configure_logging(log_file)
        configure_logging(log_file)
        logging.getLogger("code_evals.evals.test").info("hello %s", "world")
        for handler in logger.handlers:
            handler.flush()

        assert len(logger.handlers) == 2
        assert "INFO [code_evals.evals.test] hello world" in log_file.read_text("utf-8")
    finally:
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()
