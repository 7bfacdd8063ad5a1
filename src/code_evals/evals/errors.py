"""Exceptions raised by the eval run pipeline."""

from __future__ import annotations


class EvalsError(RuntimeError):
    """Base class for run and task failures."""


class TaskListError(EvalsError):
    """Run has no tasks to schedule, or the selection cannot produce any."""


class WorkerLaunchError(EvalsError):
    """Worker process could not be started or reached."""


class ConnectTimeoutError(WorkerLaunchError):
    """Worker did not complete the IPC handshake in time."""

    def __init__(self, message: str, *, endpoint: str, waited_seconds: float) -> None:
        super().__init__(message)
        self.endpoint = endpoint
        self.waited_seconds = waited_seconds


class LifecycleTimeoutError(EvalsError):
    """Agent phase did not finish within the task timeout."""

    def __init__(self, message: str, *, timeout_seconds: float) -> None:
        super().__init__(message)
        self.timeout_seconds = timeout_seconds


class GradingTimeoutError(EvalsError):
    """A grading command exceeded its timeout and its process tree was killed."""

    def __init__(self, message: str, *, command: str, timeout_seconds: float) -> None:
        super().__init__(message)
        self.command = command
        self.timeout_seconds = timeout_seconds


class GradingCommandError(EvalsError):
    """A grading command exited with a non-zero status."""

    def __init__(
        self,
        message: str,
        *,
        command: str,
        exit_code: int | None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


class WorkspaceError(EvalsError):
    """A git command on the exercises checkout failed."""

    def __init__(self, message: str, *, command: str, stderr: str = "") -> None:
        super().__init__(message)
        self.command = command
        self.stderr = stderr
