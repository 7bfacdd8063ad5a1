"""Domain models for eval runs, tasks and telemetry."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

ALL = "all"


class TaskPhase(str, Enum):
    """Per-task lifecycle phases, ordered by progress."""

    CREATED = "created"
    LAUNCHING = "launching"
    AGENT_RUNNING = "agent_running"
    AGENT_FINISHED = "agent_finished"
    AGENT_ABORTED = "agent_aborted"
    VERIFYING = "verifying"
    GRADED = "graded"

    @property
    def rank(self) -> int:
        return _PHASE_RANK[self]

    @property
    def agent_done(self) -> bool:
        return self.rank >= _PHASE_RANK[TaskPhase.AGENT_FINISHED]


_PHASE_RANK = {
    TaskPhase.CREATED: 0,
    TaskPhase.LAUNCHING: 1,
    TaskPhase.AGENT_RUNNING: 2,
    TaskPhase.AGENT_FINISHED: 3,
    TaskPhase.AGENT_ABORTED: 3,
    TaskPhase.VERIFYING: 4,
    TaskPhase.GRADED: 5,
}


@dataclass(slots=True)
class RunCreate:
    """Input payload for a new run."""

    model: str
    concurrency: int
    settings: dict[str, Any]
    socket_path: str
    pid: int | None = None


@dataclass(slots=True)
class RunView:
    """Readable run view for CLI and coordinator logic."""

    id: int
    model: str
    concurrency: int
    settings: dict[str, Any]
    socket_path: str
    pid: int | None
    passed: int
    failed: int
    cost: float
    tokens_in: int
    tokens_out: int
    duration_ms: int
    created_at: datetime
    finished_at: datetime | None

    @property
    def socket_dir(self) -> Path:
        return Path(self.socket_path).parent


@dataclass(slots=True)
class TaskView:
    """One (language, exercise) pair within a run."""

    id: int
    run_id: int
    language: str
    exercise: str
    passed: bool | None
    started_at: datetime | None
    finished_at: datetime | None
    task_metrics_id: int | None
    created_at: datetime

    @property
    def label(self) -> str:
        return f"{self.language} / {self.exercise} #{self.id}"


@dataclass(slots=True)
class TokenUsage:
    """Cumulative usage counters reported by the agent."""

    total_cost: float = 0.0
    tokens_in: int = 0
    tokens_out: int = 0
    context_tokens: int = 0
    cache_writes: int = 0
    cache_reads: int = 0

    @classmethod
    def from_payload(cls, raw: Any) -> TokenUsage | None:
        if not isinstance(raw, dict):
            return None
        return cls(
            total_cost=_as_float(raw.get("totalCost")),
            tokens_in=_as_int(raw.get("totalTokensIn")),
            tokens_out=_as_int(raw.get("totalTokensOut")),
            context_tokens=_as_int(raw.get("contextTokens")),
            cache_writes=_as_int(raw.get("totalCacheWrites")),
            cache_reads=_as_int(raw.get("totalCacheReads")),
        )


@dataclass(slots=True)
class TaskMetricsView:
    id: int
    cost: float
    tokens_in: int
    tokens_out: int
    tokens_context: int
    duration_ms: int
    cache_writes: int
    cache_reads: int
    tool_usage: dict[str, dict[str, int]]
    created_at: datetime


@dataclass(slots=True)
class ToolErrorView:
    id: int
    run_id: int | None
    task_id: int | None
    tool_name: str
    error: str
    created_at: datetime


@dataclass(slots=True)
class TaskResult:
    """Outcome of one task future."""

    success: bool
    passed: bool | None = None


@dataclass(slots=True)
class RunSelection:
    """What to run: a language or ``all``, an exercise or ``all``, explicit
    ``language/exercise`` paths, or an existing run."""

    language: str | None = None
    exercise: str | None = None
    run_id: int | None = None
    task_paths: tuple[str, ...] = ()


@dataclass(slots=True)
class RunOutcome:
    run: RunView
    results: list[tuple[int, TaskResult]] = field(default_factory=list)
    max_in_flight: int = 0


def phase_from_record(task: TaskView) -> TaskPhase:
    """Derive the resume phase from persisted task state."""

    if task.passed is not None:
        return TaskPhase.GRADED
    if task.finished_at is not None:
        return TaskPhase.AGENT_FINISHED
    if task.started_at is not None:
        return TaskPhase.AGENT_RUNNING
    return TaskPhase.CREATED


def _as_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0
