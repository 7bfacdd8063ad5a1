"""Persistence facade for runs, tasks, metrics and tool errors."""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy import func
from sqlmodel import Session, col, select

from code_evals.evals.errors import EvalsError
from code_evals.evals.models import (
    RunCreate,
    RunView,
    TaskMetricsView,
    TaskView,
    TokenUsage,
    ToolErrorView,
)
from code_evals.storage.alembic_runner import upgrade_head
from code_evals.storage.common import as_utc, build_sqlite_engine, utc_now
from code_evals.storage.sqlmodel_models import EvalRun, EvalTask, EvalTaskMetrics, EvalToolError


class EvalsRepository:
    """Run bookkeeping backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        upgrade_head(self.db_path)

    # Runs

    def create_run(self, payload: RunCreate) -> RunView:
        with Session(self.engine) as session:
            row = EvalRun(
                model=payload.model,
                concurrency=payload.concurrency,
                settings_json=json.dumps(payload.settings, sort_keys=True),
                socket_path=payload.socket_path,
                pid=payload.pid,
                created_at=utc_now(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_run_view(row)

    def find_run(self, run_id: int) -> RunView:
        """Load a run or raise if it does not exist."""

        with Session(self.engine) as session:
            row = session.get(EvalRun, run_id)
            if row is None:
                raise EvalsError(f"Run not found: {run_id}")
            return _to_run_view(row)

    def list_runs(self, *, limit: int = 20) -> list[RunView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(EvalRun).order_by(col(EvalRun.id).desc()).limit(max(1, limit)),
            ).all()
            return [_to_run_view(row) for row in rows]

    def finish_run(self, run_id: int) -> RunView:
        """Stamp ``finished_at`` and store the pass/fail and usage summary."""

        with Session(self.engine) as session:
            row = session.get(EvalRun, run_id)
            if row is None:
                raise EvalsError(f"Run not found: {run_id}")
            tasks = session.exec(select(EvalTask).where(EvalTask.run_id == run_id)).all()
            metric_ids = [
                task.task_metrics_id for task in tasks if task.task_metrics_id is not None
            ]
            totals = session.exec(
                select(
                    func.coalesce(func.sum(EvalTaskMetrics.cost), 0.0),
                    func.coalesce(func.sum(EvalTaskMetrics.tokens_in), 0),
                    func.coalesce(func.sum(EvalTaskMetrics.tokens_out), 0),
                    func.coalesce(func.sum(EvalTaskMetrics.duration_ms), 0),
                ).where(col(EvalTaskMetrics.id).in_(metric_ids)),
            ).one()

            row.passed = sum(1 for task in tasks if task.passed is True)
            row.failed = sum(1 for task in tasks if task.passed is False)
            row.cost = float(totals[0] or 0.0)
            row.tokens_in = int(totals[1] or 0)
            row.tokens_out = int(totals[2] or 0)
            row.duration_ms = int(totals[3] or 0)
            row.finished_at = utc_now()
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_run_view(row)

    # Tasks

    def create_task(self, *, run_id: int, language: str, exercise: str) -> TaskView:
        """Create a task, or return the existing one for the same run/language/exercise."""

        with Session(self.engine) as session:
            existing = session.exec(
                select(EvalTask).where(
                    EvalTask.run_id == run_id,
                    EvalTask.language == language,
                    EvalTask.exercise == exercise,
                ),
            ).one_or_none()
            if existing is not None:
                return _to_task_view(existing)
            row = EvalTask(
                run_id=run_id,
                language=language,
                exercise=exercise,
                created_at=utc_now(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def get_tasks(self, run_id: int) -> list[TaskView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(EvalTask).where(EvalTask.run_id == run_id).order_by(col(EvalTask.id).asc()),
            ).all()
            return [_to_task_view(row) for row in rows]

    def get_task(self, task_id: int) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(EvalTask, task_id)
            return _to_task_view(row) if row is not None else None

    def update_task(  # noqa: PLR0913
        self,
        task_id: int,
        *,
        started_at: datetime | None = None,
        finished_at: datetime | None = None,
        passed: bool | None = None,
        task_metrics_id: int | None = None,
    ) -> TaskView:
        """Set the given fields; ``None`` leaves a field unchanged."""

        with Session(self.engine) as session:
            row = session.get(EvalTask, task_id)
            if row is None:
                raise EvalsError(f"Task not found: {task_id}")
            if started_at is not None:
                row.started_at = started_at
            if finished_at is not None:
                row.finished_at = finished_at
            if passed is not None:
                row.passed = passed
            if task_metrics_id is not None:
                row.task_metrics_id = task_metrics_id
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    # Metrics

    def create_task_metrics(self) -> TaskMetricsView:
        with Session(self.engine) as session:
            row = EvalTaskMetrics(created_at=utc_now())
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_metrics_view(row)

    def update_task_metrics(
        self,
        metrics_id: int,
        *,
        usage: TokenUsage | None = None,
        duration_ms: int | None = None,
        tool_usage: dict[str, Any] | None = None,
    ) -> TaskMetricsView:
        with Session(self.engine) as session:
            row = session.get(EvalTaskMetrics, metrics_id)
            if row is None:
                raise EvalsError(f"Task metrics not found: {metrics_id}")
            if usage is not None:
                row.cost = usage.total_cost
                row.tokens_in = usage.tokens_in
                row.tokens_out = usage.tokens_out
                row.tokens_context = usage.context_tokens
                row.cache_writes = usage.cache_writes
                row.cache_reads = usage.cache_reads
            if duration_ms is not None:
                row.duration_ms = max(0, duration_ms)
            if tool_usage is not None:
                row.tool_usage_json = json.dumps(tool_usage, sort_keys=True)
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_metrics_view(row)

    def get_task_metrics(self, metrics_id: int) -> TaskMetricsView | None:
        with Session(self.engine) as session:
            row = session.get(EvalTaskMetrics, metrics_id)
            return _to_metrics_view(row) if row is not None else None

    # Tool errors

    def create_tool_error(
        self,
        *,
        run_id: int | None,
        task_id: int | None,
        tool_name: str,
        error: str,
    ) -> ToolErrorView:
        with Session(self.engine) as session:
            row = EvalToolError(
                run_id=run_id,
                task_id=task_id,
                tool_name=tool_name,
                error=error,
                created_at=utc_now(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_tool_error_view(row)

    def list_tool_errors(
        self,
        *,
        run_id: int | None = None,
        task_id: int | None = None,
    ) -> list[ToolErrorView]:
        with Session(self.engine) as session:
            statement = select(EvalToolError)
            if run_id is not None:
                statement = statement.where(EvalToolError.run_id == run_id)
            if task_id is not None:
                statement = statement.where(EvalToolError.task_id == task_id)
            rows = session.exec(statement.order_by(col(EvalToolError.id).asc())).all()
            return [_to_tool_error_view(row) for row in rows]


def _to_run_view(row: EvalRun) -> RunView:
    return RunView(
        id=int(row.id or 0),
        model=row.model,
        concurrency=row.concurrency,
        settings=_load_json_object(row.settings_json),
        socket_path=row.socket_path,
        pid=row.pid,
        passed=row.passed,
        failed=row.failed,
        cost=row.cost,
        tokens_in=row.tokens_in,
        tokens_out=row.tokens_out,
        duration_ms=row.duration_ms,
        created_at=as_utc(row.created_at) or utc_now(),
        finished_at=as_utc(row.finished_at),
    )


def _to_task_view(row: EvalTask) -> TaskView:
    return TaskView(
        id=int(row.id or 0),
        run_id=row.run_id,
        language=row.language,
        exercise=row.exercise,
        passed=row.passed,
        started_at=as_utc(row.started_at),
        finished_at=as_utc(row.finished_at),
        task_metrics_id=row.task_metrics_id,
        created_at=as_utc(row.created_at) or utc_now(),
    )


def _to_metrics_view(row: EvalTaskMetrics) -> TaskMetricsView:
    return TaskMetricsView(
        id=int(row.id or 0),
        cost=row.cost,
        tokens_in=row.tokens_in,
        tokens_out=row.tokens_out,
        tokens_context=row.tokens_context,
        duration_ms=row.duration_ms,
        cache_writes=row.cache_writes,
        cache_reads=row.cache_reads,
        tool_usage=_load_json_object(row.tool_usage_json),
        created_at=as_utc(row.created_at) or utc_now(),
    )


def _to_tool_error_view(row: EvalToolError) -> ToolErrorView:
    return ToolErrorView(
        id=int(row.id or 0),
        run_id=row.run_id,
        task_id=row.task_id,
        tool_name=row.tool_name,
        error=row.error,
        created_at=as_utc(row.created_at) or utc_now(),
    )


def _load_json_object(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return value if isinstance(value, dict) else {}
