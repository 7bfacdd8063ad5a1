"""SQLModel ORM tables for eval runs."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class EvalRun(SQLModel, table=True):
    __tablename__ = "runs"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    model: str
    concurrency: int = 2
    settings_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    socket_path: str
    pid: int | None = None
    passed: int = 0
    failed: int = 0
    cost: float = 0.0
    tokens_in: int = 0
    tokens_out: int = 0
    duration_ms: int = 0
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class EvalTaskMetrics(SQLModel, table=True):
    __tablename__ = "task_metrics"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    cost: float = 0.0
    tokens_in: int = 0
    tokens_out: int = 0
    tokens_context: int = 0
    duration_ms: int = 0
    cache_writes: int = 0
    cache_reads: int = 0
    tool_usage_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class EvalTask(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("run_id", "language", "exercise", name="uq_tasks_run_language_exercise"),
    )

    id: int | None = Field(default=None, primary_key=True)
    run_id: int = Field(
        sa_column=Column(ForeignKey("runs.id", ondelete="CASCADE"), nullable=False, index=True),
    )
    task_metrics_id: int | None = Field(
        default=None,
        sa_column=Column(ForeignKey("task_metrics.id", ondelete="SET NULL"), nullable=True),
    )
    language: str = Field(index=True)
    exercise: str
    passed: bool | None = None
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class EvalToolError(SQLModel, table=True):
    __tablename__ = "tool_errors"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    run_id: int | None = Field(
        default=None,
        sa_column=Column(ForeignKey("runs.id", ondelete="CASCADE"), nullable=True, index=True),
    )
    task_id: int | None = Field(
        default=None,
        sa_column=Column(ForeignKey("tasks.id", ondelete="CASCADE"), nullable=True, index=True),
    )
    tool_name: str
    error: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
