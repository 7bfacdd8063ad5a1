"""Per-task lifecycle: a pure event state machine and the monitor that drives it.

``transition`` maps ``(state, event, payload, now)`` to a new state plus a list
of effects and never touches I/O. ``TaskLifecycleMonitor`` launches the worker,
feeds inbound channel events through ``transition`` and executes the effects
against the repository.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Any

from code_evals.evals.errors import LifecycleTimeoutError, WorkerLaunchError
from code_evals.evals.exercises import ExerciseCatalog
from code_evals.evals.launcher import LaunchedWorker, WorkerLauncher
from code_evals.evals.models import RunView, TaskPhase, TaskResult, TaskView, TokenUsage
from code_evals.evals.repository import EvalsRepository
from code_evals.ipc.channel import IpcServer
from code_evals.ipc.messages import (
    AgentEventName,
    IpcMessage,
    IpcMessageType,
    IpcOrigin,
    TaskCommandName,
    start_new_task_command,
    task_command,
    task_event,
)
from code_evals.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_BROADCAST_IGNORE = frozenset({AgentEventName.MESSAGE.value})
DEFAULT_LOG_IGNORE = frozenset(
    {
        AgentEventName.MESSAGE.value,
        AgentEventName.USAGE_UPDATED.value,
        AgentEventName.ASK_RESPONDED.value,
    },
)


@dataclass(slots=True)
class LifecycleState:
    phase: TaskPhase = TaskPhase.LAUNCHING
    agent_run_id: str | None = None
    started_at: float | None = None
    has_metrics: bool = False


@dataclass(slots=True)
class CreateMetrics:
    pass


@dataclass(slots=True)
class MarkStarted:
    pass


@dataclass(slots=True)
class RecordToolError:
    tool_name: str
    error: str


@dataclass(slots=True)
class UpdateMetrics:
    usage: TokenUsage
    duration_ms: int


@dataclass(slots=True)
class RecordToolUsage:
    tool_usage: dict[str, Any]


@dataclass(slots=True)
class MarkFinished:
    pass


Effect = (
    CreateMetrics | MarkStarted | RecordToolError | UpdateMetrics | RecordToolUsage | MarkFinished
)


def transition(
    state: LifecycleState,
    event_name: str,
    payload: list[Any],
    now: float,
) -> tuple[LifecycleState, list[Effect]]:
    """Apply one worker event. Phases only move forward."""

    if event_name == AgentEventName.AGENT_STARTED:
        if state.phase.rank >= TaskPhase.AGENT_RUNNING.rank:
            return state, []
        agent_run_id = _payload_item(payload, 0)
        new_state = replace(
            state,
            phase=TaskPhase.AGENT_RUNNING,
            agent_run_id=str(agent_run_id) if agent_run_id is not None else None,
            started_at=now,
            has_metrics=True,
        )
        return new_state, [CreateMetrics(), MarkStarted()]

    if event_name == AgentEventName.TOOL_FAILED:
        tool_name = _payload_item(payload, 1)
        error = _payload_item(payload, 2)
        return state, [
            RecordToolError(
                tool_name=str(tool_name) if tool_name is not None else "unknown",
                error=str(error) if error is not None else "",
            ),
        ]

    if event_name == AgentEventName.USAGE_UPDATED:
        usage = TokenUsage.from_payload(_payload_item(payload, 1))
        if usage is None or not state.has_metrics:
            return state, []
        return state, [UpdateMetrics(usage=usage, duration_ms=_elapsed_ms(state, now))]

    if event_name == AgentEventName.AGENT_COMPLETED:
        if state.phase.agent_done:
            return state, []
        effects: list[Effect] = []
        usage = TokenUsage.from_payload(_payload_item(payload, 1))
        if usage is not None and state.has_metrics:
            effects.append(UpdateMetrics(usage=usage, duration_ms=_elapsed_ms(state, now)))
        tool_usage = _payload_item(payload, 2)
        if isinstance(tool_usage, dict) and state.has_metrics:
            effects.append(RecordToolUsage(tool_usage=tool_usage))
        effects.append(MarkFinished())
        return replace(state, phase=TaskPhase.AGENT_FINISHED), effects

    if event_name == AgentEventName.AGENT_ABORTED:
        if state.phase.agent_done:
            return state, []
        return replace(state, phase=TaskPhase.AGENT_ABORTED), [MarkFinished()]

    return state, []


class PhaseTracker:
    """In-memory task phases for the current process; never moves a task backwards."""

    def __init__(self) -> None:
        self._phases: dict[int, TaskPhase] = {}

    def advance(self, task_id: int, phase: TaskPhase) -> TaskPhase:
        current = self._phases.get(task_id)
        if current is None or phase.rank > current.rank:
            self._phases[task_id] = phase
            return phase
        return current

    def get(self, task_id: int) -> TaskPhase | None:
        return self._phases.get(task_id)

    def snapshot(self) -> dict[int, TaskPhase]:
        return dict(self._phases)


@dataclass(slots=True)
class EventFilters:
    """Event names excluded from rebroadcast and from logging. State is unaffected."""

    broadcast_ignore: frozenset[str] = DEFAULT_BROADCAST_IGNORE
    log_ignore: frozenset[str] = DEFAULT_LOG_IGNORE


@dataclass(slots=True)
class _TaskSession:
    task: TaskView
    state: LifecycleState = field(default_factory=LifecycleState)
    done: asyncio.Event = field(default_factory=asyncio.Event)
    metrics_id: int | None = None
    cancel_sent: bool = False
    finish_recorded: bool = False


class TaskLifecycleMonitor:
    """Runs the agent phase of one task at a time per call; safe to call concurrently."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: EvalsRepository,
        server: IpcServer,
        launcher: WorkerLauncher,
        catalog: ExerciseCatalog,
        run: RunView,
        agent_configuration: dict[str, Any],
        task_timeout_seconds: float = 300.0,
        cancel_grace_seconds: float = 5.0,
        close_grace_seconds: float = 2.0,
        filters: EventFilters | None = None,
        phases: PhaseTracker | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.repository = repository
        self.server = server
        self.launcher = launcher
        self.catalog = catalog
        self.run = run
        self.agent_configuration = agent_configuration
        self.task_timeout_seconds = task_timeout_seconds
        self.cancel_grace_seconds = cancel_grace_seconds
        self.close_grace_seconds = close_grace_seconds
        self.filters = filters or EventFilters()
        self.phases = phases or PhaseTracker()
        self.clock = clock

    async def run_task(self, task: TaskView) -> TaskResult:
        """Drive the agent phase. Succeeds when a finish time was recorded, timeouts included."""

        prompt = self.catalog.prompt(task.language)
        workspace = self.catalog.workspace(task.language, task.exercise)
        self.phases.advance(task.id, TaskPhase.LAUNCHING)

        try:
            worker = await self.launcher.launch(task, workspace)
        except WorkerLaunchError as error:
            logger.warning("[%s] worker not started: %s", task.label, error)
            return TaskResult(success=False)

        session = _TaskSession(task=task)
        client = worker.client
        client.on(IpcMessageType.TASK_EVENT, lambda message: self._handle_event(session, message))
        client.on(IpcMessageType.DISCONNECT, lambda _message: session.done.set())
        if client.is_disconnected:
            session.done.set()

        if not client.send(
            start_new_task_command(
                client_id=client.client_id,
                configuration=self.agent_configuration,
                prompt=prompt,
            ),
        ):
            logger.warning("[%s] could not send StartNewTask", task.label)

        try:
            try:
                await self._await_agent(session)
            except LifecycleTimeoutError as error:
                logger.warning("[%s] %s", task.label, error)
                await self._cancel(session, worker)
        finally:
            await self._shutdown(session, worker)

        success = session.finish_recorded
        logger.info("[%s] agent phase ended in %s", task.label, session.state.phase.value)
        return TaskResult(success=success)

    async def _await_agent(self, session: _TaskSession) -> None:
        try:
            await asyncio.wait_for(session.done.wait(), timeout=self.task_timeout_seconds)
        except TimeoutError:
            raise LifecycleTimeoutError(
                f"agent phase timed out after {self.task_timeout_seconds}s",
                timeout_seconds=self.task_timeout_seconds,
            ) from None

    async def _cancel(self, session: _TaskSession, worker: LaunchedWorker) -> None:
        client = worker.client
        agent_run_id = session.state.agent_run_id
        if agent_run_id and client.is_connected and not session.cancel_sent:
            session.cancel_sent = True
            client.send(
                task_command(
                    TaskCommandName.CANCEL_TASK,
                    agent_run_id,
                    client_id=client.client_id,
                ),
            )
            await asyncio.sleep(self.cancel_grace_seconds)
        try:
            self.repository.update_task(session.task.id, finished_at=utc_now())
        except Exception:
            logger.exception("[%s] could not record timeout finish time", session.task.label)
            return
        session.finish_recorded = True

    async def _shutdown(self, session: _TaskSession, worker: LaunchedWorker) -> None:
        client = worker.client
        agent_run_id = session.state.agent_run_id
        try:
            if client.is_connected and agent_run_id:
                client.send(
                    task_command(
                        TaskCommandName.CLOSE_TASK,
                        agent_run_id,
                        client_id=client.client_id,
                    ),
                )
                await asyncio.sleep(self.close_grace_seconds)
            client.disconnect()
            await client.wait_closed(timeout=max(self.close_grace_seconds, 1.0))
        except Exception:
            logger.exception("[%s] error while closing worker channel", session.task.label)
        try:
            await self.launcher.reap(worker.process, grace_seconds=self.close_grace_seconds)
        except Exception:
            logger.exception("[%s] could not reap worker process", session.task.label)

    def _handle_event(self, session: _TaskSession, message: IpcMessage) -> None:
        event_name = message.event_name
        if event_name is None:
            return
        raw_payload = message.data.get("payload")
        payload = raw_payload if isinstance(raw_payload, list) else []
        task = session.task

        if event_name not in self.filters.broadcast_ignore:
            self.server.broadcast(
                task_event(
                    event_name,
                    raw_payload if isinstance(raw_payload, list) else None,
                    origin=IpcOrigin.COORDINATOR,
                    relay_client_id=message.client_id,
                    extra={"taskId": task.id},
                ),
            )
        if event_name not in self.filters.log_ignore:
            logger.info("[%s] %s", task.label, event_name)

        new_state, effects = transition(session.state, event_name, payload, self.clock())
        session.state = new_state
        self.phases.advance(task.id, new_state.phase)
        try:
            for effect in effects:
                self._apply(session, effect)
        finally:
            if new_state.phase.agent_done:
                session.done.set()

    def _apply(self, session: _TaskSession, effect: Effect) -> None:
        task = session.task
        if isinstance(effect, CreateMetrics):
            metrics = self.repository.create_task_metrics()
            session.metrics_id = metrics.id
            self.repository.update_task(task.id, task_metrics_id=metrics.id)
        elif isinstance(effect, MarkStarted):
            self.repository.update_task(task.id, started_at=utc_now())
        elif isinstance(effect, RecordToolError):
            self.repository.create_tool_error(
                run_id=self.run.id,
                task_id=task.id,
                tool_name=effect.tool_name,
                error=effect.error,
            )
        elif isinstance(effect, UpdateMetrics):
            if session.metrics_id is not None:
                self.repository.update_task_metrics(
                    session.metrics_id,
                    usage=effect.usage,
                    duration_ms=effect.duration_ms,
                )
        elif isinstance(effect, RecordToolUsage):
            if session.metrics_id is not None:
                self.repository.update_task_metrics(
                    session.metrics_id,
                    tool_usage=effect.tool_usage,
                )
        elif isinstance(effect, MarkFinished):
            self.repository.update_task(task.id, finished_at=utc_now())
            session.finish_recorded = True


def _payload_item(payload: list[Any], index: int) -> Any:
    if index < len(payload):
        return payload[index]
    return None


def _elapsed_ms(state: LifecycleState, now: float) -> int:
    if state.started_at is None:
        return 0
    return max(0, int((now - state.started_at) * 1000))
