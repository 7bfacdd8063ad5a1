"""Bounded-concurrency task driver with staggered starts."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol

from code_evals.evals.lifecycle import PhaseTracker
from code_evals.evals.models import TaskPhase, TaskResult, TaskView
from code_evals.evals.repository import EvalsRepository
from code_evals.ipc.channel import IpcServer
from code_evals.ipc.messages import EvalEventName, IpcOrigin, task_event

logger = logging.getLogger(__name__)


class AgentPhaseRunner(Protocol):
    async def run_task(self, task: TaskView) -> TaskResult:
        """Run the agent phase of one task."""


class TaskGrader(Protocol):
    async def verify(self, task: TaskView) -> bool:
        """Return True only when every grading command passed."""


@dataclass(slots=True)
class TaskPlan:
    """Which phases still have to run for a task, derived from persisted state."""

    run_agent: bool
    run_grading: bool


def plan_task(task: TaskView) -> TaskPlan:
    return TaskPlan(run_agent=task.finished_at is None, run_grading=task.passed is None)


class TaskScheduler:
    """Keeps at most ``concurrency`` task futures in flight.

    Successive starts are staggered by ``task_start_delay_seconds``; once the
    limit is reached the delay resets to zero and the loop waits for the first
    future to finish before starting the next task.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: EvalsRepository,
        server: IpcServer,
        lifecycle: AgentPhaseRunner,
        verifier: TaskGrader,
        concurrency: int,
        task_start_delay_seconds: float = 10.0,
        phases: PhaseTracker | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.repository = repository
        self.server = server
        self.lifecycle = lifecycle
        self.verifier = verifier
        self.concurrency = concurrency
        self.task_start_delay_seconds = task_start_delay_seconds
        self.phases = phases or PhaseTracker()
        self.sleep = sleep
        self.max_in_flight = 0

    async def run(self, tasks: list[TaskView]) -> list[tuple[int, TaskResult]]:
        futures: list[tuple[int, asyncio.Task[TaskResult]]] = []
        in_flight: set[asyncio.Task[TaskResult]] = set()
        delay = self.task_start_delay_seconds

        for task in tasks:
            future = asyncio.create_task(self._process(task, delay), name=f"eval-task-{task.id}")
            futures.append((task.id, future))
            in_flight.add(future)
            self.max_in_flight = max(self.max_in_flight, len(in_flight))
            delay += self.task_start_delay_seconds

            if len(in_flight) >= self.concurrency:
                delay = 0
                done, _ = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
                in_flight -= done

        if in_flight:
            await asyncio.wait(in_flight)
        return [(task_id, future.result()) for task_id, future in futures]

    async def _process(self, task: TaskView, delay: float) -> TaskResult:
        try:
            return await self._process_task(task, delay)
        except Exception:
            logger.exception("[%s] task failed unexpectedly", task.label)
            try:
                self._record_grade(task, passed=False)
            except Exception:
                logger.exception("[%s] could not record failed result", task.label)
            return TaskResult(success=False, passed=False)

    async def _process_task(self, task: TaskView, delay: float) -> TaskResult:
        plan = plan_task(task)
        if plan.run_agent:
            if delay > 0:
                logger.info("[%s] starting in %ss", task.label, delay)
                await self.sleep(delay)
            agent_result = await self.lifecycle.run_task(task)
            logger.info("[%s] agent phase success=%s", task.label, agent_result.success)
        else:
            self.phases.advance(task.id, TaskPhase.AGENT_FINISHED)

        if not plan.run_grading:
            self.phases.advance(task.id, TaskPhase.GRADED)
            self._broadcast_grade(task, passed=bool(task.passed))
            return TaskResult(success=bool(task.passed), passed=task.passed)

        self.phases.advance(task.id, TaskPhase.VERIFYING)
        passed = await self.verifier.verify(task)
        self._record_grade(task, passed=passed)
        logger.info("[%s] %s", task.label, "PASSED" if passed else "FAILED")
        return TaskResult(success=passed, passed=passed)

    def _record_grade(self, task: TaskView, *, passed: bool) -> None:
        self.repository.update_task(task.id, passed=passed)
        self.phases.advance(task.id, TaskPhase.GRADED)
        self._broadcast_grade(task, passed=passed)

    def _broadcast_grade(self, task: TaskView, *, passed: bool) -> None:
        self.server.broadcast(
            task_event(
                EvalEventName.PASS if passed else EvalEventName.FAIL,
                origin=IpcOrigin.COORDINATOR,
                extra={"taskId": task.id},
            ),
        )
