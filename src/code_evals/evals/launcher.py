"""Start one agent worker per task and attach a client channel to it."""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path

from code_evals.evals.errors import ConnectTimeoutError, WorkerLaunchError
from code_evals.evals.models import TaskView
from code_evals.evals.process_tree import ProcessTreeKiller, select_process_tree_killer
from code_evals.ipc.channel import IpcClient
from code_evals.ipc.messages import IpcOrigin

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LaunchedWorker:
    """A started worker whose channel completed the handshake."""

    client: IpcClient
    process: asyncio.subprocess.Process
    endpoint: Path
    log_path: Path | None = None


class WorkerLauncher:
    """Spawns workers from a command template with an exclusive socket endpoint each."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        socket_dir: Path,
        command_template: str,
        socket_env_var: str,
        connect_timeout_seconds: float = 5.0,
        connect_poll_seconds: float = 0.25,
        spawn_settle_seconds: float = 3.0,
        extra_env: dict[str, str] | None = None,
        logs_dir: Path | None = None,
        killer: ProcessTreeKiller | None = None,
    ) -> None:
        self.socket_dir = socket_dir
        self.command_template = command_template
        self.socket_env_var = socket_env_var
        self.connect_timeout_seconds = connect_timeout_seconds
        self.connect_poll_seconds = connect_poll_seconds
        self.spawn_settle_seconds = spawn_settle_seconds
        self.extra_env = dict(extra_env or {})
        self.logs_dir = logs_dir
        self.killer = killer or select_process_tree_killer()

    def endpoint_for(self, task_id: int) -> Path:
        return self.socket_dir / f"task-{task_id}.sock"

    def build_command(self, workspace: Path) -> list[str]:
        windows = sys.platform.startswith("win")
        if windows:
            quoted = subprocess.list2cmdline([str(workspace)])
        else:
            quoted = shlex.quote(str(workspace))
        return shlex.split(self.command_template.format(workspace=quoted), posix=not windows)

    async def launch(self, task: TaskView, workspace: Path) -> LaunchedWorker:
        """Start the worker and wait for its channel handshake.

        Raises ``WorkerLaunchError`` when the process cannot be spawned and
        ``ConnectTimeoutError`` when the handshake does not arrive in time. In
        both cases nothing is left running.
        """

        endpoint = self.endpoint_for(task.id)
        self.socket_dir.mkdir(parents=True, exist_ok=True)
        if endpoint.exists():
            endpoint.unlink()

        env = os.environ.copy()
        env.update(self.extra_env)
        env[self.socket_env_var] = str(endpoint)
        args = self.build_command(workspace)

        log_path: Path | None = None
        if self.logs_dir is not None:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
            log_path = self.logs_dir / f"worker-task-{task.id}.log"

        logger.info("[%s] starting worker: %s", task.label, shlex.join(args))
        try:
            process = await self._spawn(args, env=env, log_path=log_path)
        except OSError as error:
            raise WorkerLaunchError(f"Cannot start worker {args[0]!r}: {error}") from error

        await asyncio.sleep(self.spawn_settle_seconds)
        client = IpcClient(
            endpoint,
            origin=IpcOrigin.COORDINATOR,
            retry_interval=self.connect_poll_seconds,
        )
        client.connect()

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.connect_timeout_seconds
        while not client.ready:
            if loop.time() >= deadline:
                client.disconnect()
                await client.wait_closed(timeout=self.connect_poll_seconds * 4)
                await self.reap(process, grace_seconds=0)
                raise ConnectTimeoutError(
                    f"Worker for task {task.id} did not connect within "
                    f"{self.connect_timeout_seconds}s",
                    endpoint=str(endpoint),
                    waited_seconds=self.connect_timeout_seconds,
                )
            await asyncio.sleep(self.connect_poll_seconds)

        logger.info("[%s] worker connected as %s", task.label, client.client_id)
        return LaunchedWorker(client=client, process=process, endpoint=endpoint, log_path=log_path)

    async def reap(self, process: asyncio.subprocess.Process, *, grace_seconds: float) -> None:
        """Give the process ``grace_seconds`` to exit, then kill its whole tree."""

        if process.returncode is None and grace_seconds > 0:
            try:
                await asyncio.wait_for(process.wait(), timeout=grace_seconds)
            except TimeoutError:
                logger.debug("Worker %s still running after %ss", process.pid, grace_seconds)
        if process.returncode is None:
            killed = await asyncio.to_thread(self.killer.kill_tree, process.pid)
            logger.info("Killed worker process tree %s", killed)
            try:
                await asyncio.wait_for(process.wait(), timeout=5)
            except TimeoutError:
                logger.warning("Worker %s did not exit after kill", process.pid)

    async def _spawn(
        self,
        args: list[str],
        *,
        env: dict[str, str],
        log_path: Path | None,
    ) -> asyncio.subprocess.Process:
        if log_path is None:
            return await asyncio.create_subprocess_exec(
                *args,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        with log_path.open("ab") as log_handle:
            return await asyncio.create_subprocess_exec(
                *args,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=log_handle,
                stderr=asyncio.subprocess.STDOUT,
            )
