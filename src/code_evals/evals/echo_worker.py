"""Local deterministic worker for demos and integration tests.

Hosts a channel server on the endpoint named by the socket environment
variable and answers coordinator commands with a scripted event sequence.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path
from uuid import uuid4

from code_evals.config import DEFAULT_SOCKET_ENV_VAR
from code_evals.ipc.channel import IpcServer
from code_evals.ipc.messages import (
    AgentEventName,
    IpcMessage,
    IpcMessageType,
    IpcOrigin,
    TaskCommandName,
    task_event,
)

MODES = ("complete", "abort", "hang", "silent", "vanish", "offline")

ECHO_USAGE = {
    "totalCost": 0.0125,
    "totalTokensIn": 1200,
    "totalTokensOut": 340,
    "contextTokens": 1540,
    "totalCacheWrites": 10,
    "totalCacheReads": 5,
}
ECHO_TOOL_USAGE = {
    "write_to_file": {"attempts": 1, "failures": 0},
    "execute_command": {"attempts": 1, "failures": 1},
}


class EchoWorker:
    def __init__(
        self,
        endpoint: Path,
        *,
        mode: str = "complete",
        ignore_cancel: bool = False,
    ) -> None:
        self.endpoint = endpoint
        self.mode = mode
        self.ignore_cancel = ignore_cancel
        self.server = IpcServer(endpoint, origin=IpcOrigin.WORKER)
        self.closed = asyncio.Event()
        self.server.on(IpcMessageType.TASK_COMMAND, self._on_command)

    async def serve(self, max_seconds: float) -> None:
        if self.mode == "offline":
            await asyncio.sleep(max_seconds)
            return
        await self.server.listen()
        waiter = asyncio.ensure_future(self.closed.wait())
        try:
            await asyncio.wait({waiter}, timeout=max_seconds)
        finally:
            waiter.cancel()
            await self.server.close()

    def _emit(self, event_name: AgentEventName, payload: list[object]) -> None:
        self.server.broadcast(task_event(event_name, payload, origin=IpcOrigin.WORKER))

    def _on_command(self, message: IpcMessage) -> None:
        command_name = message.command_name
        data = message.data.get("data")
        if command_name == TaskCommandName.START_NEW_TASK:
            self._start(data if isinstance(data, dict) else {})
        elif command_name == TaskCommandName.CANCEL_TASK:
            if not self.ignore_cancel:
                self._emit(AgentEventName.AGENT_ABORTED, [data])
        elif command_name == TaskCommandName.CLOSE_TASK:
            self.closed.set()

    def _start(self, data: dict[str, object]) -> None:
        if self.mode == "silent":
            return
        agent_run_id = uuid4().hex
        self._emit(AgentEventName.AGENT_STARTED, [agent_run_id])
        if self.mode == "vanish":
            self.closed.set()
            return
        if self.mode == "hang":
            return
        self._emit(AgentEventName.MESSAGE, [agent_run_id, {"text": str(data.get("text", ""))[:80]}])
        self._emit(AgentEventName.TOOL_FAILED, [agent_run_id, "execute_command", "exit code 1"])
        self._emit(AgentEventName.USAGE_UPDATED, [agent_run_id, ECHO_USAGE])
        if self.mode == "abort":
            self._emit(AgentEventName.AGENT_ABORTED, [agent_run_id])
            return
        self._emit(AgentEventName.AGENT_COMPLETED, [agent_run_id, ECHO_USAGE, ECHO_TOOL_USAGE])


def main(argv: list[str] | None = None) -> int:
    """Serve one task on the endpoint from the environment."""

    parser = argparse.ArgumentParser()
    parser.add_argument("workspace", nargs="?", default=None)
    parser.add_argument("--mode", choices=MODES, default="complete")
    parser.add_argument("--ignore-cancel", action="store_true")
    parser.add_argument("--socket-env-var", default=DEFAULT_SOCKET_ENV_VAR)
    parser.add_argument("--max-seconds", type=float, default=60.0)
    args = parser.parse_args(argv)

    endpoint = os.getenv(args.socket_env_var, "").strip()
    if not endpoint:
        print(f"{args.socket_env_var} is not set", file=sys.stderr)
        return 2

    worker = EchoWorker(Path(endpoint), mode=args.mode, ignore_cancel=args.ignore_cancel)
    asyncio.run(worker.serve(args.max_seconds))
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
