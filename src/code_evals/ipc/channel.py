"""Duplex newline-delimited JSON messaging over a local Unix socket.

One ``IpcServer`` is bound per endpoint. Any number of ``IpcClient`` peers may
connect; each connection receives an ``Ack`` carrying its connection id before
anything else. Inbound messages on one connection are dispatched strictly in
arrival order and each handler is awaited before the next line is read.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
from collections import defaultdict
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import suppress
from pathlib import Path
from uuid import uuid4

from code_evals.ipc.messages import IpcMessage, IpcMessageType, IpcOrigin, IpcProtocolError

logger = logging.getLogger(__name__)

MessageHandler = Callable[[IpcMessage], Awaitable[None] | None]

_STREAM_LIMIT = 16 * 1024 * 1024
_PROBE_TIMEOUT_SECONDS = 1.0
_CLOSE_TIMEOUT_SECONDS = 2.0


class ChannelBindError(OSError):
    """Raised when a server endpoint is held by a live listener or cannot be created."""


class _HandlerRegistry:
    def __init__(self) -> None:
        self._handlers: dict[IpcMessageType, list[MessageHandler]] = defaultdict(list)

    def add(self, kind: IpcMessageType, handler: MessageHandler) -> None:
        self._handlers[kind].append(handler)

    async def dispatch(self, message: IpcMessage) -> None:
        for handler in list(self._handlers.get(message.type, ())):
            try:
                result = handler(message)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("IPC handler failed for %s message", message.type.value)


class IpcServer:
    """Listening side of the channel."""

    def __init__(
        self,
        socket_path: Path | str,
        *,
        origin: IpcOrigin = IpcOrigin.COORDINATOR,
    ) -> None:
        self.socket_path = Path(socket_path)
        self.origin = origin
        self._server: asyncio.AbstractServer | None = None
        self._connections: dict[str, asyncio.StreamWriter] = {}
        self._handlers = _HandlerRegistry()
        self._closed = False

    @property
    def is_listening(self) -> bool:
        return self._server is not None and not self._closed

    @property
    def client_ids(self) -> tuple[str, ...]:
        return tuple(self._connections)

    def on(self, kind: IpcMessageType, handler: MessageHandler) -> None:
        self._handlers.add(kind, handler)

    async def listen(self) -> None:
        if self._server is not None:
            return
        await _reclaim_socket_path(self.socket_path)
        try:
            self.socket_path.parent.mkdir(parents=True, exist_ok=True)
            self._server = await asyncio.start_unix_server(
                self._handle_connection,
                path=str(self.socket_path),
                limit=_STREAM_LIMIT,
            )
        except OSError as error:
            raise ChannelBindError(
                f"Cannot bind IPC endpoint {self.socket_path}: {error}",
            ) from error
        self._closed = False
        logger.info("IPC server listening on %s", self.socket_path)

    def send(self, message: IpcMessage, client_id: str) -> bool:
        writer = self._connections.get(client_id)
        if writer is None:
            logger.debug("IPC send skipped, no connection %s", client_id)
            return False
        return _write(writer, message)

    def broadcast(self, message: IpcMessage) -> int:
        """Fan out to every connection except the relay source. Returns delivered count."""

        delivered = 0
        for client_id, writer in list(self._connections.items()):
            if message.relay_client_id is not None and client_id == message.relay_client_id:
                continue
            if _write(writer, message):
                delivered += 1
        return delivered

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for client_id, writer in list(self._connections.items()):
            _write(
                writer,
                IpcMessage(type=IpcMessageType.DISCONNECT, origin=self.origin, client_id=client_id),
            )
            writer.close()
        if self._server is not None:
            self._server.close()
            try:
                await asyncio.wait_for(self._server.wait_closed(), timeout=_CLOSE_TIMEOUT_SECONDS)
            except TimeoutError:
                logger.warning("IPC server %s did not close in time", self.socket_path)
        with suppress(FileNotFoundError):
            self.socket_path.unlink()
        logger.info("IPC server on %s closed", self.socket_path)

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        client_id = uuid4().hex[:12]
        self._connections[client_id] = writer
        _write(
            writer,
            IpcMessage(
                type=IpcMessageType.ACK,
                origin=self.origin,
                client_id=client_id,
                data={"clientId": client_id, "pid": os.getpid(), "ppid": os.getppid()},
            ),
        )
        logger.debug("IPC client %s connected to %s", client_id, self.socket_path)
        try:
            async for message in _read_messages(reader):
                if message.type == IpcMessageType.DISCONNECT:
                    break
                if message.type == IpcMessageType.ACK:
                    continue
                if (
                    message.type == IpcMessageType.TASK_COMMAND
                    and message.client_id != client_id
                ):
                    logger.warning(
                        "Dropping %s command addressed to %s on connection %s",
                        message.command_name,
                        message.client_id,
                        client_id,
                    )
                    continue
                message.client_id = client_id
                await self._handlers.dispatch(message)
        finally:
            self._connections.pop(client_id, None)
            writer.close()
            with suppress(ConnectionError):
                await writer.wait_closed()
            logger.debug("IPC client %s disconnected from %s", client_id, self.socket_path)
            await self._handlers.dispatch(
                IpcMessage(type=IpcMessageType.DISCONNECT, origin=self.origin, client_id=client_id),
            )


class IpcClient:
    """Connecting side of the channel.

    ``connect()`` only schedules the connection; ``ready`` turns True once the
    server's Ack arrives. Refusals are retried every ``retry_interval`` until
    ``max_retries`` runs out, after which subscribers see a Disconnect.
    """

    def __init__(
        self,
        socket_path: Path | str,
        *,
        origin: IpcOrigin = IpcOrigin.COORDINATOR,
        retry_interval: float = 0.25,
        max_retries: int | None = None,
    ) -> None:
        self.socket_path = Path(socket_path)
        self.origin = origin
        self.retry_interval = retry_interval
        self.max_retries = max_retries
        self.client_id: str | None = None
        self._handlers = _HandlerRegistry()
        self._writer: asyncio.StreamWriter | None = None
        self._task: asyncio.Task[None] | None = None
        self._acknowledged = False
        self._disconnected = False
        self._closing = False

    @property
    def ready(self) -> bool:
        return self._acknowledged and not self._disconnected

    @property
    def is_connected(self) -> bool:
        return self.ready and self._writer is not None and not self._writer.is_closing()

    @property
    def is_disconnected(self) -> bool:
        return self._disconnected

    def on(self, kind: IpcMessageType, handler: MessageHandler) -> None:
        self._handlers.add(kind, handler)

    def connect(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.get_running_loop().create_task(
            self._run(),
            name=f"ipc-client:{self.socket_path.name}",
        )

    def send(self, message: IpcMessage) -> bool:
        writer = self._writer
        if writer is None or self._disconnected or self._closing:
            logger.debug("IPC send to %s skipped, not connected", self.socket_path)
            return False
        if message.type == IpcMessageType.TASK_COMMAND and message.client_id is None:
            message.client_id = self.client_id
        return _write(writer, message)

    def disconnect(self) -> None:
        if self._closing:
            return
        self._closing = True
        writer = self._writer
        if writer is not None and not writer.is_closing():
            _write(
                writer,
                IpcMessage(
                    type=IpcMessageType.DISCONNECT,
                    origin=self.origin,
                    client_id=self.client_id,
                ),
            )
            writer.close()

    async def wait_closed(self, timeout: float | None = None) -> None:
        """Wait for the background reader to finish after a disconnect."""

        if self._task is None:
            return
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
        except TimeoutError:
            logger.warning("IPC client for %s did not shut down in time", self.socket_path)

    async def _run(self) -> None:
        reader = await self._open()
        try:
            if reader is not None:
                async for message in _read_messages(reader):
                    if message.type == IpcMessageType.ACK:
                        self.client_id = str(message.data.get("clientId") or message.client_id)
                        self._acknowledged = True
                        logger.debug(
                            "IPC client %s ready on %s",
                            self.client_id,
                            self.socket_path,
                        )
                        continue
                    if message.type == IpcMessageType.DISCONNECT:
                        break
                    await self._handlers.dispatch(message)
        finally:
            self._disconnected = True
            writer = self._writer
            if writer is not None:
                writer.close()
                with suppress(ConnectionError):
                    await writer.wait_closed()
            await self._handlers.dispatch(
                IpcMessage(
                    type=IpcMessageType.DISCONNECT,
                    origin=self.origin,
                    client_id=self.client_id,
                ),
            )

    async def _open(self) -> asyncio.StreamReader | None:
        attempts = 0
        while not self._closing:
            try:
                reader, writer = await asyncio.open_unix_connection(
                    str(self.socket_path),
                    limit=_STREAM_LIMIT,
                )
            except OSError as error:
                attempts += 1
                if self.max_retries is not None and attempts > self.max_retries:
                    logger.debug(
                        "IPC connect to %s gave up after %d attempts: %s",
                        self.socket_path,
                        attempts,
                        error,
                    )
                    return None
                await asyncio.sleep(self.retry_interval)
                continue
            if self._closing:
                writer.close()
                return None
            self._writer = writer
            return reader
        return None


async def _read_messages(reader: asyncio.StreamReader) -> AsyncIterator[IpcMessage]:
    while True:
        try:
            line = await reader.readline()
        except (ConnectionError, ValueError) as error:
            logger.warning("IPC stream closed abnormally: %s", error)
            return
        if not line:
            return
        if not line.strip():
            continue
        try:
            yield IpcMessage.from_wire(line)
        except IpcProtocolError as error:
            logger.warning("Skipping malformed IPC message: %s", error)


def _write(writer: asyncio.StreamWriter, message: IpcMessage) -> bool:
    if writer.is_closing():
        return False
    writer.write(message.to_wire())
    return True


async def _reclaim_socket_path(socket_path: Path) -> None:
    """Remove a stale socket file; refuse if a live listener still owns it."""

    if not socket_path.exists() and not socket_path.is_symlink():
        return
    if not socket_path.is_socket():
        raise ChannelBindError(f"IPC endpoint {socket_path} exists and is not a socket")
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_unix_connection(str(socket_path)),
            timeout=_PROBE_TIMEOUT_SECONDS,
        )
    except (OSError, TimeoutError):
        logger.info("Removing stale IPC socket %s", socket_path)
        with suppress(FileNotFoundError):
            socket_path.unlink()
        return
    writer.close()
    raise ChannelBindError(f"IPC endpoint {socket_path} is already in use")
