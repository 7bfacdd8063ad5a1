"""Wire envelope and vocabulary for coordinator <-> worker messaging."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class IpcMessageType(str, Enum):
    """Envelope kinds. Ack is the transport handshake carrying the connection id."""

    ACK = "Ack"
    TASK_COMMAND = "TaskCommand"
    TASK_EVENT = "TaskEvent"
    DISCONNECT = "Disconnect"


class IpcOrigin(str, Enum):
    COORDINATOR = "coordinator"
    WORKER = "worker"


class TaskCommandName(str, Enum):
    START_NEW_TASK = "StartNewTask"
    CANCEL_TASK = "CancelTask"
    CLOSE_TASK = "CloseTask"


class AgentEventName(str, Enum):
    """Event names emitted by the agent host inside the worker."""

    MESSAGE = "message"
    TASK_CREATED = "taskCreated"
    AGENT_STARTED = "taskStarted"
    MODE_SWITCHED = "taskModeSwitched"
    PAUSED = "taskPaused"
    UNPAUSED = "taskUnpaused"
    ASK_RESPONDED = "taskAskResponded"
    AGENT_ABORTED = "taskAborted"
    SPAWNED = "taskSpawned"
    AGENT_COMPLETED = "taskCompleted"
    USAGE_UPDATED = "taskTokenUsageUpdated"
    TOOL_FAILED = "taskToolFailed"


class EvalEventName(str, Enum):
    """Terminal grading events broadcast to run observers."""

    PASS = "pass"
    FAIL = "fail"


class IpcProtocolError(ValueError):
    """Raised when a wire line cannot be decoded into an envelope."""


@dataclass(slots=True)
class IpcMessage:
    """One envelope on the channel."""

    type: IpcMessageType
    origin: IpcOrigin
    data: dict[str, Any] = field(default_factory=dict)
    client_id: str | None = None
    relay_client_id: str | None = None

    def to_wire(self) -> bytes:
        payload: dict[str, Any] = {
            "type": self.type.value,
            "origin": self.origin.value,
            "data": self.data,
        }
        if self.client_id is not None:
            payload["clientId"] = self.client_id
        if self.relay_client_id is not None:
            payload["relayClientId"] = self.relay_client_id
        return (json.dumps(payload, separators=(",", ":")) + "\n").encode("utf-8")

    @classmethod
    def from_wire(cls, line: bytes | str) -> IpcMessage:
        try:
            text = line.decode("utf-8") if isinstance(line, bytes) else line
        except UnicodeDecodeError as error:
            raise IpcProtocolError(f"Envelope is not valid UTF-8: {error}") from error
        try:
            raw = json.loads(text)
        except json.JSONDecodeError as error:
            raise IpcProtocolError(f"Invalid JSON envelope: {error}") from error
        if not isinstance(raw, dict):
            raise IpcProtocolError("Envelope must be a JSON object.")
        try:
            message_type = IpcMessageType(raw.get("type"))
            origin = IpcOrigin(raw.get("origin"))
        except ValueError as error:
            raise IpcProtocolError(f"Unknown envelope field value: {error}") from error
        data = raw.get("data") or {}
        if not isinstance(data, dict):
            raise IpcProtocolError("Envelope data must be a JSON object.")
        return cls(
            type=message_type,
            origin=origin,
            data=data,
            client_id=_optional_str(raw.get("clientId")),
            relay_client_id=_optional_str(raw.get("relayClientId")),
        )

    @property
    def event_name(self) -> str | None:
        """Event name for TaskEvent envelopes."""

        if self.type != IpcMessageType.TASK_EVENT:
            return None
        value = self.data.get("eventName")
        return value if isinstance(value, str) else None

    @property
    def command_name(self) -> str | None:
        if self.type != IpcMessageType.TASK_COMMAND:
            return None
        value = self.data.get("commandName")
        return value if isinstance(value, str) else None


def task_command(
    command_name: TaskCommandName,
    data: Any,
    *,
    client_id: str | None,
) -> IpcMessage:
    """Build a coordinator command addressed to one worker connection."""

    return IpcMessage(
        type=IpcMessageType.TASK_COMMAND,
        origin=IpcOrigin.COORDINATOR,
        client_id=client_id,
        data={"commandName": command_name.value, "data": data},
    )


def start_new_task_command(
    *,
    client_id: str | None,
    configuration: dict[str, Any],
    prompt: str,
    new_tab: bool = True,
) -> IpcMessage:
    return task_command(
        TaskCommandName.START_NEW_TASK,
        {"configuration": configuration, "text": prompt, "newTab": new_tab},
        client_id=client_id,
    )


def task_event(
    event_name: str,
    payload: list[Any] | None = None,
    *,
    origin: IpcOrigin,
    relay_client_id: str | None = None,
    extra: dict[str, Any] | None = None,
) -> IpcMessage:
    """Build a TaskEvent envelope; ``extra`` keys are merged into the data."""

    data: dict[str, Any] = {"eventName": str(getattr(event_name, "value", event_name))}
    if payload is not None:
        data["payload"] = payload
    if extra:
        data.update(extra)
    return IpcMessage(
        type=IpcMessageType.TASK_EVENT,
        origin=origin,
        relay_client_id=relay_client_id,
        data=data,
    )


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    return str(value)
