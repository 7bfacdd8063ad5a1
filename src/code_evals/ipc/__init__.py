"""Local socket messaging between the run coordinator and agent workers."""

from code_evals.ipc.channel import ChannelBindError, IpcClient, IpcServer
from code_evals.ipc.messages import (
    AgentEventName,
    EvalEventName,
    IpcMessage,
    IpcMessageType,
    IpcOrigin,
    IpcProtocolError,
    TaskCommandName,
)

__all__ = [
    "AgentEventName",
    "ChannelBindError",
    "EvalEventName",
    "IpcClient",
    "IpcMessage",
    "IpcMessageType",
    "IpcOrigin",
    "IpcProtocolError",
    "IpcServer",
    "TaskCommandName",
]
