from __future__ import annotations

from .command import (
    CommandRequest,
    RefreshGroupsRequest,
    RegisterGroupRequest,
    ScheduleTaskRequest,
    SendMessageRequest,
    TaskControlRequest,
    UnregisterGroupRequest,
    parse_command,
)
from .conversation import ChatInfo, Conversation, Mount, SandboxConfig
from .message import InboundMessage
from .sandbox import (
    ErrorEvent,
    PartialOutputEvent,
    ResultEvent,
    SandboxEvent,
    SandboxProtocolError,
    SandboxRequest,
    SessionEvent,
    decode_event,
)
from .task import ContextMode, ScheduledTask, ScheduleType, TaskStatus

__all__ = [
    "ChatInfo",
    "CommandRequest",
    "ContextMode",
    "Conversation",
    "ErrorEvent",
    "InboundMessage",
    "Mount",
    "PartialOutputEvent",
    "RefreshGroupsRequest",
    "RegisterGroupRequest",
    "ResultEvent",
    "SandboxConfig",
    "SandboxEvent",
    "SandboxProtocolError",
    "SandboxRequest",
    "ScheduleTaskRequest",
    "ScheduleType",
    "ScheduledTask",
    "SendMessageRequest",
    "SessionEvent",
    "TaskControlRequest",
    "TaskStatus",
    "UnregisterGroupRequest",
    "decode_event",
]
