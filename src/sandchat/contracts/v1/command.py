from __future__ import annotations

from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from .conversation import SandboxConfig
from .task import ContextMode, ScheduleType


# Requests are written by agents inside sandboxes, so unknown keys are tolerated.

class SendMessageRequest(BaseModel):
    type: Literal["message"] = "message"
    chat_jid: str
    text: str

    model_config = ConfigDict(extra="ignore")


class ScheduleTaskRequest(BaseModel):
    type: Literal["schedule_task"] = "schedule_task"
    prompt: str
    schedule_type: ScheduleType
    schedule_value: str
    context_mode: ContextMode = "isolated"
    target_jid: str

    model_config = ConfigDict(extra="ignore")


class TaskControlRequest(BaseModel):
    type: Literal["pause_task", "resume_task", "cancel_task"]
    task_id: str

    model_config = ConfigDict(extra="ignore")


class RegisterGroupRequest(BaseModel):
    type: Literal["register_group"] = "register_group"
    jid: str
    name: str
    folder: str
    trigger: str = ""
    requires_trigger: bool = True
    sandbox: Optional[SandboxConfig] = None

    model_config = ConfigDict(extra="ignore")


class UnregisterGroupRequest(BaseModel):
    type: Literal["unregister_group"] = "unregister_group"
    jid: str

    model_config = ConfigDict(extra="ignore")


class RefreshGroupsRequest(BaseModel):
    type: Literal["refresh_groups"] = "refresh_groups"

    model_config = ConfigDict(extra="ignore")


CommandRequest = Annotated[
    Union[
        SendMessageRequest,
        ScheduleTaskRequest,
        TaskControlRequest,
        RegisterGroupRequest,
        UnregisterGroupRequest,
        RefreshGroupsRequest,
    ],
    Field(discriminator="type"),
]

_COMMAND_ADAPTER: TypeAdapter[Any] = TypeAdapter(CommandRequest)


def parse_command(doc: Dict[str, Any]) -> Any:
    """Validate a command-channel request (raises pydantic.ValidationError)."""
    return _COMMAND_ADAPTER.validate_python(doc)
