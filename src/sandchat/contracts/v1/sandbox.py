from __future__ import annotations

from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError


class SandboxProtocolError(ValueError):
    """A sandbox emitted a payload we cannot decode."""


class SandboxRequest(BaseModel):
    """First line written to a sandbox's stdin."""
    prompt: str
    session_id: Optional[str] = None
    group_folder: str
    chat_jid: str
    is_main: bool = False
    is_scheduled_task: bool = False

    model_config = ConfigDict(extra="forbid")


class PartialOutputEvent(BaseModel):
    type: Literal["partial_output"] = "partial_output"
    text: str

    model_config = ConfigDict(extra="forbid")


class ResultEvent(BaseModel):
    type: Literal["result"] = "result"
    result: Union[str, Dict[str, Any], None] = None

    model_config = ConfigDict(extra="forbid")

    def text(self) -> str:
        if self.result is None:
            return ""
        if isinstance(self.result, str):
            return self.result
        for key in ("text", "result", "message"):
            v = self.result.get(key)
            if isinstance(v, str):
                return v
        return ""


class SessionEvent(BaseModel):
    type: Literal["session"] = "session"
    session_id: str = Field(min_length=1)

    model_config = ConfigDict(extra="forbid")


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    error: str = ""

    model_config = ConfigDict(extra="forbid")


SandboxEvent = Annotated[
    Union[PartialOutputEvent, ResultEvent, SessionEvent, ErrorEvent],
    Field(discriminator="type"),
]

_EVENT_ADAPTER: TypeAdapter[Any] = TypeAdapter(SandboxEvent)


def decode_event(payload: Union[str, bytes, Dict[str, Any]]) -> Any:
    """Decode one sandbox output payload into a SandboxEvent.

    Raises SandboxProtocolError for malformed JSON or unknown tags.
    """
    try:
        if isinstance(payload, (str, bytes)):
            return _EVENT_ADAPTER.validate_json(payload)
        return _EVENT_ADAPTER.validate_python(payload)
    except ValidationError as e:
        raise SandboxProtocolError(f"invalid sandbox event: {e.errors(include_url=False)[:1]}") from e
