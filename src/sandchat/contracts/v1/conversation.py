from __future__ import annotations

import re
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ...util.time import utc_now_iso


_FOLDER_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")


class Mount(BaseModel):
    host_path: str
    container_path: str
    readonly: bool = True

    model_config = ConfigDict(extra="forbid")


class SandboxConfig(BaseModel):
    """Per-conversation overrides for the sandbox runtime."""
    additional_mounts: List[Mount] = Field(default_factory=list)
    timeout_seconds: Optional[float] = None
    memory: Optional[str] = None  # docker syntax, e.g. "2g"
    cpus: Optional[float] = None

    model_config = ConfigDict(extra="forbid")


class Conversation(BaseModel):
    v: int = 1
    jid: str
    name: str = ""
    folder: str
    trigger: str = ""
    requires_trigger: bool = True
    added_at: str = Field(default_factory=utc_now_iso)
    sandbox: Optional[SandboxConfig] = None

    model_config = ConfigDict(extra="ignore")

    @field_validator("folder")
    @classmethod
    def _folder_is_path_safe(cls, v: str) -> str:
        s = str(v or "").strip()
        if not _FOLDER_RE.match(s):
            raise ValueError(f"invalid folder name: {v!r}")
        return s


class ChatInfo(BaseModel):
    """Metadata about a chat seen on some channel (registered or not)."""
    jid: str
    name: str = ""
    last_message_time: str = ""

    model_config = ConfigDict(extra="ignore")
