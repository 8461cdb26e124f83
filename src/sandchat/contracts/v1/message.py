from __future__ import annotations

import uuid

from pydantic import BaseModel, ConfigDict, Field


class InboundMessage(BaseModel):
    """A stored chat message. Immutable once created."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    chat_jid: str
    sender: str = ""
    sender_name: str = ""
    content: str = ""
    # Assigned on receipt by the store; never taken from the platform.
    timestamp: str
    is_from_assistant: bool = False

    model_config = ConfigDict(extra="ignore", frozen=True)
