"""
Base class for chat platform adapters.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List


class ChannelAdapter(ABC):
    """
    Abstract base class for chat platform adapters.

    Each adapter handles:
    - Connecting to the platform
    - Receiving messages (poll)
    - Sending messages and typing indicators

    Conversation identities are "<prefix><platform chat id>", e.g. "tg:12345".
    """

    platform: str = "unknown"
    prefix: str = ""
    max_message_length: int = 4000
    # Platforms whose bot identity is already visible don't need "Name: ".
    prefix_assistant_name: bool = True

    @abstractmethod
    def connect(self) -> bool:
        """
        Initialize connection to the platform.
        Returns True if successful.
        """

    @abstractmethod
    def disconnect(self) -> None:
        """Disconnect from the platform."""

    @abstractmethod
    def poll(self) -> List[Dict[str, Any]]:
        """
        Return new inbound messages.

        Each dict has at least:
        - chat_id: str (platform id, without prefix)
        - chat_title: str
        - text: str (non-text content already rendered as a placeholder)
        - from_user: str (display name)
        - from_user_id: str
        - message_id: str
        - mentions_bot: bool
        """

    @abstractmethod
    def send_text(self, chat_id: str, text: str) -> bool:
        """Send one platform-sized chunk to a raw platform chat id."""

    def set_typing(self, jid: str, on: bool) -> bool:
        return False

    def get_chat_title(self, chat_id: str) -> str:
        """Current chat name from the platform ("" if unknown)."""
        return ""

    def owns_identity(self, jid: str) -> bool:
        return bool(self.prefix) and str(jid).startswith(self.prefix)

    def to_jid(self, chat_id: str) -> str:
        return f"{self.prefix}{chat_id}"

    def chat_id_of(self, jid: str) -> str:
        return str(jid)[len(self.prefix):] if self.owns_identity(jid) else str(jid)

    def send_message(self, jid: str, text: str) -> bool:
        """Send `text` to a conversation identity, split to the platform limit."""
        if not text:
            return True
        chat_id = self.chat_id_of(jid)
        ok = True
        for chunk in split_text(text, self.max_message_length):
            ok = self.send_text(chat_id, chunk) and ok
        return ok


def split_text(text: str, limit: int) -> List[str]:
    """Split on line boundaries where possible; hard-split overlong lines."""
    if limit <= 0 or len(text) <= limit:
        return [text]
    chunks: List[str] = []
    cur = ""
    for line in text.split("\n"):
        while len(line) > limit:
            if cur:
                chunks.append(cur)
                cur = ""
            chunks.append(line[:limit])
            line = line[limit:]
        candidate = f"{cur}\n{line}" if cur else line
        if len(candidate) > limit:
            chunks.append(cur)
            cur = line
        else:
            cur = candidate
    if cur:
        chunks.append(cur)
    return chunks
