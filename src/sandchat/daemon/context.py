from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import List, Optional

from ..contracts.v1 import Conversation
from ..kernel.cursors import Cursors
from ..kernel.ledger import MessageStore
from ..kernel.messaging import find_channel, route_outbound
from ..kernel.registry import Registry
from ..kernel.sessions import SessionStore
from ..kernel.settings import Settings
from ..kernel.tasks import TaskStore
from ..ports.im.adapters.base import ChannelAdapter
from .queue import ProcessQueue
from .typing_indicator import TypingManager

logger = logging.getLogger("sandchat.context")


@dataclass
class AppContext:
    """Everything the dispatch engine shares, built once at startup."""
    settings: Settings
    registry: Registry
    messages: MessageStore
    cursors: Cursors
    sessions: SessionStore
    tasks: TaskStore
    queue: ProcessQueue
    channels: List[ChannelAdapter] = field(default_factory=list)
    typing: Optional[TypingManager] = None
    stop_event: threading.Event = field(default_factory=threading.Event)

    def __post_init__(self) -> None:
        if self.typing is None:
            self.typing = TypingManager(self.set_typing, interval=self.settings.typing_refresh_seconds)
        self.queue.set_idle_fn(self.typing.stop)

    def is_main(self, conversation: Conversation) -> bool:
        return conversation.folder == self.settings.main_folder

    def needs_trigger(self, conversation: Conversation) -> bool:
        return conversation.requires_trigger and not self.is_main(conversation)

    def send(self, jid: str, text: str) -> bool:
        try:
            return route_outbound(self.channels, jid, text, assistant_name=self.settings.assistant_name)
        except Exception:
            logger.exception("outbound send failed", extra={"conversation": jid})
            return False

    def set_typing(self, jid: str, on: bool) -> None:
        ch = find_channel(self.channels, jid)
        if ch is not None:
            ch.set_typing(jid, on)
