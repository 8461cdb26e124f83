"""
Discord adapter.

Uses discord.py's Gateway client for inbound and outbound; the asyncio
loop runs in a background thread.
"""

from __future__ import annotations

import asyncio
import logging
import re
import threading
from typing import Any, Dict, List, Optional

from .base import ChannelAdapter

logger = logging.getLogger("sandchat.im.discord")

DISCORD_MAX_MESSAGE_LENGTH = 2000


class DiscordAdapter(ChannelAdapter):
    platform = "discord"
    prefix = "dc:"
    max_message_length = DISCORD_MAX_MESSAGE_LENGTH

    def __init__(self, token: str, *, connect_timeout: float = 30.0):
        self.token = token
        self.connect_timeout = float(connect_timeout)
        self._connected = False
        self._client: Any = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._message_queue: List[Dict[str, Any]] = []
        self._queue_lock = threading.Lock()
        self._ready_event = threading.Event()

    def connect(self) -> bool:
        import discord

        intents = discord.Intents.default()
        intents.message_content = True
        self._client = discord.Client(intents=intents)

        @self._client.event
        async def on_ready():
            logger.info(f"connected as {self._client.user}", extra={"platform": self.platform})
            self._ready_event.set()

        @self._client.event
        async def on_message(message):
            self._handle_message(message)

        def run_loop() -> None:
            self._loop = asyncio.new_event_loop()
            asyncio.set_event_loop(self._loop)
            try:
                self._loop.run_until_complete(self._client.start(self.token))
            except Exception as e:
                logger.error(f"client error: {e}", extra={"platform": self.platform})
            finally:
                self._loop.close()

        self._thread = threading.Thread(target=run_loop, name="sandchat-discord", daemon=True)
        self._thread.start()

        if not self._ready_event.wait(timeout=self.connect_timeout):
            logger.error("connection timeout", extra={"platform": self.platform})
            return False
        self._connected = True
        return True

    def _handle_message(self, message: Any) -> None:
        me = self._client.user
        if message.author == me or getattr(message.author, "bot", False):
            return
        text = message.content or ""
        attachments = getattr(message, "attachments", None) or []
        if attachments:
            names = ", ".join(getattr(a, "filename", "file") for a in attachments)
            text = f"[File: {names}] {text}".strip()
        if not text:
            return

        mentions_bot = getattr(message, "guild", None) is None
        if me is not None:
            mentions_bot = mentions_bot or any(getattr(u, "id", None) == me.id for u in (message.mentions or []))
            text = re.sub(rf"\s*<@!?{me.id}>\s*", " ", text).strip()

        chat_id = str(message.channel.id)
        with self._queue_lock:
            self._message_queue.append({
                "chat_id": chat_id,
                "chat_title": getattr(message.channel, "name", None) or chat_id,
                "text": text,
                "from_user": getattr(message.author, "display_name", None) or message.author.name,
                "from_user_id": str(message.author.id),
                "message_id": str(message.id),
                "mentions_bot": mentions_bot,
            })

    def disconnect(self) -> None:
        if self._client and self._loop and not self._loop.is_closed():
            try:
                asyncio.run_coroutine_threadsafe(self._client.close(), self._loop).result(timeout=5)
            except Exception:
                pass
        self._connected = False

    def poll(self) -> List[Dict[str, Any]]:
        if not self._connected:
            return []
        with self._queue_lock:
            messages = list(self._message_queue)
            self._message_queue.clear()
        return messages

    def _run(self, coro: Any, timeout: float = 10.0) -> Any:
        return asyncio.run_coroutine_threadsafe(coro, self._loop).result(timeout=timeout)

    def send_text(self, chat_id: str, text: str) -> bool:
        if not self._connected or not self._client or not self._loop:
            return False

        async def do_send() -> bool:
            channel = self._client.get_channel(int(chat_id))
            if channel is None:
                logger.warning(f"channel {chat_id} not found", extra={"platform": self.platform})
                return False
            await channel.send(text)
            return True

        try:
            return bool(self._run(do_send()))
        except Exception as e:
            logger.error(f"send to {chat_id} failed: {e}", extra={"platform": self.platform})
            return False

    def set_typing(self, jid: str, on: bool) -> bool:
        # Discord's indicator lasts ~10s per trigger and cannot be cleared.
        if not on or not self._connected or not self._loop:
            return True

        async def do_typing() -> bool:
            channel = self._client.get_channel(int(self.chat_id_of(jid)))
            if channel is None:
                return False
            await channel.typing()
            return True

        try:
            return bool(self._run(do_typing()))
        except Exception:
            return False

    def get_chat_title(self, chat_id: str) -> str:
        if not self._client:
            return ""
        try:
            channel = self._client.get_channel(int(chat_id))
        except (TypeError, ValueError):
            return ""
        return str(getattr(channel, "name", "") or "") if channel is not None else ""
