"""
Bridge between one chat adapter and the dispatch engine.

Polls the adapter, answers chat commands, stores messages for registered
conversations (metadata for every chat), and translates platform-native
bot mentions into the trigger form.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Optional

from ...daemon.context import AppContext
from ...kernel.state import StoreError
from .adapters.base import ChannelAdapter
from .commands import CommandType, parse_message

logger = logging.getLogger("sandchat.im.bridge")


class ChannelBridge:
    def __init__(self, ctx: AppContext, adapter: ChannelAdapter, *, idle_sleep: float = 0.5) -> None:
        self.ctx = ctx
        self.adapter = adapter
        self.idle_sleep = float(idle_sleep)
        self._thread: Optional[threading.Thread] = None

    def _advance_to_latest(self, jid: str) -> None:
        latest = self.ctx.messages.latest_timestamp(jid)
        if not latest:
            return
        try:
            self.ctx.cursors.advance_agent(jid, latest)
        except StoreError as e:
            logger.error(f"cursor advance failed: {e}", extra={"conversation": jid})

    def _handle_command(self, jid: str, ctype: CommandType) -> None:
        ctx = self.ctx
        registered = ctx.registry.get(jid) is not None
        if ctype == CommandType.CHATID:
            self.adapter.send_message(jid, f"Chat ID: {jid}")
        elif ctype == CommandType.PING:
            self.adapter.send_message(jid, f"{ctx.settings.assistant_name} is online.")
        elif ctype == CommandType.STOP and registered:
            # Skip whatever is pending so the stopped request isn't replayed.
            if ctx.queue.interrupt(jid):
                self._advance_to_latest(jid)
                self.adapter.send_message(jid, "Stopped.")
            else:
                self.adapter.send_message(jid, "Nothing is running.")
        elif ctype == CommandType.RESTART and registered:
            killed = ctx.queue.kill(jid)
            self._advance_to_latest(jid)
            self.adapter.send_message(jid, "Restarted." if killed else "Nothing was running; next message starts fresh.")

    def handle_inbound(self, item: Dict[str, Any]) -> None:
        ctx = self.ctx
        chat_id = str(item.get("chat_id") or "").strip()
        text = str(item.get("text") or "").strip()
        if not chat_id or not text:
            return
        jid = self.adapter.to_jid(chat_id)
        extra = {"conversation": jid, "platform": self.adapter.platform}

        try:
            ctx.messages.store_chat_metadata(jid, str(item.get("chat_title") or ""))
        except StoreError as e:
            logger.warning(f"chat metadata not saved: {e}", extra=extra)

        parsed = parse_message(text)
        if parsed.type != CommandType.MESSAGE:
            self._handle_command(jid, parsed.type)
            return

        if ctx.registry.get(jid) is None:
            return

        if item.get("mentions_bot") and not ctx.settings.trigger_pattern.search(text):
            text = f"@{ctx.settings.assistant_name} {text}"

        mid = str(item.get("message_id") or "").strip()
        ctx.messages.store_message(
            jid,
            text,
            sender=str(item.get("from_user_id") or item.get("from_user") or ""),
            sender_name=str(item.get("from_user") or ""),
            is_from_assistant=bool(item.get("from_bot")),
            message_id=f"{jid}:{mid}" if mid else None,
        )
        logger.debug("stored inbound message", extra=extra)

    def run_once(self) -> int:
        items = self.adapter.poll()
        for item in items:
            try:
                self.handle_inbound(item)
            except Exception:
                logger.exception("inbound handling failed", extra={"platform": self.adapter.platform})
        return len(items)

    def run_forever(self) -> None:
        while not self.ctx.stop_event.is_set():
            try:
                n = self.run_once()
            except Exception:
                logger.exception("poll failed", extra={"platform": self.adapter.platform})
                n = 0
            if n == 0:
                self.ctx.stop_event.wait(self.idle_sleep)

    def start(self) -> threading.Thread:
        self._thread = threading.Thread(
            target=self.run_forever, name=f"sandchat-bridge:{self.adapter.platform}", daemon=True
        )
        self._thread.start()
        return self._thread
