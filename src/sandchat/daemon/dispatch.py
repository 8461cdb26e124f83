from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional

from ..contracts.v1 import InboundMessage
from ..kernel.messaging import format_messages, matches_trigger
from ..kernel.state import StoreError
from .context import AppContext

logger = logging.getLogger("sandchat.dispatch")


class DispatchLoop:
    """Polls the message store and feeds new messages to the process queue.

    Messages for a conversation with a live sandbox are piped into it;
    otherwise a check is enqueued and a turn picks them up.
    """

    def __init__(self, ctx: AppContext) -> None:
        self.ctx = ctx
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> int:
        """One poll. Returns the number of new messages observed."""
        ctx = self.ctx
        messages, newest = ctx.messages.new_messages(ctx.registry.jids(), ctx.cursors.global_seen)
        if not messages:
            return 0
        try:
            ctx.cursors.set_global_seen(newest)
        except StoreError as e:
            logger.error(f"cannot persist global cursor: {e}")
            return 0

        by_chat: Dict[str, List[InboundMessage]] = {}
        for m in messages:
            by_chat.setdefault(m.chat_jid, []).append(m)

        for jid, new in by_chat.items():
            conv = ctx.registry.get(jid)
            if conv is None:
                continue
            if ctx.needs_trigger(conv) and not matches_trigger(new, ctx.settings.trigger_pattern):
                continue
            self._deliver(jid)
        return len(messages)

    def _deliver(self, jid: str) -> None:
        ctx = self.ctx
        extra = {"conversation": jid}
        # Everything after the agent cursor, which includes earlier messages that
        # waited for a trigger. Empty when a turn already took this batch.
        to_send = ctx.messages.messages_since(jid, ctx.cursors.agent_delivered(jid))
        if not to_send:
            return
        if not ctx.queue.has_process(jid):
            ctx.queue.enqueue_check(jid)
            return
        try:
            previous = ctx.cursors.advance_agent(jid, to_send[-1].timestamp)
        except StoreError as e:
            logger.error(f"cannot advance cursor before piping: {e}", extra=extra)
            ctx.queue.enqueue_check(jid)
            return
        if ctx.queue.submit(jid, format_messages(to_send)) == "piped":
            logger.info(f"piped {len(to_send)} message(s) to live sandbox", extra=extra)
            ctx.typing.start(jid)
            return
        try:
            ctx.cursors.rollback_agent(jid, previous)
        except StoreError as e:
            logger.error(f"cursor rollback failed: {e}", extra=extra)
        ctx.queue.enqueue_check(jid)

    def run_forever(self) -> None:
        ctx = self.ctx
        interval = ctx.settings.poll_interval_seconds
        logger.info(f"dispatch loop running (interval={interval}s)")
        while not ctx.stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("dispatch loop iteration failed")
            ctx.stop_event.wait(interval)

    def start(self) -> threading.Thread:
        self._thread = threading.Thread(target=self.run_forever, name="sandchat-dispatch", daemon=True)
        self._thread.start()
        return self._thread
