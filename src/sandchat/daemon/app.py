"""Wiring: builds the context, starts the loops, and shuts them down."""
from __future__ import annotations

import logging
import subprocess
import threading
from typing import List, Optional

from ..kernel.cursors import Cursors
from ..kernel.ledger import MessageStore
from ..kernel.messaging import find_channel
from ..kernel.registry import load_registry
from ..kernel.sessions import SessionStore
from ..kernel.settings import Settings, load_settings
from ..kernel.state import StoreError
from ..kernel.tasks import TaskStore
from ..ports.im.adapters.base import ChannelAdapter
from ..ports.im.bridge import ChannelBridge
from .commands import CommandWatcher
from .context import AppContext
from .dispatch import DispatchLoop
from .queue import ProcessQueue
from .turns import TurnProcessor

logger = logging.getLogger("sandchat.app")


def build_channels(settings: Settings) -> List[ChannelAdapter]:
    """Adapters for every platform that has credentials configured."""
    channels: List[ChannelAdapter] = []
    token = settings.telegram_token()
    if token:
        from ..ports.im.adapters.telegram import TelegramAdapter

        channels.append(TelegramAdapter(token))
    bot_token, app_token = settings.slack_tokens()
    if bot_token:
        from ..ports.im.adapters.slack import SlackAdapter

        channels.append(SlackAdapter(bot_token, app_token or None))
    token = settings.discord_token()
    if token:
        from ..ports.im.adapters.discord import DiscordAdapter

        channels.append(DiscordAdapter(token))
    return channels


def build_context(settings: Optional[Settings] = None, channels: Optional[List[ChannelAdapter]] = None) -> AppContext:
    settings = settings or load_settings()
    queue = ProcessQueue(
        max_concurrent=settings.max_concurrent_sandboxes,
        idle_timeout=settings.idle_timeout_seconds,
        max_retries=settings.max_retries,
        retry_base=settings.retry_base_seconds,
    )
    return AppContext(
        settings=settings,
        registry=load_registry(),
        messages=MessageStore(),
        cursors=Cursors(),
        sessions=SessionStore(),
        tasks=TaskStore(),
        queue=queue,
        channels=list(channels or []),
    )


def cleanup_orphans(settings: Settings) -> None:
    """Stop leftover docker sandboxes from a previous run."""
    if settings.sandbox.runtime != "docker":
        return
    try:
        out = subprocess.run(
            ["docker", "ps", "--filter", f"name={settings.sandbox.name_prefix}", "--format", "{{.Names}}"],
            capture_output=True,
            text=True,
            timeout=15,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.warning(f"orphan cleanup skipped: {e}")
        return
    names = [n.strip() for n in out.stdout.splitlines() if n.strip().startswith(settings.sandbox.name_prefix)]
    for name in names:
        try:
            subprocess.run(["docker", "stop", "-t", "1", name], capture_output=True, timeout=30)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning(f"failed to stop orphan {name}: {e}")
    if names:
        logger.info(f"stopped {len(names)} orphaned sandbox(es): {', '.join(names)}")


class App:
    def __init__(self, ctx: AppContext) -> None:
        self.ctx = ctx
        self.turns = TurnProcessor(ctx)
        self.dispatch = DispatchLoop(ctx)
        self.commands = CommandWatcher(ctx, on_refresh=self.refresh_chats)
        self.bridges = [ChannelBridge(ctx, ch) for ch in ctx.channels]
        self._threads: List[threading.Thread] = []
        self._shutdown_lock = threading.Lock()
        self._shut_down = False
        ctx.queue.set_process_fn(self.turns.process_conversation)

    def refresh_chats(self) -> None:
        """Re-read chat names from the platforms."""
        ctx = self.ctx
        for chat in ctx.messages.list_chats():
            ch = find_channel(ctx.channels, chat.jid)
            if ch is None:
                continue
            title = ch.get_chat_title(ch.chat_id_of(chat.jid))
            if title and title != chat.name:
                ctx.messages.store_chat_metadata(chat.jid, title, touch=False)

    def start(self) -> None:
        ctx = self.ctx
        cleanup_orphans(ctx.settings)
        for bridge in list(self.bridges):
            if not bridge.adapter.connect():
                logger.error(f"{bridge.adapter.platform} failed to connect; channel disabled")
                self.bridges.remove(bridge)
                ctx.channels.remove(bridge.adapter)
        if not self.bridges:
            logger.warning("no chat channels connected; only injected messages will be processed")
        self.turns.recover_pending()
        self._threads.append(self.dispatch.start())
        self._threads.append(self.commands.start())
        for bridge in self.bridges:
            self._threads.append(bridge.start())
        logger.info(f"sandchat running with {len(ctx.registry.jids())} conversation(s)")

    def _advance_all_cursors(self) -> None:
        ctx = self.ctx
        for jid in ctx.registry.jids():
            latest = ctx.messages.latest_timestamp(jid)
            if not latest:
                continue
            try:
                ctx.cursors.advance_agent(jid, latest)
            except StoreError as e:
                logger.error(f"shutdown cursor advance failed: {e}", extra={"conversation": jid})

    def shutdown(self) -> None:
        with self._shutdown_lock:
            if self._shut_down:
                return
            self._shut_down = True
        ctx = self.ctx
        logger.info("shutting down")
        ctx.stop_event.set()
        if ctx.settings.shutdown_advance_cursors:
            self._advance_all_cursors()
        ctx.queue.shutdown(ctx.settings.shutdown_timeout_seconds)
        if ctx.settings.shutdown_advance_cursors:
            self._advance_all_cursors()
        ctx.typing.stop_all()
        for ch in ctx.channels:
            try:
                ch.disconnect()
            except Exception:
                logger.exception(f"{ch.platform} disconnect failed")
        for t in self._threads:
            t.join(timeout=2.0)
