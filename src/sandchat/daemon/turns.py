"""Cursor & recovery protocol: one turn for one conversation.

The agent-delivered watermark is advanced *before* the sandbox runs
(optimistic advance), then compensated by a rollback only when the turn
failed, nothing reached the user, and we are not shutting down. Once any
output was delivered a failure is not rolled back: a retry would repeat
that output.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List

from ..contracts.v1 import (
    Conversation,
    ErrorEvent,
    PartialOutputEvent,
    ResultEvent,
    SandboxRequest,
    SessionEvent,
)
from ..kernel.messaging import format_messages, matches_trigger
from ..kernel.state import StoreError
from ..runners.sandbox import InvocationOutcome, SandboxProcess, run_sandbox
from ..runners.snapshot import write_groups_snapshot, write_tasks_snapshot
from .context import AppContext

logger = logging.getLogger("sandchat.turns")


@dataclass
class _TurnState:
    output_sent: bool = False
    had_error: bool = False


class TurnProcessor:
    def __init__(self, ctx: AppContext, *, runner=run_sandbox) -> None:
        self.ctx = ctx
        self._runner = runner

    def process_conversation(self, jid: str) -> bool:
        """Run one turn for `jid`. False means "failed, please retry"."""
        ctx = self.ctx
        conv = ctx.registry.get(jid)
        if conv is None:
            return True
        extra = {"conversation": jid, "folder": conv.folder}

        previous = ctx.cursors.agent_delivered(jid)
        pending = ctx.messages.messages_since(jid, previous)
        if not pending:
            return True
        if ctx.needs_trigger(conv) and not matches_trigger(pending, ctx.settings.trigger_pattern):
            return True

        prompt = format_messages(pending)
        try:
            ctx.cursors.advance_agent(jid, pending[-1].timestamp)
        except StoreError as e:
            logger.error(f"cannot advance cursor, not starting turn: {e}", extra=extra)
            return False
        logger.info(f"processing {len(pending)} message(s)", extra=extra)

        state = _TurnState()
        ctx.typing.start(jid)
        try:
            outcome = self._run_agent(conv, prompt, state)
        finally:
            ctx.typing.stop(jid)

        if outcome.status == "cancelled":
            logger.info("turn cancelled", extra=extra)
            return True
        if outcome.status == "error" or state.had_error:
            if state.output_sent:
                logger.warning(f"turn failed after output was sent, keeping cursor: {outcome.error}", extra=extra)
                return True
            if ctx.queue.is_shutting_down:
                logger.warning(f"turn failed during shutdown, keeping cursor: {outcome.error}", extra=extra)
                return True
            try:
                ctx.cursors.rollback_agent(jid, previous)
            except StoreError as e:
                logger.error(f"cursor rollback failed: {e}", extra=extra)
            logger.warning(f"turn failed, rolled cursor back for retry: {outcome.error}", extra=extra)
            return False
        return True

    def _on_event(self, conv: Conversation, state: _TurnState, evt: object) -> None:
        ctx = self.ctx
        jid = conv.jid
        if isinstance(evt, SessionEvent):
            try:
                ctx.sessions.set(conv.folder, evt.session_id)
            except StoreError as e:
                logger.error(f"failed to persist session id: {e}", extra={"conversation": jid})
        elif isinstance(evt, PartialOutputEvent):
            if ctx.send(jid, evt.text):
                state.output_sent = True
        elif isinstance(evt, ResultEvent):
            if ctx.send(jid, evt.text()):
                state.output_sent = True
            ctx.typing.stop(jid)
            ctx.queue.notify_activity(jid)
        elif isinstance(evt, ErrorEvent):
            state.had_error = True
            ctx.typing.stop(jid)
            # Silent before any output (the turn is retried); otherwise relay
            # the sandbox's own message only.
            if state.output_sent and evt.error:
                ctx.send(jid, evt.error)

    def _run_agent(self, conv: Conversation, prompt: str, state: _TurnState) -> InvocationOutcome:
        ctx = self.ctx
        is_main = ctx.is_main(conv)
        try:
            write_tasks_snapshot(conv.folder, is_main, ctx.tasks.list())
            write_groups_snapshot(conv.folder, is_main, ctx.messages.list_chats(), ctx.registry.jids())
        except OSError as e:
            logger.error(f"failed to write environment snapshot: {e}", extra={"conversation": conv.jid})
            return InvocationOutcome(status="error", spawned=False, error=str(e))

        request = SandboxRequest(
            prompt=prompt,
            session_id=ctx.sessions.get(conv.folder),
            group_folder=conv.folder,
            chat_jid=conv.jid,
            is_main=is_main,
        )
        spawned: List[SandboxProcess] = []

        def on_spawn(handle: SandboxProcess) -> None:
            ctx.queue.register_process(conv.jid, handle, handle.label)
            spawned.append(handle)

        try:
            return self._runner(
                conv,
                request,
                settings=ctx.settings,
                on_spawn=on_spawn,
                on_event=lambda evt: self._on_event(conv, state, evt),
            )
        finally:
            for handle in spawned:
                ctx.queue.unregister_process(conv.jid, handle)

    def recover_pending(self) -> List[str]:
        """Enqueue a check for every conversation with undelivered messages."""
        ctx = self.ctx
        recovered: List[str] = []
        for jid in ctx.registry.jids():
            pending = ctx.messages.messages_since(jid, ctx.cursors.agent_delivered(jid))
            if pending:
                logger.info(f"recovery: {len(pending)} unprocessed message(s)", extra={"conversation": jid})
                ctx.queue.enqueue_check(jid)
                recovered.append(jid)
        return recovered
