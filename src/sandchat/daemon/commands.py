"""File-based command channel.

Sandboxes drop JSON requests into <home>/ipc/<folder>/{messages,tasks}/.
The source folder is the caller's identity: the privileged folder may act
on any conversation, everyone else only on their own. Each file is handled
once, then deleted; a file whose handler raises is moved to
<home>/ipc/errors/<folder>-<name>.
"""
from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from ..contracts.v1 import (
    Conversation,
    RefreshGroupsRequest,
    RegisterGroupRequest,
    ScheduledTask,
    ScheduleTaskRequest,
    SendMessageRequest,
    TaskControlRequest,
    UnregisterGroupRequest,
    parse_command,
)
from ..kernel.tasks import compute_next_run
from ..paths import ensure_home
from ..runners.snapshot import write_groups_snapshot
from .context import AppContext

logger = logging.getLogger("sandchat.commands")

ERRORS_DIR = "errors"
_SUBDIRS = ("messages", "tasks")


class CommandWatcher:
    def __init__(self, ctx: AppContext, *, on_refresh: Optional[Callable[[], None]] = None) -> None:
        self.ctx = ctx
        self.root = ensure_home() / "ipc"
        self._on_refresh = on_refresh
        self._thread: Optional[threading.Thread] = None

    def _authorized(self, source_folder: str, target_folder: str) -> bool:
        return source_folder == self.ctx.settings.main_folder or source_folder == target_folder

    def _move_to_errors(self, path: Path, source_folder: str) -> None:
        dest = self.root / ERRORS_DIR / f"{source_folder}-{path.name}"
        dest.parent.mkdir(parents=True, exist_ok=True)
        os.replace(path, dest)

    def run_once(self) -> int:
        """Process every pending request file once. Returns how many were handled."""
        if not self.root.exists():
            return 0
        handled = 0
        for folder_dir in sorted(p for p in self.root.iterdir() if p.is_dir() and p.name != ERRORS_DIR):
            for sub in _SUBDIRS:
                d = folder_dir / sub
                if not d.is_dir():
                    continue
                for path in sorted(d.glob("*.json")):
                    handled += 1
                    try:
                        doc = json.loads(path.read_text(encoding="utf-8"))
                        if not isinstance(doc, dict):
                            raise ValueError("request must be a JSON object")
                        self.handle(doc, folder_dir.name)
                        path.unlink()
                    except Exception as e:
                        logger.error(
                            f"command {path.name} failed: {e}",
                            extra={"folder": folder_dir.name, "op": "command"},
                        )
                        try:
                            self._move_to_errors(path, folder_dir.name)
                        except OSError as move_err:
                            logger.error(f"cannot move {path} to errors: {move_err}")
        return handled

    def handle(self, doc: Dict[str, Any], source_folder: str) -> None:
        req = parse_command(doc)
        is_main = source_folder == self.ctx.settings.main_folder
        extra = {"folder": source_folder, "op": req.type}

        if isinstance(req, SendMessageRequest):
            target = self.ctx.registry.get(req.chat_jid)
            if target is None or not self._authorized(source_folder, target.folder):
                logger.warning(f"unauthorized message to {req.chat_jid} blocked", extra=extra)
                return
            self.ctx.send(req.chat_jid, req.text)
            return

        if isinstance(req, ScheduleTaskRequest):
            target = self.ctx.registry.get(req.target_jid)
            if target is None:
                logger.warning(f"schedule_task for unregistered {req.target_jid}", extra=extra)
                return
            if not self._authorized(source_folder, target.folder):
                logger.warning(f"unauthorized schedule_task for {target.folder} blocked", extra=extra)
                return
            task = ScheduledTask(
                group_folder=target.folder,
                chat_jid=target.jid,
                prompt=req.prompt,
                schedule_type=req.schedule_type,
                schedule_value=req.schedule_value,
                context_mode=req.context_mode,
                next_run=compute_next_run(req.schedule_type, req.schedule_value, tz=self.ctx.settings.timezone),
            )
            self.ctx.tasks.create(task)
            logger.info(f"task {task.id} scheduled ({task.schedule_type} {task.schedule_value})", extra={**extra, "task_id": task.id})
            return

        if isinstance(req, TaskControlRequest):
            task = self.ctx.tasks.get(req.task_id)
            if task is None or not self._authorized(source_folder, task.group_folder):
                logger.warning(f"unauthorized {req.type} on {req.task_id} blocked", extra=extra)
                return
            if req.type == "cancel_task":
                self.ctx.tasks.delete(task.id)
            else:
                self.ctx.tasks.set_status(task.id, "paused" if req.type == "pause_task" else "active")
            logger.info(f"{req.type}: {task.id}", extra={**extra, "task_id": task.id})
            return

        if not is_main:
            logger.warning(f"unauthorized {req.type} from non-privileged folder blocked", extra=extra)
            return

        if isinstance(req, RegisterGroupRequest):
            self.ctx.registry.register(
                Conversation(
                    jid=req.jid,
                    name=req.name,
                    folder=req.folder,
                    trigger=req.trigger or f"@{self.ctx.settings.assistant_name}",
                    requires_trigger=req.requires_trigger,
                    sandbox=req.sandbox,
                )
            )
        elif isinstance(req, UnregisterGroupRequest):
            self.ctx.registry.unregister(req.jid)
        elif isinstance(req, RefreshGroupsRequest):
            if self._on_refresh is not None:
                self._on_refresh()
            write_groups_snapshot(
                source_folder, True, self.ctx.messages.list_chats(), self.ctx.registry.jids()
            )

    def run_forever(self) -> None:
        interval = self.ctx.settings.command_poll_interval_seconds
        while not self.ctx.stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("command channel iteration failed")
            self.ctx.stop_event.wait(interval)

    def start(self) -> threading.Thread:
        self._thread = threading.Thread(target=self.run_forever, name="sandchat-commands", daemon=True)
        self._thread.start()
        return self._thread
