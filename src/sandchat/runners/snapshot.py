"""Environment snapshot written into a sandbox's ipc dir before it starts."""
from __future__ import annotations

from pathlib import Path
from typing import Iterable, List

from ..contracts.v1 import ChatInfo, ScheduledTask
from ..paths import ipc_dir
from ..util.fs import atomic_write_json
from ..util.time import utc_now_iso


def write_tasks_snapshot(folder: str, is_main: bool, tasks: Iterable[ScheduledTask]) -> Path:
    visible = [t for t in tasks if is_main or t.group_folder == folder]
    path = ipc_dir(folder) / "current_tasks.json"
    atomic_write_json(
        path,
        [
            {
                "id": t.id,
                "groupFolder": t.group_folder,
                "prompt": t.prompt,
                "schedule_type": t.schedule_type,
                "schedule_value": t.schedule_value,
                "status": t.status,
                "next_run": t.next_run,
            }
            for t in visible
        ],
    )
    return path


def write_groups_snapshot(
    folder: str,
    is_main: bool,
    chats: Iterable[ChatInfo],
    registered: Iterable[str],
) -> Path:
    """Only the privileged conversation gets to see (and register) other chats."""
    reg = set(registered)
    groups: List[dict] = []
    if is_main:
        groups = [
            {"jid": c.jid, "name": c.name, "lastActivity": c.last_message_time, "isRegistered": c.jid in reg}
            for c in chats
        ]
    path = ipc_dir(folder) / "available_groups.json"
    atomic_write_json(path, {"groups": groups, "lastSync": utc_now_iso()})
    return path
