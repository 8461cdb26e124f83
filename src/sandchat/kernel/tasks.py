"""Scheduled task records (tasks.json).

Only storage and next-run computation live here; running due tasks is the
scheduler's job.
"""
from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from croniter import croniter
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..contracts.v1 import ScheduledTask, TaskStatus
from ..paths import ensure_home
from ..util.fs import atomic_write_json, read_json
from ..util.time import format_utc_iso, parse_utc_iso
from .state import StoreError


class ScheduleError(ValueError):
    """Invalid cron expression, interval, or timestamp."""


def compute_next_run(
    schedule_type: str,
    schedule_value: str,
    *,
    tz: str = "UTC",
    now: Optional[datetime] = None,
) -> Optional[str]:
    """Return the first run time (UTC ISO) for a schedule, or raise ScheduleError."""
    now = now or datetime.now(timezone.utc)
    value = str(schedule_value or "").strip()
    if schedule_type == "cron":
        try:
            zone = ZoneInfo(tz)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ScheduleError(f"unknown timezone: {tz}") from e
        if not croniter.is_valid(value):
            raise ScheduleError(f"invalid cron expression: {value}")
        nxt = croniter(value, now.astimezone(zone)).get_next(datetime)
        return format_utc_iso(nxt)
    if schedule_type == "interval":
        try:
            ms = int(value)
        except ValueError as e:
            raise ScheduleError(f"invalid interval: {value}") from e
        if ms <= 0:
            raise ScheduleError(f"invalid interval: {value}")
        return format_utc_iso(now + timedelta(milliseconds=ms))
    if schedule_type == "once":
        dt = parse_utc_iso(value)
        if dt is None:
            raise ScheduleError(f"invalid timestamp: {value}")
        return format_utc_iso(dt)
    raise ScheduleError(f"unknown schedule type: {schedule_type}")


class TaskStore:
    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = path or (ensure_home() / "tasks.json")
        self._lock = threading.Lock()
        doc = read_json(self.path)
        raw = doc.get("tasks") if isinstance(doc.get("tasks"), list) else []
        self._tasks: Dict[str, ScheduledTask] = {}
        for item in raw:
            if isinstance(item, dict):
                t = ScheduledTask.model_validate(item)
                self._tasks[t.id] = t

    def _save(self) -> None:
        doc: Dict[str, Any] = {"v": 1, "tasks": [t.model_dump() for t in self._tasks.values()]}
        try:
            atomic_write_json(self.path, doc)
        except OSError as e:
            raise StoreError(f"failed to write {self.path}: {e}") from e

    def create(self, task: ScheduledTask) -> ScheduledTask:
        with self._lock:
            self._tasks[task.id] = task
            self._save()
        return task

    def get(self, task_id: str) -> Optional[ScheduledTask]:
        with self._lock:
            return self._tasks.get(task_id)

    def list(self, *, folder: Optional[str] = None) -> List[ScheduledTask]:
        with self._lock:
            tasks = list(self._tasks.values())
        if folder is not None:
            tasks = [t for t in tasks if t.group_folder == folder]
        tasks.sort(key=lambda t: t.created_at)
        return tasks

    def set_status(self, task_id: str, status: TaskStatus) -> Optional[ScheduledTask]:
        with self._lock:
            t = self._tasks.get(task_id)
            if t is None:
                return None
            t = t.model_copy(update={"status": status})
            self._tasks[task_id] = t
            self._save()
        return t

    def delete(self, task_id: str) -> bool:
        with self._lock:
            if self._tasks.pop(task_id, None) is None:
                return False
            self._save()
        return True
