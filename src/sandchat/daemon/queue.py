"""Per-conversation process queue.

Owns the mapping conversation -> at most one live sandbox, routes piped
input to it, and serializes turns: a conversation never has two turns (or
two processes) at once. Turns run on worker threads so callers never block
on a sandbox.

Per-conversation timers (idle close, retry) are stored on the slot and
always cancelled before being re-armed; a generation counter makes a timer
that already fired but lost the race a no-op.
"""
from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Literal, Optional, Protocol

logger = logging.getLogger("sandchat.queue")

SubmitResult = Literal["piped", "not_running"]
TimerFactory = Callable[[float, Callable[[], None]], Any]


class RegistrationError(RuntimeError):
    """A second live process was registered for the same conversation."""


class ProcessHandle(Protocol):
    label: str

    def is_running(self) -> bool: ...

    def write_message(self, text: str) -> bool: ...

    def close_input(self) -> None: ...

    def interrupt(self) -> bool: ...

    def kill(self) -> None: ...

    def wait(self, timeout: Optional[float] = None) -> Optional[int]: ...


def _thread_timer(interval: float, fn: Callable[[], None]) -> threading.Timer:
    t = threading.Timer(interval, fn)
    t.daemon = True
    return t


@dataclass
class _QueuedTask:
    task_id: str
    fn: Callable[[], None]


@dataclass
class _Slot:
    active: bool = False
    pending_check: bool = False
    pending_tasks: List[_QueuedTask] = field(default_factory=list)
    running_task_id: Optional[str] = None
    process: Optional[ProcessHandle] = None
    label: str = ""
    idle_timer: Any = None
    idle_gen: int = 0
    retry_timer: Any = None
    retry_count: int = 0


class ProcessQueue:
    def __init__(
        self,
        *,
        max_concurrent: int = 5,
        idle_timeout: float = 1800.0,
        max_retries: int = 5,
        retry_base: float = 5.0,
        timer_factory: Optional[TimerFactory] = None,
    ) -> None:
        self._lock = threading.Lock()
        self._slots: Dict[str, _Slot] = {}
        self._waiting: Deque[str] = deque()
        self._active_count = 0
        self._shutting_down = False
        self._process_fn: Optional[Callable[[str], bool]] = None
        self._idle_fn: Optional[Callable[[str], None]] = None
        self.max_concurrent = max(1, int(max_concurrent))
        self.idle_timeout = float(idle_timeout)
        self.max_retries = int(max_retries)
        self.retry_base = float(retry_base)
        self._timer_factory: TimerFactory = timer_factory or _thread_timer

    def set_process_fn(self, fn: Callable[[str], bool]) -> None:
        """Turn function: fn(jid) -> True on success, False to schedule a retry."""
        self._process_fn = fn

    def set_idle_fn(self, fn: Callable[[str], None]) -> None:
        """Called with the jid after an idle close (e.g. to drop the typing indicator)."""
        self._idle_fn = fn

    @property
    def is_shutting_down(self) -> bool:
        with self._lock:
            return self._shutting_down

    @property
    def active_count(self) -> int:
        with self._lock:
            return self._active_count

    def is_active(self, jid: str) -> bool:
        with self._lock:
            s = self._slots.get(jid)
            return bool(s and s.active)

    def has_process(self, jid: str) -> bool:
        with self._lock:
            s = self._slots.get(jid)
            return bool(s and s.process is not None)

    def _slot(self, jid: str) -> _Slot:
        s = self._slots.get(jid)
        if s is None:
            s = _Slot()
            self._slots[jid] = s
        return s

    # ---- scheduling -----------------------------------------------------

    def enqueue_check(self, jid: str) -> None:
        """Mark `jid` as having unconsumed messages; run a turn when possible."""
        with self._lock:
            if self._shutting_down:
                return
            s = self._slot(jid)
            if s.active:
                s.pending_check = True
                return
            if self._active_count >= self.max_concurrent:
                s.pending_check = True
                if jid not in self._waiting:
                    self._waiting.append(jid)
                logger.info(f"at concurrency limit, queued {jid}", extra={"conversation": jid})
                return
            self._start_locked(jid, s, None)

    def enqueue_task(self, jid: str, task_id: str, fn: Callable[[], None]) -> None:
        """Run `fn` under the conversation's exclusivity. Duplicate task ids are dropped."""
        with self._lock:
            if self._shutting_down:
                return
            s = self._slot(jid)
            if s.running_task_id == task_id or any(t.task_id == task_id for t in s.pending_tasks):
                return
            task = _QueuedTask(task_id=task_id, fn=fn)
            if s.active or self._active_count >= self.max_concurrent:
                s.pending_tasks.append(task)
                if not s.active and jid not in self._waiting:
                    self._waiting.append(jid)
                return
            self._start_locked(jid, s, task)

    def _start_locked(self, jid: str, s: _Slot, task: Optional[_QueuedTask]) -> None:
        s.active = True
        self._active_count += 1
        if task is None:
            target: Callable[[], None] = lambda: self._run_check(jid)
        else:
            s.running_task_id = task.task_id
            target = lambda: self._run_task(jid, task)
        threading.Thread(target=target, name=f"sandchat-turn:{jid}", daemon=True).start()

    def _run_check(self, jid: str) -> None:
        ok = False
        try:
            ok = bool(self._process_fn(jid)) if self._process_fn is not None else True
        except Exception:
            logger.exception("turn failed", extra={"conversation": jid})
        with self._lock:
            s = self._slot(jid)
            if ok:
                s.retry_count = 0
            elif not self._shutting_down:
                self._schedule_retry_locked(jid, s)
        self._finish(jid)

    def _run_task(self, jid: str, task: _QueuedTask) -> None:
        try:
            task.fn()
        except Exception:
            logger.exception(f"task {task.task_id} failed", extra={"conversation": jid, "task_id": task.task_id})
        self._finish(jid)

    def _finish(self, jid: str) -> None:
        with self._lock:
            s = self._slot(jid)
            s.active = False
            s.running_task_id = None
            self._clear_process_locked(s)
            self._active_count -= 1
            if self._shutting_down:
                return
            if s.pending_tasks:
                self._start_locked(jid, s, s.pending_tasks.pop(0))
                return
            if s.pending_check:
                s.pending_check = False
                self._start_locked(jid, s, None)
                return
            self._drain_waiting_locked()

    def _drain_waiting_locked(self) -> None:
        while self._waiting and self._active_count < self.max_concurrent:
            jid = self._waiting.popleft()
            s = self._slot(jid)
            if s.active:
                continue
            if s.pending_tasks:
                self._start_locked(jid, s, s.pending_tasks.pop(0))
            elif s.pending_check:
                s.pending_check = False
                self._start_locked(jid, s, None)

    def _schedule_retry_locked(self, jid: str, s: _Slot) -> None:
        s.retry_count += 1
        if s.retry_count > self.max_retries:
            logger.error(
                f"giving up on {jid} after {self.max_retries} retries; next message will retry",
                extra={"conversation": jid},
            )
            s.retry_count = 0
            return
        delay = self.retry_base * (2 ** (s.retry_count - 1))
        logger.info(f"retrying {jid} in {delay:.1f}s (attempt {s.retry_count})", extra={"conversation": jid})
        if s.retry_timer is not None:
            s.retry_timer.cancel()
        s.retry_timer = self._timer_factory(delay, lambda: self._on_retry(jid))
        s.retry_timer.start()

    def _on_retry(self, jid: str) -> None:
        with self._lock:
            self._slot(jid).retry_timer = None
            if self._shutting_down:
                return
        self.enqueue_check(jid)

    # ---- process registration & routing --------------------------------

    def register_process(self, jid: str, handle: ProcessHandle, label: str) -> None:
        """Record a freshly spawned process so submit() can find it.

        The idle countdown starts with the first result or piped input, not
        here: a first turn may legitimately run silent for a long time.
        """
        with self._lock:
            s = self._slot(jid)
            if self._shutting_down:
                raise RegistrationError(f"shutting down, refusing {label} for {jid}")
            if s.process is not None and s.process is not handle and s.process.is_running():
                raise RegistrationError(f"{jid} already has a live process ({s.label})")
            s.process = handle
            s.label = label

    def unregister_process(self, jid: str, handle: ProcessHandle) -> None:
        with self._lock:
            s = self._slots.get(jid)
            if s is not None and s.process is handle:
                self._clear_process_locked(s)

    def _clear_process_locked(self, s: _Slot) -> None:
        self._cancel_idle_locked(s)
        s.process = None
        s.label = ""

    def submit(self, jid: str, text: str) -> SubmitResult:
        """Pipe `text` into the live process for `jid`, never blocking on it."""
        with self._lock:
            s = self._slots.get(jid)
            if self._shutting_down or s is None or s.process is None or s.running_task_id is not None:
                return "not_running"
            if not s.process.write_message(text):
                return "not_running"
            self._arm_idle_locked(jid, s)
        logger.debug(f"piped input to {jid}", extra={"conversation": jid})
        return "piped"

    def notify_activity(self, jid: str) -> None:
        """Restart the idle countdown (e.g. after the sandbox produced a result)."""
        with self._lock:
            s = self._slots.get(jid)
            if s is not None and s.process is not None:
                self._arm_idle_locked(jid, s)

    # ---- idle close -------------------------------------------------------

    def _arm_idle_locked(self, jid: str, s: _Slot) -> None:
        self._cancel_idle_locked(s)
        gen = s.idle_gen
        s.idle_timer = self._timer_factory(self.idle_timeout, lambda: self._on_idle(jid, gen))
        s.idle_timer.start()

    def _cancel_idle_locked(self, s: _Slot) -> None:
        if s.idle_timer is not None:
            s.idle_timer.cancel()
            s.idle_timer = None
        s.idle_gen += 1

    def _on_idle(self, jid: str, gen: int) -> None:
        with self._lock:
            s = self._slots.get(jid)
            if s is None or s.idle_gen != gen or s.idle_timer is None:
                return
            s.idle_timer = None
            handle = s.process
            idle_fn = self._idle_fn
        if handle is None:
            return
        logger.info(f"idle for {self.idle_timeout:.0f}s, closing input of {jid}", extra={"conversation": jid})
        handle.close_input()
        if idle_fn is not None:
            try:
                idle_fn(jid)
            except Exception:
                logger.exception("idle callback failed", extra={"conversation": jid})

    # ---- controls -----------------------------------------------------------

    def close_input(self, jid: str) -> bool:
        with self._lock:
            s = self._slots.get(jid)
            if s is None or s.process is None:
                return False
            self._cancel_idle_locked(s)
            handle = s.process
        handle.close_input()
        return True

    def interrupt(self, jid: str) -> bool:
        with self._lock:
            s = self._slots.get(jid)
            handle = s.process if s is not None else None
        if handle is None:
            return False
        logger.info(f"interrupting {jid}", extra={"conversation": jid})
        return bool(handle.interrupt())

    def kill(self, jid: str) -> bool:
        with self._lock:
            s = self._slots.get(jid)
            handle = s.process if s is not None else None
            if handle is None:
                return False
            self._clear_process_locked(s)
        logger.info(f"killing {jid} ({handle.label})", extra={"conversation": jid})
        try:
            handle.kill()
        except Exception:
            logger.exception("kill failed; registration cleared anyway", extra={"conversation": jid})
        return True

    def shutdown(self, timeout: float) -> None:
        """Interrupt every live process, wait up to `timeout` seconds, then kill the rest.

        Returns by the deadline; processes spawned afterwards are refused by
        register_process().
        """
        with self._lock:
            self._shutting_down = True
            self._waiting.clear()
            live: List[tuple[str, ProcessHandle]] = []
            for jid, s in self._slots.items():
                self._cancel_idle_locked(s)
                if s.retry_timer is not None:
                    s.retry_timer.cancel()
                    s.retry_timer = None
                if s.process is not None:
                    live.append((jid, s.process))
        if not live:
            return
        logger.info(f"shutting down {len(live)} sandbox(es), timeout={timeout:.1f}s")
        for jid, h in live:
            try:
                h.interrupt()
            except Exception:
                logger.exception("interrupt failed", extra={"conversation": jid})
        deadline = time.monotonic() + max(0.0, float(timeout))
        survivors = []
        for jid, h in live:
            remaining = max(0.0, deadline - time.monotonic())
            if h.wait(remaining) is None and h.is_running():
                survivors.append((jid, h))
        if not survivors:
            return
        # Kills run concurrently and are not awaited past the deadline.
        killers = []
        for jid, h in survivors:
            logger.warning(f"{h.label} did not exit in time, killing", extra={"conversation": jid})
            t = threading.Thread(target=self._kill_quietly, args=(jid, h), name=f"sandchat-kill:{jid}", daemon=True)
            t.start()
            killers.append(t)
        for t in killers:
            t.join(max(0.0, deadline - time.monotonic()))

    def _kill_quietly(self, jid: str, handle: ProcessHandle) -> None:
        try:
            handle.kill()
        except Exception:
            logger.exception("kill failed", extra={"conversation": jid})
