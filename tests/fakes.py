"""Test doubles shared by the sandchat tests."""
from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, List, Optional


class FakeTimer:
    def __init__(self, interval: float, fn: Callable[[], None]) -> None:
        self.interval = interval
        self.fn = fn
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        if not self.cancelled:
            self.fn()


class TimerRecorder:
    def __init__(self) -> None:
        self.timers: List[FakeTimer] = []

    def __call__(self, interval: float, fn: Callable[[], None]) -> FakeTimer:
        t = FakeTimer(interval, fn)
        self.timers.append(t)
        return t

    def live(self) -> List[FakeTimer]:
        return [t for t in self.timers if t.started and not t.cancelled]


class FakeHandle:
    def __init__(self, label: str = "fake", *, exit_on_interrupt: bool = True) -> None:
        self.label = label
        self.exit_on_interrupt = exit_on_interrupt
        self.lines: List[str] = []
        self.close_calls = 0
        self.interrupts = 0
        self.kills = 0
        self._exited = threading.Event()

    def is_running(self) -> bool:
        return not self._exited.is_set()

    def write_message(self, text: str) -> bool:
        if not self.is_running() or self.close_calls:
            return False
        self.lines.append(text)
        return True

    def close_input(self) -> None:
        self.close_calls += 1

    def interrupt(self) -> bool:
        self.interrupts += 1
        if self.exit_on_interrupt:
            self._exited.set()
        return True

    def kill(self) -> None:
        self.kills += 1
        self._exited.set()

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        return 0 if self._exited.wait(timeout) else None


def wait_until(pred: Callable[[], bool], timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if pred():
            return True
        time.sleep(0.01)
    return pred()


def make_channel(prefix: str = "test:", *, prefix_name: bool = True):
    from sandchat.ports.im.adapters.base import ChannelAdapter

    class FakeChannel(ChannelAdapter):
        platform = "fake"
        prefix_assistant_name = prefix_name

        def __init__(self) -> None:
            self.prefix = prefix
            self.sent: List[tuple] = []
            self.inbound: List[Dict[str, Any]] = []
            self.typing: List[tuple] = []

        def connect(self) -> bool:
            return True

        def disconnect(self) -> None:
            pass

        def poll(self) -> List[Dict[str, Any]]:
            items, self.inbound = self.inbound, []
            return items

        def send_text(self, chat_id: str, text: str) -> bool:
            self.sent.append((chat_id, text))
            return True

        def set_typing(self, jid: str, on: bool) -> bool:
            self.typing.append((jid, on))
            return True

    return FakeChannel()


def make_context(channels=None, timers=None, **overrides):
    """Build an AppContext over the current SANDCHAT_HOME."""
    from sandchat.daemon.context import AppContext
    from sandchat.daemon.queue import ProcessQueue
    from sandchat.kernel.cursors import Cursors
    from sandchat.kernel.ledger import MessageStore
    from sandchat.kernel.registry import load_registry
    from sandchat.kernel.sessions import SessionStore
    from sandchat.kernel.settings import Settings
    from sandchat.kernel.tasks import TaskStore

    settings = Settings.model_validate({"assistant_name": "Andy", **overrides})
    queue = ProcessQueue(
        max_concurrent=settings.max_concurrent_sandboxes,
        idle_timeout=settings.idle_timeout_seconds,
        max_retries=settings.max_retries,
        retry_base=settings.retry_base_seconds,
        timer_factory=timers or TimerRecorder(),
    )
    return AppContext(
        settings=settings,
        registry=load_registry(),
        messages=MessageStore(),
        cursors=Cursors(),
        sessions=SessionStore(),
        tasks=TaskStore(),
        queue=queue,
        channels=list(channels if channels is not None else [make_channel()]),
    )


def register(ctx, jid: str, folder: str, *, requires_trigger: bool = True):
    from sandchat.contracts.v1 import Conversation

    return ctx.registry.register(Conversation(jid=jid, name=folder, folder=folder, requires_trigger=requires_trigger))
