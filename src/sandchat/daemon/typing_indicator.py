from __future__ import annotations

import logging
import threading
from typing import Callable, Dict

logger = logging.getLogger("sandchat.typing")


class TypingManager:
    """Keeps a channel's "typing..." indicator alive while a turn runs.

    Platforms expire the indicator after a few seconds, so it is re-sent
    every `interval` seconds until stop().
    """

    def __init__(self, send: Callable[[str, bool], None], *, interval: float = 4.0) -> None:
        self._send = send
        self._interval = float(interval)
        self._lock = threading.Lock()
        self._active: Dict[str, threading.Event] = {}

    def is_active(self, jid: str) -> bool:
        with self._lock:
            return jid in self._active

    def _safe_send(self, jid: str, on: bool) -> None:
        try:
            self._send(jid, on)
        except Exception as e:
            logger.debug(f"typing update failed for {jid}: {e}", extra={"conversation": jid})

    def start(self, jid: str) -> None:
        with self._lock:
            if jid in self._active:
                return
            stop = threading.Event()
            self._active[jid] = stop

        def _loop() -> None:
            while not stop.is_set():
                self._safe_send(jid, True)
                if stop.wait(self._interval):
                    break

        threading.Thread(target=_loop, name=f"sandchat-typing:{jid}", daemon=True).start()

    def stop(self, jid: str) -> None:
        with self._lock:
            stop = self._active.pop(jid, None)
        if stop is None:
            return
        stop.set()
        self._safe_send(jid, False)

    def stop_all(self) -> None:
        with self._lock:
            jids = list(self._active.keys())
        for jid in jids:
            self.stop(jid)
