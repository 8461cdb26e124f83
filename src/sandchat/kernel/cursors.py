"""The two message watermarks.

- global-seen (`last_timestamp`): newest message the dispatch loop observed.
- agent-delivered (`last_agent_timestamp[jid]`): newest message handed to
  that conversation's agent.

Timestamps are fixed-width UTC ISO strings, so string order is time order.
Every mutation is written through before returning; a failed write is
reverted in memory and surfaces as StoreError.
"""
from __future__ import annotations

import json
import logging
import threading
from typing import Dict, Optional

from .state import RouterState, StoreError

logger = logging.getLogger("sandchat.cursors")

GLOBAL_KEY = "last_timestamp"
AGENT_KEY = "last_agent_timestamp"


class Cursors:
    def __init__(self, state: Optional[RouterState] = None) -> None:
        self._state = state or RouterState()
        self._lock = threading.Lock()
        self._global_seen = self._state.get(GLOBAL_KEY) or ""
        self._agent: Dict[str, str] = {}
        try:
            raw = self._state.get_json(AGENT_KEY, {})
            if isinstance(raw, dict):
                self._agent = {str(k): str(v) for k, v in raw.items() if isinstance(v, str)}
        except (json.JSONDecodeError, TypeError):
            logger.warning("corrupted last_agent_timestamp in router state, resetting")
            self._agent = {}

    @property
    def global_seen(self) -> str:
        with self._lock:
            return self._global_seen

    def agent_delivered(self, jid: str) -> str:
        with self._lock:
            return self._agent.get(jid, "")

    def snapshot(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._agent)

    def set_global_seen(self, ts: str) -> None:
        with self._lock:
            if ts <= self._global_seen:
                return
            self._state.set(GLOBAL_KEY, ts)
            self._global_seen = ts

    def _write_agent(self, jid: str, ts: str) -> None:
        # Caller holds self._lock.
        prev = self._agent.get(jid)
        self._agent[jid] = ts
        try:
            self._state.set_json(AGENT_KEY, self._agent)
        except StoreError:
            if prev is None:
                self._agent.pop(jid, None)
            else:
                self._agent[jid] = prev
            raise

    def advance_agent(self, jid: str, ts: str) -> str:
        """Move the agent-delivered watermark forward to `ts`.

        Returns the previous value (the rollback point). Never moves backwards.
        """
        with self._lock:
            prev = self._agent.get(jid, "")
            if ts > prev:
                self._write_agent(jid, ts)
            return prev

    def rollback_agent(self, jid: str, ts: str) -> None:
        """Restore a watermark captured by advance_agent (compensating action)."""
        with self._lock:
            self._write_agent(jid, ts)
