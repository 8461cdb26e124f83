"""Opaque key/value router state (JSON-encoded values) in state/router_state.json."""
from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any, Dict, Optional

from ..paths import state_dir
from ..util.fs import atomic_write_json, read_json


class StoreError(RuntimeError):
    """Persisting state to disk failed."""


class RouterState:
    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = path or (state_dir() / "router_state.json")
        self._lock = threading.Lock()
        doc = read_json(self.path)
        self._values: Dict[str, str] = {str(k): str(v) for k, v in doc.items() if isinstance(v, str)}

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._values.get(key)

    def get_json(self, key: str, default: Any = None) -> Any:
        raw = self.get(key)
        if raw is None:
            return default
        return json.loads(raw)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            prev = self._values.get(key)
            self._values[key] = value
            try:
                atomic_write_json(self.path, self._values)
            except OSError as e:
                if prev is None:
                    self._values.pop(key, None)
                else:
                    self._values[key] = prev
                raise StoreError(f"failed to write {self.path}: {e}") from e

    def set_json(self, key: str, value: Any) -> None:
        self.set(key, json.dumps(value, ensure_ascii=False, sort_keys=True))
