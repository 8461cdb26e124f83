from __future__ import annotations

import threading
from pathlib import Path
from typing import Dict, Optional

from ..paths import state_dir
from ..util.fs import atomic_write_json, read_json
from .state import StoreError


class SessionStore:
    """Continuation tokens keyed by conversation folder."""

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = path or (state_dir() / "sessions.json")
        self._lock = threading.Lock()
        doc = read_json(self.path)
        self._tokens: Dict[str, str] = {str(k): str(v) for k, v in doc.items() if isinstance(v, str) and v}

    def get(self, folder: str) -> Optional[str]:
        with self._lock:
            return self._tokens.get(folder)

    def all(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._tokens)

    def _save(self) -> None:
        try:
            atomic_write_json(self.path, self._tokens)
        except OSError as e:
            raise StoreError(f"failed to write {self.path}: {e}") from e

    def set(self, folder: str, token: str) -> None:
        with self._lock:
            if self._tokens.get(folder) == token:
                return
            prev = self._tokens.get(folder)
            self._tokens[folder] = token
            try:
                self._save()
            except StoreError:
                if prev is None:
                    self._tokens.pop(folder, None)
                else:
                    self._tokens[folder] = prev
                raise

    def clear(self, folder: str) -> None:
        with self._lock:
            if self._tokens.pop(folder, None) is not None:
                self._save()
