from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from ..contracts.v1 import Conversation
from ..paths import conversation_workdir, ensure_home
from ..util.fs import atomic_write_json, read_json
from ..util.time import utc_now_iso
from .state import StoreError

logger = logging.getLogger("sandchat.registry")


@dataclass
class Registry:
    """Registered conversations, persisted as registry.json."""
    path: Path
    doc: Dict[str, Any]
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)
    _conversations: Dict[str, Conversation] = field(default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        raw = self.doc.get("conversations")
        for jid, item in (raw.items() if isinstance(raw, dict) else []):
            try:
                self._conversations[str(jid)] = Conversation.model_validate(item)
            except ValidationError as e:
                logger.warning(f"skipping invalid registration {jid}: {e.errors(include_url=False)[:1]}")

    def get(self, jid: str) -> Optional[Conversation]:
        with self._lock:
            return self._conversations.get(jid)

    def jids(self) -> List[str]:
        with self._lock:
            return list(self._conversations.keys())

    def all(self) -> Dict[str, Conversation]:
        with self._lock:
            return dict(self._conversations)

    def by_folder(self, folder: str) -> List[Conversation]:
        with self._lock:
            return [c for c in self._conversations.values() if c.folder == folder]

    def save(self) -> None:
        with self._lock:
            self.doc["v"] = 1
            self.doc["updated_at"] = utc_now_iso()
            self.doc["conversations"] = {jid: c.model_dump() for jid, c in self._conversations.items()}
            try:
                atomic_write_json(self.path, self.doc)
            except OSError as e:
                raise StoreError(f"failed to write {self.path}: {e}") from e

    def register(self, conversation: Conversation) -> Conversation:
        workdir = conversation_workdir(conversation.folder)
        (workdir / "logs").mkdir(parents=True, exist_ok=True)
        with self._lock:
            self._conversations[conversation.jid] = conversation
            self.save()
        logger.info(
            f"registered {conversation.jid} -> {conversation.folder}",
            extra={"conversation": conversation.jid, "folder": conversation.folder},
        )
        return conversation

    def unregister(self, jid: str) -> bool:
        with self._lock:
            if self._conversations.pop(jid, None) is None:
                return False
            self.save()
        logger.info(f"unregistered {jid}", extra={"conversation": jid})
        return True


def load_registry() -> Registry:
    home = ensure_home()
    path = home / "registry.json"
    doc = read_json(path)
    if not doc:
        doc = {"v": 1, "created_at": utc_now_iso(), "updated_at": utc_now_iso(), "conversations": {}}
        atomic_write_json(path, doc)
    return Registry(path=path, doc=doc)
