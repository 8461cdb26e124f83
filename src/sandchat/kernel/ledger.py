"""Inbound message store.

Messages are appended to <home>/messages.jsonl and indexed in memory by
chat. Lines appended by other processes (e.g. `sandchat inject`) are
picked up on the next query. Chat metadata (names, last activity) lives
in chats.json.
"""
from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple

from pydantic import ValidationError

from ..contracts.v1 import ChatInfo, InboundMessage
from ..paths import ensure_home
from ..util.fs import append_jsonl, atomic_write_json, read_json
from ..util.time import monotonic_stamp, observe_stamp
from .state import StoreError

logger = logging.getLogger("sandchat.ledger")


class MessageStore:
    def __init__(self, home: Optional[Path] = None) -> None:
        home = home or ensure_home()
        self.path = home / "messages.jsonl"
        self.chats_path = home / "chats.json"
        self._lock = threading.Lock()
        self._by_chat: Dict[str, List[InboundMessage]] = {}
        self._ids: Set[str] = set()
        self._offset = 0
        self._refresh_locked()
        doc = read_json(self.chats_path)
        self._chats: Dict[str, ChatInfo] = {}
        for jid, item in doc.items():
            if isinstance(item, dict):
                self._chats[jid] = ChatInfo.model_validate({**item, "jid": jid})

    def _index_locked(self, msg: InboundMessage) -> None:
        if msg.id in self._ids:
            return
        self._ids.add(msg.id)
        rows = self._by_chat.setdefault(msg.chat_jid, [])
        rows.append(msg)
        if len(rows) > 1 and rows[-2].timestamp > msg.timestamp:
            rows.sort(key=lambda m: m.timestamp)

    def _refresh_locked(self) -> None:
        try:
            size = self.path.stat().st_size
        except FileNotFoundError:
            return
        if size <= self._offset:
            return
        newest = ""
        with self.path.open("rb") as f:
            f.seek(self._offset)
            data = f.read(size - self._offset)
        # Only consume complete lines; a concurrent writer may be mid-line.
        end = data.rfind(b"\n")
        if end < 0:
            return
        self._offset += end + 1
        for raw in data[: end + 1].splitlines():
            line = raw.strip()
            if not line:
                continue
            try:
                msg = InboundMessage.model_validate_json(line)
            except ValidationError:
                logger.warning(f"skipping unreadable line in {self.path.name}")
                continue
            self._index_locked(msg)
            if msg.timestamp > newest:
                newest = msg.timestamp
        if newest:
            observe_stamp(newest)

    def store_message(
        self,
        chat_jid: str,
        content: str,
        *,
        sender: str = "",
        sender_name: str = "",
        is_from_assistant: bool = False,
        message_id: Optional[str] = None,
    ) -> InboundMessage:
        """Append a message, stamping it with the receipt time."""
        with self._lock:
            self._refresh_locked()
            fields = {
                "chat_jid": chat_jid,
                "sender": sender,
                "sender_name": sender_name or sender,
                "content": content,
                "timestamp": monotonic_stamp(),
                "is_from_assistant": is_from_assistant,
            }
            if message_id:
                fields["id"] = message_id
            msg = InboundMessage.model_validate(fields)
            try:
                append_jsonl(self.path, msg.model_dump())
            except OSError as e:
                raise StoreError(f"failed to append {self.path}: {e}") from e
            self._index_locked(msg)
        return msg

    def messages_since(self, chat_jid: str, since_ts: str) -> List[InboundMessage]:
        """User-authored messages with timestamp > since_ts, oldest first."""
        with self._lock:
            self._refresh_locked()
            rows = list(self._by_chat.get(chat_jid, ()))
        return [m for m in rows if m.timestamp > since_ts and not m.is_from_assistant]

    def new_messages(self, chat_jids: Iterable[str], since_ts: str) -> Tuple[List[InboundMessage], str]:
        """User messages newer than since_ts across `chat_jids`, plus the newest timestamp seen."""
        out: List[InboundMessage] = []
        for jid in chat_jids:
            out.extend(self.messages_since(jid, since_ts))
        out.sort(key=lambda m: m.timestamp)
        newest = out[-1].timestamp if out else since_ts
        return out, newest

    def latest_timestamp(self, chat_jid: str) -> str:
        with self._lock:
            self._refresh_locked()
            rows = self._by_chat.get(chat_jid) or []
            return rows[-1].timestamp if rows else ""

    def store_chat_metadata(self, chat_jid: str, name: str = "", *, touch: bool = True) -> None:
        with self._lock:
            prev = self._chats.get(chat_jid)
            info = ChatInfo(
                jid=chat_jid,
                name=name or (prev.name if prev else "") or chat_jid,
                last_message_time=monotonic_stamp() if touch or prev is None else prev.last_message_time,
            )
            self._chats[chat_jid] = info
            doc = {jid: c.model_dump(exclude={"jid"}) for jid, c in self._chats.items()}
            try:
                atomic_write_json(self.chats_path, doc)
            except OSError as e:
                raise StoreError(f"failed to write {self.chats_path}: {e}") from e

    def list_chats(self) -> List[ChatInfo]:
        with self._lock:
            chats = list(self._chats.values())
        chats.sort(key=lambda c: c.last_message_time, reverse=True)
        return chats
