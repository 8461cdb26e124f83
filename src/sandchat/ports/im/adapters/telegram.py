"""
Telegram Bot API adapter.

- _api(): JSON POST wrapper with timeout and error capture
- poll(): long-poll getUpdates
- per-chat rate limiting on send
"""

from __future__ import annotations

import json
import logging
import threading
import time
import urllib.error
import urllib.request
from typing import Any, Dict, List, Optional

from .base import ChannelAdapter

logger = logging.getLogger("sandchat.im.telegram")

TELEGRAM_MAX_MESSAGE_LENGTH = 4096

# Non-text message kinds rendered as "[Label]" placeholders.
_PLACEHOLDERS = (
    ("photo", "Photo"),
    ("video", "Video"),
    ("voice", "Voice message"),
    ("audio", "Audio"),
    ("sticker", "Sticker"),
    ("location", "Location"),
    ("contact", "Contact"),
)


class RateLimiter:
    """
    Telegram allows roughly 1 msg/sec to the same chat.
    """

    def __init__(self, max_per_second: float = 1.0):
        self.min_interval = 1.0 / max_per_second
        self.last_send: Dict[str, float] = {}
        self.lock = threading.Lock()

    def acquire(self, chat_id: str) -> float:
        """Returns the wait time in seconds (0 if the slot was taken)."""
        with self.lock:
            now = time.time()
            elapsed = now - self.last_send.get(chat_id, 0)
            if elapsed >= self.min_interval:
                self.last_send[chat_id] = now
                return 0.0
            return self.min_interval - elapsed

    def wait_and_acquire(self, chat_id: str) -> None:
        wait_time = self.acquire(chat_id)
        if wait_time > 0:
            time.sleep(wait_time)
            self.acquire(chat_id)


def render_message_text(msg: Dict[str, Any]) -> str:
    """Text of a Telegram message, with placeholders for non-text content."""
    text = msg.get("text")
    if text:
        return str(text)
    caption = str(msg.get("caption") or "")
    label = ""
    if isinstance(msg.get("document"), dict):
        label = f"Document: {msg['document'].get('file_name') or 'file'}"
    else:
        for key, name in _PLACEHOLDERS:
            if msg.get(key):
                label = name
                break
    if not label:
        return caption
    return f"[{label}] {caption}".strip() if caption else f"[{label}]"


class TelegramAdapter(ChannelAdapter):
    """
    Telegram Bot API adapter using long-poll getUpdates.
    """

    platform = "telegram"
    prefix = "tg:"
    max_message_length = TELEGRAM_MAX_MESSAGE_LENGTH
    prefix_assistant_name = False

    def __init__(self, token: str, *, poll_timeout: int = 25):
        self.token = token
        self.poll_timeout = int(poll_timeout)
        self._offset = 0
        self._rate_limiter = RateLimiter(max_per_second=1.0)
        self._connected = False
        self._bot_username = ""
        self._bot_id = 0

    def _api(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: int = 35,
    ) -> Dict[str, Any]:
        url = f"https://api.telegram.org/bot{self.token}/{method}"
        data = json.dumps(params or {}, ensure_ascii=False).encode("utf-8")

        req = urllib.request.Request(url, data=data, method="POST")
        req.add_header("Content-Type", "application/json; charset=utf-8")
        req.add_header("Accept", "application/json")

        try:
            with urllib.request.urlopen(req, timeout=timeout) as resp:
                return json.loads(resp.read().decode("utf-8", errors="replace"))
        except urllib.error.HTTPError as e:
            err_text = ""
            try:
                err_text = e.read().decode("utf-8", "ignore")[:300]
            except Exception:
                pass
            logger.warning(f"api {method}: HTTP {e.code} - {err_text}", extra={"platform": self.platform})
            return {"ok": False, "error": str(e), "http_status": e.code}
        except Exception as e:
            logger.warning(f"api {method}: {e}", extra={"platform": self.platform})
            return {"ok": False, "error": str(e)}

    @property
    def bot_username(self) -> str:
        return self._bot_username

    def connect(self) -> bool:
        resp = self._api("getMe", timeout=10)
        if not resp.get("ok"):
            logger.error(f"connect failed: {resp.get('error', 'unknown error')}", extra={"platform": self.platform})
            return False
        info = resp.get("result") or {}
        self._bot_username = str(info.get("username") or "").strip()
        self._bot_id = int(info.get("id") or 0)
        self._connected = True
        logger.info(f"connected as @{self._bot_username}", extra={"platform": self.platform})
        return True

    def disconnect(self) -> None:
        self._connected = False

    def poll(self) -> List[Dict[str, Any]]:
        if not self._connected:
            return []

        resp = self._api(
            "getUpdates",
            {"offset": self._offset, "timeout": self.poll_timeout, "allowed_updates": ["message"]},
            timeout=self.poll_timeout + 10,
        )
        out: List[Dict[str, Any]] = []
        if not (resp.get("ok") and isinstance(resp.get("result"), list)):
            return out
        for update in resp["result"]:
            try:
                update_id = int(update.get("update_id", 0))
                self._offset = max(self._offset, update_id + 1)
                msg = update.get("message")
                if not isinstance(msg, dict):
                    continue
                text = render_message_text(msg)
                if not text:
                    continue
                chat = msg.get("chat") or {}
                chat_id = str(chat.get("id", 0))
                chat_type = str(chat.get("type") or "")
                chat_title = chat.get("title") or (
                    chat.get("first_name") if chat_type == "private" else None
                ) or chat_id
                sender = msg.get("from") or {}
                mentions_bot = False
                if self._bot_username:
                    for ent in msg.get("entities") or []:
                        if ent.get("type") != "mention":
                            continue
                        off, ln = int(ent.get("offset", 0)), int(ent.get("length", 0))
                        if text[off:off + ln].lower() == f"@{self._bot_username.lower()}":
                            mentions_bot = True
                out.append({
                    "chat_id": chat_id,
                    "chat_title": str(chat_title),
                    "chat_type": chat_type,
                    "text": text,
                    "from_user": sender.get("first_name") or sender.get("username") or str(sender.get("id") or "user"),
                    "from_user_id": str(sender.get("id") or ""),
                    "from_bot": bool(sender.get("is_bot")),
                    "message_id": str(msg.get("message_id", "")),
                    "mentions_bot": mentions_bot,
                })
            except Exception as e:
                logger.warning(f"error parsing update: {e}", extra={"platform": self.platform})
        return out

    def send_text(self, chat_id: str, text: str) -> bool:
        self._rate_limiter.wait_and_acquire(str(chat_id))
        params = {"chat_id": chat_id, "text": text, "disable_web_page_preview": True}
        for attempt in range(2):
            resp = self._api("sendMessage", params, timeout=15)
            if resp.get("ok"):
                return True
            if attempt == 0:
                time.sleep(1.0)
        logger.error(f"send to {chat_id} failed: {resp.get('error', 'unknown')}", extra={"platform": self.platform})
        return False

    def set_typing(self, jid: str, on: bool) -> bool:
        # Telegram has no "stop typing"; the indicator simply expires.
        if not on or not self._connected:
            return True
        resp = self._api("sendChatAction", {"chat_id": self.chat_id_of(jid), "action": "typing"}, timeout=10)
        return bool(resp.get("ok"))

    def get_chat_title(self, chat_id: str) -> str:
        resp = self._api("getChat", {"chat_id": chat_id}, timeout=10)
        if not resp.get("ok"):
            return ""
        chat = resp.get("result") or {}
        return str(chat.get("title") or chat.get("first_name") or "")
