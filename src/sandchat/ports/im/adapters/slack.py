"""
Slack adapter.

- Bot token (xoxb-): Web API for sending messages
- App token (xapp-): Socket Mode for receiving messages

Without an app token the adapter can send but not receive.
"""

from __future__ import annotations

import logging
import re
import threading
from typing import Any, Dict, List, Optional

from .base import ChannelAdapter

logger = logging.getLogger("sandchat.im.slack")

SLACK_MAX_MESSAGE_LENGTH = 4000


class SlackAdapter(ChannelAdapter):
    """
    Slack adapter using Socket Mode for inbound and Web API for outbound.
    """

    platform = "slack"
    prefix = "slack:"
    max_message_length = SLACK_MAX_MESSAGE_LENGTH

    def __init__(self, bot_token: str, app_token: Optional[str] = None):
        self.bot_token = bot_token
        self.app_token = app_token
        self._connected = False
        self._bot_user_id = ""
        self._web_client: Any = None
        self._socket_client: Any = None
        self._message_queue: List[Dict[str, Any]] = []
        self._queue_lock = threading.Lock()
        self._names: Dict[str, str] = {}

    def connect(self) -> bool:
        from slack_sdk import WebClient

        self._web_client = WebClient(token=self.bot_token)
        try:
            auth = self._web_client.auth_test()
            self._bot_user_id = str(auth.get("user_id", "") or "")
            logger.info(f"connected as @{auth.get('user', 'unknown')}", extra={"platform": self.platform})
        except Exception as e:
            logger.error(f"auth_test failed: {e}", extra={"platform": self.platform})
            return False

        if self.app_token:
            from slack_sdk.socket_mode import SocketModeClient

            self._socket_client = SocketModeClient(app_token=self.app_token, web_client=self._web_client)
            self._socket_client.socket_mode_request_listeners.append(self._handle_socket_event)
            try:
                self._socket_client.connect()
            except Exception as e:
                logger.warning(f"socket mode connection failed, inbound disabled: {e}", extra={"platform": self.platform})
        else:
            logger.info("no app token, send-only mode", extra={"platform": self.platform})

        self._connected = True
        return True

    def _user_name(self, user_id: str) -> str:
        if user_id in self._names:
            return self._names[user_id]
        name = user_id
        try:
            info = self._web_client.users_info(user=user_id).get("user", {})
            name = info.get("real_name") or info.get("name") or user_id
        except Exception:
            pass
        self._names[user_id] = name
        return name

    def _handle_socket_event(self, client: Any, req: Any) -> None:
        from slack_sdk.socket_mode.response import SocketModeResponse

        client.send_socket_mode_response(SocketModeResponse(envelope_id=req.envelope_id))
        if req.type != "events_api":
            return
        event = req.payload.get("event", {})
        if event.get("type") != "message":
            return
        subtype = event.get("subtype", "")
        if subtype and subtype != "file_share":
            return
        user = str(event.get("user", "") or "")
        if not user or user == self._bot_user_id or event.get("bot_id"):
            return
        text = str(event.get("text", "") or "")
        channel = str(event.get("channel", "") or "")
        if subtype == "file_share":
            names = ", ".join(f.get("name", "file") for f in event.get("files") or [])
            text = f"[File: {names}] {text}".strip()
        if not text or not channel:
            return

        mentions_bot = False
        if self._bot_user_id:
            mention = f"<@{self._bot_user_id}>"
            mentions_bot = mention in text
            text = re.sub(rf"\s*{re.escape(mention)}\s*", " ", text).strip()

        with self._queue_lock:
            self._message_queue.append({
                "chat_id": channel,
                "chat_title": channel,
                "text": text,
                "from_user": self._user_name(user),
                "from_user_id": user,
                "message_id": str(event.get("ts", "")),
                "mentions_bot": mentions_bot or event.get("channel_type") == "im",
            })

    def disconnect(self) -> None:
        if self._socket_client:
            try:
                self._socket_client.disconnect()
            except Exception:
                pass
        self._connected = False

    def poll(self) -> List[Dict[str, Any]]:
        if not self._connected:
            return []
        with self._queue_lock:
            messages = list(self._message_queue)
            self._message_queue.clear()
        return messages

    def send_text(self, chat_id: str, text: str) -> bool:
        if not self._connected or not self._web_client:
            return False
        try:
            self._web_client.chat_postMessage(channel=str(chat_id), text=text)
            return True
        except Exception as e:
            logger.error(f"send to {chat_id} failed: {e}", extra={"platform": self.platform})
            return False

    def get_chat_title(self, chat_id: str) -> str:
        if not self._web_client:
            return ""
        try:
            resp = self._web_client.conversations_info(channel=str(chat_id))
            return str(resp.get("channel", {}).get("name", "") or "")
        except Exception:
            return ""
