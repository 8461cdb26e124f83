"""
Chat commands handled by the bridge before a message is stored:

- /stop     interrupt the running sandbox
- /restart  kill the sandbox; the next message starts a fresh one
- /chatid   reply with this chat's conversation identity
- /ping     liveness check
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import List

# Supports "@BotName /command" and "/command@BotName" (Telegram groups).
_CMD_RE = re.compile(r"^(?:@\S+\s+)?/(\w+)(?:@\S+)?(?:\s+(.*))?$", re.IGNORECASE | re.DOTALL)


class CommandType(str, Enum):
    STOP = "stop"
    RESTART = "restart"
    CHATID = "chatid"
    PING = "ping"

    # Slash-prefixed but not ours: dropped, never stored.
    UNKNOWN = "unknown"

    # Not a command - regular message
    MESSAGE = "message"


@dataclass
class ParsedCommand:
    type: CommandType
    text: str
    args: List[str]


def parse_message(text: str) -> ParsedCommand:
    """
    Examples:
        "/stop" -> CommandType.STOP
        "/ping@MyBot" -> CommandType.PING
        "/weather" -> CommandType.UNKNOWN
        "hello world" -> CommandType.MESSAGE
    """
    text = (text or "").strip()
    m = _CMD_RE.match(text)
    if not m:
        return ParsedCommand(type=CommandType.MESSAGE, text=text, args=[])
    name = m.group(1).lower()
    rest = (m.group(2) or "").strip()
    try:
        ctype = CommandType(name)
    except ValueError:
        ctype = CommandType.UNKNOWN
    if ctype == CommandType.MESSAGE:
        ctype = CommandType.UNKNOWN
    return ParsedCommand(type=ctype, text=rest, args=rest.split() if rest else [])
