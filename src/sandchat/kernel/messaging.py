"""Prompt and outbound text formatting, plus channel routing."""
from __future__ import annotations

import re
from typing import Iterable, Optional, Sequence

from ..contracts.v1 import InboundMessage

_INTERNAL_RE = re.compile(r"<internal>.*?</internal>", re.DOTALL)


def escape_xml(s: str) -> str:
    if not s:
        return ""
    return s.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;").replace('"', "&quot;")


def format_messages(messages: Sequence[InboundMessage]) -> str:
    """Render pending messages as the prompt for one turn."""
    lines = [
        f'<message sender="{escape_xml(m.sender_name)}" time="{m.timestamp}">{escape_xml(m.content)}</message>'
        for m in messages
    ]
    return "<messages>\n" + "\n".join(lines) + "\n</messages>"


def strip_internal_tags(text: str) -> str:
    return _INTERNAL_RE.sub("", text or "").strip()


def format_outbound(text: str, *, assistant_name: str, prefix_name: bool = True) -> str:
    """Agent output as shown to users ("" means: send nothing)."""
    body = strip_internal_tags(text)
    if not body:
        return ""
    return f"{assistant_name}: {body}" if prefix_name else body


def matches_trigger(messages: Iterable[InboundMessage], pattern: "re.Pattern[str]") -> bool:
    return any(pattern.search(m.content.strip()) for m in messages)


def find_channel(channels: Iterable, jid: str) -> Optional[object]:
    for ch in channels:
        if ch.owns_identity(jid):
            return ch
    return None


def route_outbound(channels: Iterable, jid: str, text: str, *, assistant_name: str) -> bool:
    """Format and send agent text to whichever channel owns `jid`.

    Returns True only when something was actually delivered.
    """
    ch = find_channel(channels, jid)
    if ch is None:
        return False
    out = format_outbound(text, assistant_name=assistant_name, prefix_name=getattr(ch, "prefix_assistant_name", True))
    if not out:
        return False
    return bool(ch.send_message(jid, out))
