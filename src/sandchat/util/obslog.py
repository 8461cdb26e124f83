"""JSONL logging for the daemon.

Every record becomes one JSON object. Correlation fields are attached with
`logger.info(..., extra={"conversation": jid})`; turn and sandbox threads
are named after their conversation, so `thread` ties records together even
without extras.
"""
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional, TextIO

from .time import format_utc_iso

CORRELATION_KEYS = ("trace_id", "op", "conversation", "folder", "platform", "task_id")

# Third-party loggers that are chatty at INFO (gateway heartbeats, socket pings).
NOISY_LOGGERS = ("discord", "slack_sdk", "slack_bolt", "websocket", "urllib3")

_configured_components: set = set()


class JsonlFormatter(logging.Formatter):
    def __init__(self, *, component: str) -> None:
        super().__init__()
        self.component = str(component or "").strip() or "sandchat"

    def _fields(self, record: logging.LogRecord) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "ts": format_utc_iso(datetime.fromtimestamp(record.created, tz=timezone.utc)),
            "level": record.levelname,
            "component": self.component,
            "logger": record.name,
            "thread": record.threadName,
            "msg": record.getMessage(),
        }
        for key in CORRELATION_KEYS:
            value = record.__dict__.get(key)
            if value is not None and str(value).strip():
                out[key] = str(value).strip()
        if record.exc_info:
            out["exc"] = self.formatException(record.exc_info)
        return out

    def format(self, record: logging.LogRecord) -> str:
        fields = self._fields(record)
        try:
            return json.dumps(fields, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            return json.dumps({"ts": fields["ts"], "level": fields["level"], "msg": repr(fields["msg"])})


def level_from_name(name: str, default: int = logging.INFO) -> int:
    value = logging.getLevelName(str(name or "").strip().upper())
    return value if isinstance(value, int) else default


def setup_root_json_logging(
    *,
    component: str,
    level: str = "INFO",
    stream: Optional[TextIO] = None,
    force: bool = False,
) -> logging.Handler:
    """Install a single JSONL stream handler on the root logger.

    Repeated calls for the same component only adjust the level unless
    `force` is set, which drops every existing root handler first.
    """
    root = logging.getLogger()
    lvl = level_from_name(level)
    root.setLevel(lvl)

    if force:
        for h in list(root.handlers):
            root.removeHandler(h)
        _configured_components.discard(component)
    elif component in _configured_components:
        for h in root.handlers:
            if isinstance(h.formatter, JsonlFormatter):
                h.setLevel(lvl)
                return h

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(lvl)
    handler.setFormatter(JsonlFormatter(component=component))
    root.addHandler(handler)
    _configured_components.add(component)

    if lvl > logging.DEBUG:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(max(lvl, logging.WARNING))
    return handler
