from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Optional


_STAMP_LOCK = threading.Lock()
_LAST_STAMP: Optional[datetime] = None


def format_utc_iso(dt: datetime) -> str:
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def utc_now_iso() -> str:
    return format_utc_iso(datetime.now(timezone.utc))


def parse_utc_iso(ts: str) -> Optional[datetime]:
    s = (ts or "").strip()
    if not s:
        return None
    try:
        if s.endswith("Z"):
            s = s[: -len("Z")] + "+00:00"
        dt = datetime.fromisoformat(s)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    except Exception:
        return None


def monotonic_stamp() -> str:
    """Return a receipt timestamp that is strictly greater than any previous one.

    Used for message ordering, so platform clocks never matter. If the wall
    clock stalls or steps backwards the previous stamp is bumped by 1us.
    """
    global _LAST_STAMP
    now = datetime.now(timezone.utc)
    with _STAMP_LOCK:
        if _LAST_STAMP is not None and now <= _LAST_STAMP:
            now = _LAST_STAMP + timedelta(microseconds=1)
        _LAST_STAMP = now
    return format_utc_iso(now)


def observe_stamp(ts: str) -> None:
    """Make sure future stamps sort after `ts` (e.g. the newest stored row at startup)."""
    global _LAST_STAMP
    dt = parse_utc_iso(ts)
    if dt is None:
        return
    with _STAMP_LOCK:
        if _LAST_STAMP is None or dt > _LAST_STAMP:
            _LAST_STAMP = dt
