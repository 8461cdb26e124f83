from __future__ import annotations

from typing import Any, Optional

_TRUE = {"1", "true", "yes", "y", "on"}
_FALSE = {"0", "false", "no", "n", "off"}


def coerce_bool(value: Any, *, default: bool = False) -> bool:
    """Coerce env/YAML strings like "false" or "0" into a boolean.

    Unknown strings fall back to `default` (bool("false") would be True).
    """
    if value is None:
        return bool(default)
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    s = str(value).strip().lower()
    if s in _TRUE:
        return True
    if s in _FALSE:
        return False
    return bool(default)


def coerce_float(value: Any, *, default: float, minimum: Optional[float] = None) -> float:
    try:
        out = float(value)
    except (TypeError, ValueError):
        return float(default)
    if out != out:  # NaN
        return float(default)
    if minimum is not None and out < minimum:
        return float(minimum)
    return out


def coerce_int(value: Any, *, default: int, minimum: Optional[int] = None) -> int:
    try:
        out = int(value)
    except (TypeError, ValueError):
        return int(default)
    if minimum is not None and out < minimum:
        return int(minimum)
    return out
