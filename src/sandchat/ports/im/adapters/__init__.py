from __future__ import annotations

from .base import ChannelAdapter

__all__ = ["ChannelAdapter"]
