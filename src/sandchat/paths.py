from __future__ import annotations

import os
from pathlib import Path


def sandchat_home() -> Path:
    env = os.environ.get("SANDCHAT_HOME", "").strip()
    if env:
        return Path(env).expanduser().resolve()
    return (Path.home() / ".sandchat").resolve()


def ensure_home() -> Path:
    home = sandchat_home()
    home.mkdir(parents=True, exist_ok=True)
    return home


def state_dir() -> Path:
    p = ensure_home() / "state"
    p.mkdir(parents=True, exist_ok=True)
    return p


def groups_dir() -> Path:
    return ensure_home() / "groups"


def conversation_workdir(folder: str) -> Path:
    return groups_dir() / folder


def ipc_dir(folder: str) -> Path:
    return ensure_home() / "ipc" / folder
