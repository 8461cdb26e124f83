from __future__ import annotations

import fcntl
import os
from pathlib import Path
from typing import IO


class LockUnavailableError(RuntimeError):
    """Raised when another daemon already holds the lock."""


def acquire_lockfile(path: Path, *, blocking: bool = False) -> IO[bytes]:
    """Open + lock a lockfile and write our pid into it.

    Keep the returned handle open to hold the lock.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    f = path.open("r+b") if path.exists() else path.open("w+b")
    flags = fcntl.LOCK_EX
    if not blocking:
        flags |= fcntl.LOCK_NB
    try:
        fcntl.flock(f.fileno(), flags)
    except OSError as e:
        try:
            f.close()
        except Exception:
            pass
        if not blocking:
            raise LockUnavailableError(f"lock held: {path}") from e
        raise
    try:
        f.seek(0)
        f.truncate()
        f.write(str(os.getpid()).encode("ascii"))
        f.flush()
    except OSError:
        pass
    return f


def release_lockfile(f: IO[bytes]) -> None:
    """Release a lockfile acquired via acquire_lockfile (best-effort)."""
    try:
        fcntl.flock(f.fileno(), fcntl.LOCK_UN)
    except Exception:
        pass
    try:
        f.close()
    except Exception:
        pass
