from __future__ import annotations

import logging
import os
import signal
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from ..kernel.settings import load_settings
from ..paths import ensure_home
from ..util.file_lock import LockUnavailableError, acquire_lockfile, release_lockfile
from ..util.obslog import setup_root_json_logging
from .app import App, build_channels, build_context

logger = logging.getLogger("sandchat.server")


@dataclass
class DaemonPaths:
    home: Path

    @property
    def daemon_dir(self) -> Path:
        return self.home / "daemon"

    @property
    def lock_path(self) -> Path:
        return self.daemon_dir / "sandchatd.lock"

    @property
    def pid_path(self) -> Path:
        return self.daemon_dir / "sandchatd.pid"

    @property
    def log_path(self) -> Path:
        return self.daemon_dir / "sandchatd.log"


def default_paths() -> DaemonPaths:
    return DaemonPaths(home=ensure_home())


def read_pid(paths: Optional[DaemonPaths] = None) -> int:
    p = paths or default_paths()
    try:
        txt = p.pid_path.read_text(encoding="utf-8").strip()
        return int(txt) if txt.isdigit() else 0
    except Exception:
        return 0


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True


def serve_forever(paths: Optional[DaemonPaths] = None) -> int:
    """Run the daemon in the foreground until SIGTERM/SIGINT. Returns an exit code."""
    p = paths or default_paths()
    p.daemon_dir.mkdir(parents=True, exist_ok=True)
    settings = load_settings()
    setup_root_json_logging(component="sandchatd", level=settings.log_level)

    try:
        lock = acquire_lockfile(p.lock_path, blocking=False)
    except LockUnavailableError:
        logger.error(f"another sandchatd is already running (pid={read_pid(p)})")
        return 1

    stop_event = threading.Event()

    def _signal_handler(signum: int, frame: Any) -> None:
        stop_event.set()

    signal.signal(signal.SIGTERM, _signal_handler)
    signal.signal(signal.SIGINT, _signal_handler)

    app: Optional[App] = None
    try:
        p.pid_path.write_text(str(os.getpid()), encoding="utf-8")
        ctx = build_context(settings, build_channels(settings))
        app = App(ctx)
        app.start()
        while not stop_event.wait(1.0):
            pass
    finally:
        if app is not None:
            app.shutdown()
        try:
            if p.pid_path.exists():
                p.pid_path.unlink()
        except Exception:
            pass
        release_lockfile(lock)
    logger.info("sandchatd stopped")
    return 0
