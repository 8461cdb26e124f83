from __future__ import annotations

import argparse
import os
import signal
import subprocess
import sys
import time
from pathlib import Path
from typing import Optional

from .daemon.server import DaemonPaths, default_paths, pid_alive, read_pid, serve_forever


def _spawn_daemon(paths: DaemonPaths) -> int:
    paths.daemon_dir.mkdir(parents=True, exist_ok=True)
    log_f = paths.log_path.open("a", encoding="utf-8")
    env = os.environ.copy()
    env["SANDCHAT_HOME"] = str(paths.home)
    p = subprocess.Popen(
        [sys.executable, "-m", "sandchat.daemon_main", "run"],
        stdout=log_f,
        stderr=log_f,
        stdin=subprocess.DEVNULL,
        env=env,
        start_new_session=True,
        cwd=str(Path.cwd()),
    )
    return int(p.pid)


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="sandchatd", description="sandchat dispatch daemon")
    sub = parser.add_subparsers(dest="cmd", required=True)

    sub.add_parser("run", help="Run daemon in foreground")
    sub.add_parser("start", help="Start daemon in background")
    p_stop = sub.add_parser("stop", help="Stop daemon")
    p_stop.add_argument("--wait", type=float, default=15.0, help="Seconds to wait for exit (default: 15)")
    sub.add_parser("status", help="Daemon status")

    args = parser.parse_args(argv)
    paths = default_paths()

    if args.cmd == "run":
        return int(serve_forever(paths))

    pid = read_pid(paths)

    if args.cmd == "start":
        if pid_alive(pid):
            print(f"sandchatd: already running pid={pid}")
            return 0
        print(f"sandchatd: started pid={_spawn_daemon(paths)}")
        return 0

    if args.cmd == "stop":
        if not pid_alive(pid):
            print("sandchatd: not running")
            return 0
        os.kill(pid, signal.SIGTERM)
        deadline = time.monotonic() + max(0.0, args.wait)
        while time.monotonic() < deadline and pid_alive(pid):
            time.sleep(0.1)
        if pid_alive(pid):
            print(f"sandchatd: still running pid={pid}")
            return 1
        print("sandchatd: stopped")
        return 0

    if args.cmd == "status":
        if pid_alive(pid):
            print(f"sandchatd: running pid={pid}")
            return 0
        print("sandchatd: not running")
        return 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main())
