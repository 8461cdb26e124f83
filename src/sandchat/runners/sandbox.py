"""Sandbox invocation: spawn one agent process and stream its events.

Wire protocol (newline-delimited, UTF-8):

stdin   line 1 is the SandboxRequest JSON; each piped follow-up is
        {"type": "message", "text": ...}; EOF means "no more input".
stdout  each event is a JSON object on the lines between
        OUTPUT_START_MARKER and OUTPUT_END_MARKER. Anything else is
        treated as chatter and logged at DEBUG.

The process may outlive a `result`: further turns arrive via piped input
until the input is closed or the process is killed.
"""
from __future__ import annotations

import json
import logging
import os
import queue
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Callable, Dict, List, Literal, Optional

from ..contracts.v1 import (
    Conversation,
    ErrorEvent,
    ResultEvent,
    SandboxProtocolError,
    SandboxRequest,
    SessionEvent,
    decode_event,
)
from ..kernel.settings import Settings
from ..paths import conversation_workdir, ipc_dir

logger = logging.getLogger("sandchat.sandbox")

OUTPUT_START_MARKER = "---SANDCHAT_OUTPUT_START---"
OUTPUT_END_MARKER = "---SANDCHAT_OUTPUT_END---"

InvocationStatus = Literal["success", "error", "cancelled"]


class SandboxSpawnError(RuntimeError):
    """The sandbox process could not be started."""


def _best_effort_killpg(pid: int, sig: signal.Signals) -> None:
    if pid <= 0:
        return
    try:
        os.killpg(pid, sig)
    except Exception:
        try:
            os.kill(pid, sig)
        except Exception:
            pass


_CLOSE = object()


class SandboxProcess:
    """Handle on a live sandbox: non-blocking stdin writes and signals.

    Writes go through a queue drained by a writer thread, so callers never
    block on a slow or stuck sandbox.
    """

    def __init__(
        self,
        proc: subprocess.Popen,
        *,
        label: str,
        stop_command: Optional[List[str]] = None,
    ) -> None:
        self._proc = proc
        self.label = label
        self._stop_command = stop_command
        self._lock = threading.Lock()
        self._input_closed = False
        self._cancelled = False
        self._q: "queue.Queue[object]" = queue.Queue()
        self._writer = threading.Thread(target=self._write_loop, name=f"sandchat-stdin:{label}", daemon=True)
        self._writer.start()

    @property
    def pid(self) -> int:
        return int(getattr(self._proc, "pid", 0) or 0)

    @property
    def cancelled(self) -> bool:
        with self._lock:
            return self._cancelled

    @property
    def input_closed(self) -> bool:
        with self._lock:
            return self._input_closed

    def is_running(self) -> bool:
        return self._proc.poll() is None

    def _write_loop(self) -> None:
        stdin = self._proc.stdin
        if stdin is None:
            return
        while True:
            item = self._q.get()
            if item is _CLOSE:
                break
            try:
                stdin.write(str(item) + "\n")
                stdin.flush()
            except (BrokenPipeError, OSError, ValueError):
                with self._lock:
                    self._input_closed = True
                break
        try:
            stdin.close()
        except Exception:
            pass

    def _put_line(self, line: str) -> bool:
        with self._lock:
            if self._input_closed:
                return False
            self._q.put(line)
        return True

    def send_request(self, request: SandboxRequest) -> bool:
        return self._put_line(request.model_dump_json())

    def write_message(self, text: str) -> bool:
        """Queue a follow-up message. False if input is already closed or the process exited."""
        if not self.is_running():
            return False
        return self._put_line(json.dumps({"type": "message", "text": text}, ensure_ascii=False))

    def close_input(self) -> None:
        with self._lock:
            if self._input_closed:
                return
            self._input_closed = True
            self._q.put(_CLOSE)

    def interrupt(self) -> bool:
        if not self.is_running():
            return False
        with self._lock:
            self._cancelled = True
        _best_effort_killpg(self.pid, signal.SIGINT)
        return True

    def kill(self, *, timeout: float = 5.0) -> None:
        with self._lock:
            self._cancelled = True
        self.close_input()
        # For docker, SIGKILL reaches only the client; the stop command ends the container.
        _best_effort_killpg(self.pid, signal.SIGKILL)
        if self._stop_command:
            try:
                subprocess.run(self._stop_command, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, timeout=15)
            except Exception as e:
                logger.warning(f"stop command failed for {self.label}: {e}")
        try:
            self._proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.error(f"sandbox {self.label} (pid={self.pid}) survived SIGKILL")

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        try:
            return self._proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None


@dataclass
class InvocationOutcome:
    status: InvocationStatus
    spawned: bool = True
    error: str = ""
    new_session_id: Optional[str] = None
    exit_code: Optional[int] = None
    timed_out: bool = False
    results: int = 0


def _conversation_timeout(conversation: Conversation, settings: Settings) -> float:
    if conversation.sandbox and conversation.sandbox.timeout_seconds:
        return float(conversation.sandbox.timeout_seconds)
    return float(settings.sandbox.timeout_seconds)


def build_command(
    conversation: Conversation,
    settings: Settings,
    *,
    workdir: Path,
    ipc: Path,
) -> tuple[List[str], Dict[str, str], Optional[List[str]], str]:
    """Return (argv, env, stop_command, label) for the configured runtime."""
    sb = settings.sandbox
    env = os.environ.copy()
    env.update({k: str(v) for k, v in sb.env.items()})
    if sb.runtime == "local":
        if not sb.command:
            raise SandboxSpawnError("sandbox.command is empty for runtime=local")
        env["SANDCHAT_WORKDIR"] = str(workdir)
        env["SANDCHAT_IPC_DIR"] = str(ipc)
        label = f"{sb.name_prefix}{conversation.folder}-{int(time.time() * 1000)}"
        return list(sb.command), env, None, label

    name = f"{sb.name_prefix}{conversation.folder}-{int(time.time() * 1000)}"
    argv = ["docker", "run", "-i", "--rm", "--name", name]
    cfg = conversation.sandbox
    if cfg and cfg.memory:
        argv += ["--memory", cfg.memory]
    if cfg and cfg.cpus:
        argv += ["--cpus", str(cfg.cpus)]
    argv += ["-v", f"{workdir}:/workspace/group", "-v", f"{ipc}:/workspace/ipc"]
    for m in (cfg.additional_mounts if cfg else []):
        bind = f"{m.host_path}:{m.container_path}"
        argv += ["-v", bind + (":ro" if m.readonly else "")]
    for k, v in sorted(sb.env.items()):
        argv += ["-e", f"{k}={v}"]
    argv.append(sb.image)
    return argv, env, ["docker", "stop", "-t", "1", name], name


def run_sandbox(
    conversation: Conversation,
    request: SandboxRequest,
    *,
    settings: Settings,
    on_spawn: Callable[[SandboxProcess], None],
    on_event: Callable[[object], None],
) -> InvocationOutcome:
    """Run one sandbox to completion, streaming decoded events to `on_event`.

    Blocks the calling thread until the process exits. `on_spawn` is called
    exactly once, after the process really started; a spawn failure returns
    an error outcome with spawned=False and never calls it.
    """
    workdir = conversation_workdir(conversation.folder)
    ipc = ipc_dir(conversation.folder)
    logs = workdir / "logs"
    extra = {"conversation": conversation.jid, "folder": conversation.folder}

    try:
        logs.mkdir(parents=True, exist_ok=True)
        ipc.mkdir(parents=True, exist_ok=True)
        argv, env, stop_command, label = build_command(conversation, settings, workdir=workdir, ipc=ipc)
        stderr_path = logs / f"sandbox-{time.strftime('%Y%m%dT%H%M%S')}-{os.getpid()}.log"
        stderr_f: IO[str] = stderr_path.open("a", encoding="utf-8")
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=stderr_f,
                cwd=str(workdir),
                env=env,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                start_new_session=True,
            )
        except OSError as e:
            stderr_f.close()
            raise SandboxSpawnError(f"failed to spawn {argv[0]}: {e}") from e
    except (SandboxSpawnError, OSError) as e:
        logger.error(f"sandbox spawn failed: {e}", extra=extra)
        return InvocationOutcome(status="error", spawned=False, error=str(e))

    handle = SandboxProcess(proc, label=label, stop_command=stop_command)
    handle.send_request(request)
    logger.info(f"sandbox started: {label} pid={handle.pid}", extra=extra)
    try:
        on_spawn(handle)
    except Exception as e:
        logger.error(f"sandbox registration failed, killing {label}: {e}", extra=extra)
        handle.kill()
        stderr_f.close()
        return InvocationOutcome(status="error", spawned=True, error=str(e), exit_code=proc.returncode)

    outcome = InvocationOutcome(status="success")
    timeout = _conversation_timeout(conversation, settings)
    timer_lock = threading.Lock()
    timer: Optional[threading.Timer] = None

    def _on_timeout() -> None:
        outcome.timed_out = True
        logger.error(f"sandbox {label} timed out after {timeout:g}s", extra=extra)
        handle.kill()

    def _arm_timeout() -> None:
        nonlocal timer
        with timer_lock:
            if timer is not None:
                timer.cancel()
            timer = threading.Timer(timeout, _on_timeout)
            timer.daemon = True
            timer.start()

    saw_error = False
    _arm_timeout()
    try:
        buf: Optional[List[str]] = None
        assert proc.stdout is not None
        for raw in proc.stdout:
            line = raw.rstrip("\r\n")
            if line.strip() == OUTPUT_START_MARKER:
                buf = []
                continue
            if line.strip() == OUTPUT_END_MARKER and buf is not None:
                payload = "\n".join(buf)
                buf = None
                try:
                    evt = decode_event(payload)
                except SandboxProtocolError as e:
                    logger.warning(f"dropping undecodable sandbox output: {e}", extra=extra)
                    continue
                _arm_timeout()
                if isinstance(evt, ResultEvent):
                    outcome.results += 1
                elif isinstance(evt, ErrorEvent):
                    saw_error = True
                    outcome.error = evt.error
                elif isinstance(evt, SessionEvent):
                    outcome.new_session_id = evt.session_id
                try:
                    on_event(evt)
                except Exception:
                    logger.exception("event handler failed", extra=extra)
                continue
            if buf is not None:
                buf.append(line)
            elif line.strip():
                logger.debug(f"[{label}] {line[:500]}", extra=extra)
    finally:
        with timer_lock:
            if timer is not None:
                timer.cancel()
        handle.close_input()
        outcome.exit_code = proc.wait()
        stderr_f.close()

    if outcome.timed_out:
        # A session that already answered and then sat idle is a normal end.
        outcome.status = "success" if outcome.results > 0 and not saw_error else "error"
        if outcome.status == "error" and not outcome.error:
            outcome.error = f"timed out after {timeout:g}s"
    elif handle.cancelled:
        outcome.status = "cancelled"
    elif saw_error:
        outcome.status = "error"
    elif outcome.exit_code != 0:
        outcome.status = "error"
        outcome.error = f"sandbox exited with code {outcome.exit_code}"
    elif outcome.results == 0:
        outcome.status = "error"
        outcome.error = "sandbox exited without a result"
    logger.info(
        f"sandbox finished: {label} status={outcome.status} code={outcome.exit_code} results={outcome.results}",
        extra=extra,
    )
    return outcome
