import os
import sys
import tempfile
import textwrap
import threading
import unittest
from typing import List

_PRELUDE = textwrap.dedent(
    """
    import json, sys, time

    def emit(obj):
        print("---SANDCHAT_OUTPUT_START---")
        print(json.dumps(obj))
        print("---SANDCHAT_OUTPUT_END---")
        sys.stdout.flush()

    req = json.loads(sys.stdin.readline())
    """
)

ECHO = _PRELUDE + textwrap.dedent(
    """
    emit({"type": "session", "session_id": "sess-1"})
    emit({"type": "result", "result": "echo: " + req["prompt"]})
    for line in sys.stdin:
        msg = json.loads(line)
        emit({"type": "result", "result": "echo: " + msg["text"]})
    """
)

FAILING = _PRELUDE + textwrap.dedent(
    """
    emit({"type": "error", "error": "model unavailable"})
    sys.exit(1)
    """
)

SILENT = _PRELUDE + textwrap.dedent(
    """
    print("booting...")
    """
)

NOISY = _PRELUDE + textwrap.dedent(
    """
    emit({"type": "telemetry", "cpu": 1})
    print("---SANDCHAT_OUTPUT_START---")
    print("{not json")
    print("---SANDCHAT_OUTPUT_END---")
    emit({"type": "result", "result": {"text": "structured"}})
    """
)

SLEEPER = _PRELUDE + textwrap.dedent(
    """
    emit({"type": "session", "session_id": "sess-slow"})
    time.sleep(30)
    """
)

ANSWER_THEN_HANG = _PRELUDE + textwrap.dedent(
    """
    emit({"type": "result", "result": "done"})
    time.sleep(30)
    """
)


class SandboxRunnerTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self._old_home = os.environ.get("SANDCHAT_HOME")
        os.environ["SANDCHAT_HOME"] = self._td.name

    def tearDown(self) -> None:
        if self._old_home is None:
            os.environ.pop("SANDCHAT_HOME", None)
        else:
            os.environ["SANDCHAT_HOME"] = self._old_home
        self._td.cleanup()

    def _run(self, command: List[str], *, timeout: float = 20.0, on_event=None, on_spawn=None):
        from sandchat.contracts.v1 import Conversation, SandboxRequest
        from sandchat.kernel.settings import Settings
        from sandchat.runners.sandbox import run_sandbox

        settings = Settings.model_validate(
            {"sandbox": {"runtime": "local", "command": command, "timeout_seconds": timeout}}
        )
        conv = Conversation(jid="test:c1", name="c1", folder="c1")
        request = SandboxRequest(prompt="hello", group_folder="c1", chat_jid="test:c1")
        self.events: list = []
        self.handles: list = []

        def _on_spawn(handle):
            self.handles.append(handle)
            if on_spawn is not None:
                on_spawn(handle)

        def _on_event(evt):
            self.events.append(evt)
            if on_event is not None:
                on_event(evt)

        return run_sandbox(conv, request, settings=settings, on_spawn=_on_spawn, on_event=_on_event)

    def _script(self, body: str) -> List[str]:
        return [sys.executable, "-c", body]


class TestRunSandbox(SandboxRunnerTestCase):
    def test_piped_turns_then_close_input(self) -> None:
        from sandchat.contracts.v1 import ResultEvent

        def on_event(evt):
            if not isinstance(evt, ResultEvent):
                return
            handle = self.handles[0]
            if evt.text() == "echo: hello":
                self.assertTrue(handle.write_message("again"))
            else:
                handle.close_input()

        outcome = self._run(self._script(ECHO), on_event=on_event)
        self.assertEqual(outcome.status, "success")
        self.assertEqual(outcome.results, 2)
        self.assertEqual(outcome.new_session_id, "sess-1")
        self.assertEqual(outcome.exit_code, 0)
        texts = [e.text() for e in self.events if isinstance(e, ResultEvent)]
        self.assertEqual(texts, ["echo: hello", "echo: again"])
        self.assertFalse(self.handles[0].write_message("too late"))

    def test_error_event_and_nonzero_exit(self) -> None:
        outcome = self._run(self._script(FAILING))
        self.assertEqual(outcome.status, "error")
        self.assertEqual(outcome.error, "model unavailable")
        self.assertEqual(outcome.exit_code, 1)

    def test_exit_without_result_is_an_error(self) -> None:
        outcome = self._run(self._script(SILENT))
        self.assertEqual(outcome.status, "error")
        self.assertEqual(outcome.results, 0)
        self.assertTrue(outcome.spawned)

    def test_spawn_failure_never_calls_on_spawn(self) -> None:
        outcome = self._run([os.path.join(self._td.name, "no-such-binary")])
        self.assertEqual(outcome.status, "error")
        self.assertFalse(outcome.spawned)
        self.assertEqual(self.handles, [])

    def test_undecodable_payloads_are_dropped(self) -> None:
        from sandchat.contracts.v1 import ResultEvent

        outcome = self._run(self._script(NOISY))
        self.assertEqual(outcome.status, "success")
        self.assertEqual(len(self.events), 1)
        self.assertIsInstance(self.events[0], ResultEvent)
        self.assertEqual(self.events[0].text(), "structured")

    def test_interrupt_reports_cancelled(self) -> None:
        def on_event(evt):
            threading.Timer(0.1, self.handles[0].interrupt).start()

        outcome = self._run(self._script(SLEEPER), on_event=on_event)
        self.assertEqual(outcome.status, "cancelled")
        self.assertEqual(outcome.new_session_id, "sess-slow")

    def test_registration_failure_kills_sandbox(self) -> None:
        def on_spawn(handle):
            raise RuntimeError("slot taken")

        outcome = self._run(self._script(SLEEPER), on_spawn=on_spawn)
        self.assertEqual(outcome.status, "error")
        self.assertIn("slot taken", outcome.error)
        self.assertFalse(self.handles[0].is_running())

    def test_timeout_after_answer_counts_as_success(self) -> None:
        outcome = self._run(self._script(ANSWER_THEN_HANG), timeout=0.5)
        self.assertTrue(outcome.timed_out)
        self.assertEqual(outcome.status, "success")

    def test_timeout_without_answer_is_an_error(self) -> None:
        outcome = self._run(self._script(SLEEPER), timeout=0.5)
        self.assertTrue(outcome.timed_out)
        self.assertEqual(outcome.status, "error")
        self.assertIn("timed out", outcome.error)

    def test_stderr_goes_to_conversation_log(self) -> None:
        from sandchat.paths import conversation_workdir

        self._run(self._script(_PRELUDE + 'sys.stderr.write("diag line\\n")\nemit({"type": "result", "result": "ok"})\n'))
        logs = list((conversation_workdir("c1") / "logs").glob("sandbox-*.log"))
        self.assertEqual(len(logs), 1)
        self.assertIn("diag line", logs[0].read_text(encoding="utf-8"))


class TestBuildCommand(unittest.TestCase):
    def test_docker_argv_has_mounts_limits_and_env(self) -> None:
        from pathlib import Path

        from sandchat.contracts.v1 import Conversation
        from sandchat.kernel.settings import Settings
        from sandchat.runners.sandbox import build_command

        settings = Settings.model_validate({"sandbox": {"image": "agent:1", "env": {"TZ": "UTC"}}})
        conv = Conversation.model_validate(
            {
                "jid": "test:c1",
                "name": "c1",
                "folder": "c1",
                "sandbox": {
                    "memory": "512m",
                    "cpus": 1.5,
                    "additional_mounts": [{"host_path": "/data", "container_path": "/workspace/extra/data", "readonly": True}],
                },
            }
        )
        argv, _env, stop, label = build_command(conv, settings, workdir=Path("/w"), ipc=Path("/i"))
        self.assertEqual(argv[:4], ["docker", "run", "-i", "--rm"])
        self.assertEqual(argv[-1], "agent:1")
        self.assertIn("--memory", argv)
        self.assertIn("/w:/workspace/group", argv)
        self.assertIn("/i:/workspace/ipc", argv)
        self.assertIn("/data:/workspace/extra/data:ro", argv)
        self.assertIn("TZ=UTC", argv)
        self.assertTrue(label.startswith("sandchat-c1-"))
        self.assertEqual(stop, ["docker", "stop", "-t", "1", label])

    def test_local_runtime_requires_command(self) -> None:
        from pathlib import Path

        from sandchat.contracts.v1 import Conversation
        from sandchat.kernel.settings import Settings
        from sandchat.runners.sandbox import SandboxSpawnError, build_command

        settings = Settings.model_validate({"sandbox": {"runtime": "local"}})
        conv = Conversation(jid="test:c1", name="c1", folder="c1")
        with self.assertRaises(SandboxSpawnError):
            build_command(conv, settings, workdir=Path("/w"), ipc=Path("/i"))


if __name__ == "__main__":
    unittest.main()
