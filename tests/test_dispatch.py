import os
import tempfile
import unittest


class DispatchTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self._old_home = os.environ.get("SANDCHAT_HOME")
        os.environ["SANDCHAT_HOME"] = self._td.name

        from fakes import TimerRecorder, make_channel, make_context, register
        from sandchat.daemon.dispatch import DispatchLoop

        self.channel = make_channel()
        self.timers = TimerRecorder()
        self.ctx = make_context(channels=[self.channel], timers=self.timers)
        register(self.ctx, "test:c1", "c1")
        register(self.ctx, "test:main", "main")
        self.checks = []
        self.ctx.queue.enqueue_check = self.checks.append
        self.loop = DispatchLoop(self.ctx)

    def tearDown(self) -> None:
        self.ctx.typing.stop_all()
        if self._old_home is None:
            os.environ.pop("SANDCHAT_HOME", None)
        else:
            os.environ["SANDCHAT_HOME"] = self._old_home
        self._td.cleanup()

    def store(self, jid: str, text: str):
        return self.ctx.messages.store_message(jid, text, sender="u1", sender_name="Alice")


class TestDispatchLoop(DispatchTestCase):
    def test_no_process_enqueues_check(self) -> None:
        self.store("test:main", "hello")
        self.assertEqual(self.loop.run_once(), 1)
        self.assertEqual(self.checks, ["test:main"])
        self.assertEqual(self.ctx.cursors.agent_delivered("test:main"), "")

    def test_live_process_gets_piped_input(self) -> None:
        from fakes import FakeHandle

        handle = FakeHandle("live")
        self.ctx.queue.register_process("test:main", handle, handle.label)
        t = self.store("test:main", "follow-up").timestamp

        self.loop.run_once()
        self.assertEqual(len(handle.lines), 1)
        self.assertIn(">follow-up</message>", handle.lines[0])
        self.assertEqual(self.ctx.cursors.agent_delivered("test:main"), t)
        self.assertEqual(self.checks, [])

    def test_untriggered_batch_only_moves_global_cursor(self) -> None:
        t = self.store("test:c1", "just chatting").timestamp
        self.loop.run_once()
        self.assertEqual(self.checks, [])
        self.assertEqual(self.ctx.cursors.global_seen, t)
        self.assertEqual(self.ctx.cursors.agent_delivered("test:c1"), "")
        self.assertEqual(self.loop.run_once(), 0)

    def test_piped_input_includes_earlier_untriggered_messages(self) -> None:
        from fakes import FakeHandle

        self.store("test:c1", "context first")
        self.loop.run_once()

        handle = FakeHandle("live")
        self.ctx.queue.register_process("test:c1", handle, handle.label)
        self.store("test:c1", "@Andy now answer")
        self.loop.run_once()

        self.assertEqual(len(handle.lines), 1)
        self.assertIn("context first", handle.lines[0])
        self.assertIn("@Andy now answer", handle.lines[0])

    def test_rejected_pipe_rolls_cursor_back(self) -> None:
        from fakes import FakeHandle

        handle = FakeHandle("closing")
        self.ctx.queue.register_process("test:main", handle, handle.label)
        handle.close_input()
        self.store("test:main", "too late")

        self.loop.run_once()
        self.assertEqual(handle.lines, [])
        self.assertEqual(self.ctx.cursors.agent_delivered("test:main"), "")
        self.assertEqual(self.checks, ["test:main"])

    def test_unregistered_chats_are_ignored(self) -> None:
        self.store("test:stranger", "hi")
        self.assertEqual(self.loop.run_once(), 0)
        self.assertEqual(self.checks, [])

    def test_each_message_is_observed_once(self) -> None:
        self.store("test:main", "one")
        self.store("test:main", "two")
        self.assertEqual(self.loop.run_once(), 2)
        self.assertEqual(self.loop.run_once(), 0)
        self.store("test:main", "three")
        self.assertEqual(self.loop.run_once(), 1)

    def test_batch_already_taken_by_a_turn_is_not_piped_again(self) -> None:
        from fakes import FakeHandle

        # A recovery turn delivered this message before the poll observed it.
        t = self.store("test:main", "handled at startup").timestamp
        self.ctx.cursors.advance_agent("test:main", t)
        handle = FakeHandle("live")
        self.ctx.queue.register_process("test:main", handle, handle.label)

        self.assertEqual(self.loop.run_once(), 1)
        self.assertEqual(handle.lines, [])
        self.assertEqual(self.checks, [])
        self.assertEqual(self.ctx.cursors.global_seen, t)

    def test_idle_close_stops_typing(self) -> None:
        from fakes import FakeHandle

        handle = FakeHandle("live")
        self.ctx.queue.register_process("test:main", handle, handle.label)
        self.store("test:main", "still there?")
        self.loop.run_once()
        self.assertTrue(self.ctx.typing.is_active("test:main"))

        self.timers.live()[0].fire()
        self.assertEqual(handle.close_calls, 1)
        self.assertFalse(self.ctx.typing.is_active("test:main"))


if __name__ == "__main__":
    unittest.main()
