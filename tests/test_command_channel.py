import json
import os
import tempfile
import unittest


class CommandChannelTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self._old_home = os.environ.get("SANDCHAT_HOME")
        os.environ["SANDCHAT_HOME"] = self._td.name

        from fakes import make_channel, make_context, register
        from sandchat.daemon.commands import CommandWatcher

        self.channel = make_channel()
        self.ctx = make_context(channels=[self.channel])
        register(self.ctx, "test:main", "main")
        register(self.ctx, "test:c1", "c1")
        register(self.ctx, "test:c2", "c2")
        self.refreshes = []
        self.watcher = CommandWatcher(self.ctx, on_refresh=lambda: self.refreshes.append(1))

    def tearDown(self) -> None:
        if self._old_home is None:
            os.environ.pop("SANDCHAT_HOME", None)
        else:
            os.environ["SANDCHAT_HOME"] = self._old_home
        self._td.cleanup()

    def drop(self, folder: str, name: str, doc, sub: str = "tasks"):
        d = self.watcher.root / folder / sub
        d.mkdir(parents=True, exist_ok=True)
        p = d / name
        p.write_text(json.dumps(doc) if not isinstance(doc, str) else doc, encoding="utf-8")
        return p


class TestCommandChannel(CommandChannelTestCase):
    def test_message_to_own_conversation(self) -> None:
        p = self.drop("c1", "1.json", {"type": "message", "chat_jid": "test:c1", "text": "reminder"}, sub="messages")
        self.assertEqual(self.watcher.run_once(), 1)
        self.assertFalse(p.exists())
        self.assertEqual(self.channel.sent, [("c1", "Andy: reminder")])

    def test_message_to_other_conversation_is_blocked(self) -> None:
        p = self.drop("c1", "1.json", {"type": "message", "chat_jid": "test:c2", "text": "spam"}, sub="messages")
        self.watcher.run_once()
        self.assertFalse(p.exists())
        self.assertEqual(self.channel.sent, [])

    def test_privileged_folder_may_message_anyone(self) -> None:
        self.drop("main", "1.json", {"type": "message", "chat_jid": "test:c2", "text": "hello"}, sub="messages")
        self.watcher.run_once()
        self.assertEqual(self.channel.sent, [("c2", "Andy: hello")])

    def test_schedule_task_authorization(self) -> None:
        base = {"type": "schedule_task", "prompt": "daily summary", "schedule_type": "cron", "schedule_value": "0 9 * * *"}
        self.drop("c1", "own.json", {**base, "target_jid": "test:c1"})
        self.drop("c1", "other.json", {**base, "target_jid": "test:c2"})
        self.drop("main", "any.json", {**base, "target_jid": "test:c2"})
        self.watcher.run_once()

        tasks = self.ctx.tasks.list()
        self.assertEqual(sorted(t.group_folder for t in tasks), ["c1", "c2"])
        self.assertTrue(all(t.next_run for t in tasks))
        self.assertTrue(all(t.status == "active" for t in tasks))

    def test_invalid_schedule_moves_file_to_errors(self) -> None:
        self.drop("c1", "bad.json", {
            "type": "schedule_task", "prompt": "p", "schedule_type": "cron",
            "schedule_value": "every tuesday", "target_jid": "test:c1",
        })
        self.drop("c1", "garbage.json", "{nope")
        self.watcher.run_once()
        errors = self.watcher.root / "errors"
        self.assertTrue((errors / "c1-bad.json").exists())
        self.assertTrue((errors / "c1-garbage.json").exists())
        self.assertEqual(self.ctx.tasks.list(), [])
        self.assertEqual(self.watcher.run_once(), 0)

    def test_pause_resume_cancel(self) -> None:
        from sandchat.contracts.v1 import ScheduledTask

        task = self.ctx.tasks.create(ScheduledTask(
            group_folder="c1", chat_jid="test:c1", prompt="p",
            schedule_type="interval", schedule_value="60000",
        ))
        self.drop("c2", "steal.json", {"type": "pause_task", "task_id": task.id})
        self.watcher.run_once()
        self.assertEqual(self.ctx.tasks.get(task.id).status, "active")

        self.drop("c1", "pause.json", {"type": "pause_task", "task_id": task.id})
        self.watcher.run_once()
        self.assertEqual(self.ctx.tasks.get(task.id).status, "paused")

        self.drop("main", "resume.json", {"type": "resume_task", "task_id": task.id})
        self.watcher.run_once()
        self.assertEqual(self.ctx.tasks.get(task.id).status, "active")

        self.drop("c1", "cancel.json", {"type": "cancel_task", "task_id": task.id})
        self.watcher.run_once()
        self.assertIsNone(self.ctx.tasks.get(task.id))

    def test_register_and_unregister_are_privileged(self) -> None:
        doc = {"type": "register_group", "jid": "test:new", "name": "New", "folder": "new"}
        self.drop("c1", "reg.json", doc)
        self.watcher.run_once()
        self.assertIsNone(self.ctx.registry.get("test:new"))

        self.drop("main", "reg.json", doc)
        self.watcher.run_once()
        conv = self.ctx.registry.get("test:new")
        self.assertIsNotNone(conv)
        self.assertEqual(conv.trigger, "@Andy")

        self.drop("main", "unreg.json", {"type": "unregister_group", "jid": "test:new"})
        self.watcher.run_once()
        self.assertIsNone(self.ctx.registry.get("test:new"))

    def test_refresh_groups_rewrites_snapshot(self) -> None:
        from sandchat.paths import ipc_dir

        self.ctx.messages.store_chat_metadata("test:lobby", "Lobby")
        self.drop("c1", "r.json", {"type": "refresh_groups"})
        self.watcher.run_once()
        self.assertEqual(self.refreshes, [])

        self.drop("main", "r.json", {"type": "refresh_groups"})
        self.watcher.run_once()
        self.assertEqual(self.refreshes, [1])
        snap = json.loads((ipc_dir("main") / "available_groups.json").read_text(encoding="utf-8"))
        lobby = [g for g in snap["groups"] if g["jid"] == "test:lobby"]
        self.assertEqual(len(lobby), 1)
        self.assertFalse(lobby[0]["isRegistered"])


if __name__ == "__main__":
    unittest.main()
