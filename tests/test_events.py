import json
import unittest


class TestDecodeEvent(unittest.TestCase):
    def test_each_event_kind(self) -> None:
        from sandchat.contracts.v1 import ErrorEvent, PartialOutputEvent, ResultEvent, SessionEvent, decode_event

        self.assertIsInstance(decode_event('{"type": "partial_output", "text": "typing"}'), PartialOutputEvent)
        self.assertIsInstance(decode_event(b'{"type": "result", "result": "hi"}'), ResultEvent)
        self.assertEqual(decode_event({"type": "session", "session_id": "s1"}).session_id, "s1")
        self.assertEqual(decode_event({"type": "error", "error": "bad"}).error, "bad")
        self.assertIsInstance(decode_event({"type": "error"}), ErrorEvent)
        self.assertIsInstance(decode_event({"type": "session", "session_id": "s"}), SessionEvent)

    def test_unknown_tag_is_rejected(self) -> None:
        from sandchat.contracts.v1 import SandboxProtocolError, decode_event

        with self.assertRaises(SandboxProtocolError):
            decode_event(json.dumps({"type": "telemetry"}))
        with self.assertRaises(SandboxProtocolError):
            decode_event({"text": "no tag"})

    def test_malformed_payloads_are_rejected(self) -> None:
        from sandchat.contracts.v1 import SandboxProtocolError, decode_event

        with self.assertRaises(SandboxProtocolError):
            decode_event("{not json")
        with self.assertRaises(SandboxProtocolError):
            decode_event({"type": "session", "session_id": ""})
        with self.assertRaises(SandboxProtocolError):
            decode_event({"type": "partial_output"})

    def test_result_text(self) -> None:
        from sandchat.contracts.v1 import ResultEvent

        self.assertEqual(ResultEvent(result="plain").text(), "plain")
        self.assertEqual(ResultEvent(result={"text": "from dict"}).text(), "from dict")
        self.assertEqual(ResultEvent(result={"message": "m"}).text(), "m")
        self.assertEqual(ResultEvent(result={"other": 1}).text(), "")
        self.assertEqual(ResultEvent().text(), "")


class TestCommandRequests(unittest.TestCase):
    def test_parse_known_commands(self) -> None:
        from sandchat.contracts.v1 import ScheduleTaskRequest, SendMessageRequest, TaskControlRequest, parse_command

        self.assertIsInstance(parse_command({"type": "message", "chat_jid": "tg:1", "text": "x"}), SendMessageRequest)
        req = parse_command({"type": "schedule_task", "prompt": "p", "schedule_type": "interval", "schedule_value": "60000", "target_jid": "tg:1"})
        self.assertIsInstance(req, ScheduleTaskRequest)
        self.assertEqual(parse_command({"type": "pause_task", "task_id": "task-1"}).type, "pause_task")
        self.assertIsInstance(parse_command({"type": "cancel_task", "task_id": "task-1"}), TaskControlRequest)

    def test_unknown_command_is_rejected(self) -> None:
        from pydantic import ValidationError

        from sandchat.contracts.v1 import parse_command

        with self.assertRaises(ValidationError):
            parse_command({"type": "format_disk"})


if __name__ == "__main__":
    unittest.main()
