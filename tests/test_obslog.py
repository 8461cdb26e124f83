import io
import json
import logging
import unittest


class TestJsonlLogging(unittest.TestCase):
    def setUp(self) -> None:
        root = logging.getLogger()
        self._saved = (list(root.handlers), root.level)

    def tearDown(self) -> None:
        root = logging.getLogger()
        for h in list(root.handlers):
            root.removeHandler(h)
        handlers, level = self._saved
        for h in handlers:
            root.addHandler(h)
        root.setLevel(level)

    def test_records_carry_correlation_fields(self) -> None:
        from sandchat.util.obslog import setup_root_json_logging

        buf = io.StringIO()
        setup_root_json_logging(component="sandchatd", level="DEBUG", stream=buf, force=True)
        logging.getLogger("sandchat.turns").info("turn failed", extra={"conversation": "tg:1", "folder": "team"})

        doc = json.loads(buf.getvalue().strip().splitlines()[-1])
        self.assertEqual(doc["component"], "sandchatd")
        self.assertEqual(doc["logger"], "sandchat.turns")
        self.assertEqual(doc["conversation"], "tg:1")
        self.assertEqual(doc["folder"], "team")
        self.assertNotIn("task_id", doc)
        self.assertTrue(doc["ts"].endswith("Z"))

    def test_exceptions_are_serialized(self) -> None:
        from sandchat.util.obslog import setup_root_json_logging

        buf = io.StringIO()
        setup_root_json_logging(component="test", stream=buf, force=True)
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            logging.getLogger("sandchat.queue").exception("turn crashed")
        doc = json.loads(buf.getvalue().strip().splitlines()[-1])
        self.assertIn("RuntimeError: boom", doc["exc"])

    def test_repeated_setup_keeps_one_handler(self) -> None:
        from sandchat.util.obslog import setup_root_json_logging

        buf = io.StringIO()
        first = setup_root_json_logging(component="again", stream=buf, force=True)
        second = setup_root_json_logging(component="again", level="WARNING", stream=buf)
        self.assertIs(first, second)
        self.assertEqual(len(logging.getLogger().handlers), 1)
        self.assertEqual(first.level, logging.WARNING)

    def test_level_names(self) -> None:
        from sandchat.util.obslog import level_from_name

        self.assertEqual(level_from_name("debug"), logging.DEBUG)
        self.assertEqual(level_from_name("nonsense"), logging.INFO)


if __name__ == "__main__":
    unittest.main()
