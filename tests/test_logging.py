"""Tests for structured logging behavior."""

from __future__ import annotations

import json
import logging
from pathlib import Path
import tempfile
import unittest

import structlog

from relay_chat.logging_utils import configure_logging


class ConfigureLoggingTests(unittest.TestCase):
    """Validate configure_logging() handler setup behavior."""

    def setUp(self) -> None:
        root = logging.getLogger()
        self._original_level = root.level
        self._original_handlers = list(root.handlers)

    def tearDown(self) -> None:
        root = logging.getLogger()
        for handler in root.handlers:
            if handler not in self._original_handlers:
                handler.close()
        root.setLevel(self._original_level)
        root.handlers.clear()
        root.handlers.extend(self._original_handlers)

    def _stream_handlers(self) -> list[logging.Handler]:
        return [
            h
            for h in logging.getLogger().handlers
            if isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        ]

    def test_structured_formatter_renders_extra_fields_as_json(self) -> None:
        configure_logging({"level": "DEBUG", "structured": True, "log_to_file": False})
        formatter = self._stream_handlers()[0].formatter
        self.assertIsInstance(formatter, structlog.stdlib.ProcessorFormatter)

        record = logging.LogRecord(
            name="relay_chat.session",
            level=logging.INFO,
            pathname=__file__,
            lineno=1,
            msg="turn.finished",
            args=(),
            exc_info=None,
        )
        record.event = "turn.finished"
        record.conversation_id = "c-1"
        record.chars = 15

        data = json.loads(formatter.format(record))
        self.assertEqual(data["event"], "turn.finished")
        self.assertEqual(data["conversation_id"], "c-1")
        self.assertEqual(data["chars"], 15)
        self.assertEqual(data["level"], "info")
        self.assertEqual(data["logger"], "relay_chat.session")

    def test_plain_formatter_when_not_structured(self) -> None:
        configure_logging({"level": "DEBUG", "structured": False, "log_to_file": False})
        formatter = self._stream_handlers()[0].formatter
        self.assertNotIsInstance(formatter, structlog.stdlib.ProcessorFormatter)
        self.assertEqual(logging.getLogger().level, logging.DEBUG)

    def test_stderr_only_shows_app_warnings(self) -> None:
        configure_logging({"level": "DEBUG", "structured": False, "log_to_file": False})
        handler = self._stream_handlers()[0]
        self.assertEqual(handler.level, logging.WARNING)

        def record(name: str) -> logging.LogRecord:
            return logging.LogRecord(name, logging.WARNING, "", 0, "x", (), None)

        self.assertTrue(handler.filter(record("relay_chat.client")))
        self.assertFalse(handler.filter(record("httpx")))

    def test_noisy_loggers_set_to_warning(self) -> None:
        configure_logging({"level": "DEBUG", "structured": False, "log_to_file": False})
        for name in ("httpx", "httpcore", "aiosqlite"):
            self.assertEqual(logging.getLogger(name).level, logging.WARNING)

    def test_file_handler_created(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            log_path = Path(tmp) / "logs" / "relay.log"
            configure_logging(
                {
                    "level": "INFO",
                    "structured": True,
                    "log_to_file": True,
                    "log_file_path": str(log_path),
                }
            )
            file_handlers = [
                h for h in logging.getLogger().handlers if isinstance(h, logging.FileHandler)
            ]
            self.assertEqual(len(file_handlers), 1)
            self.assertTrue(log_path.exists())
            file_handlers[0].close()


if __name__ == "__main__":
    unittest.main()
