"""Tests for structured logging behavior."""

from __future__ import annotations

import json
import logging
import tempfile
from pathlib import Path
import unittest

import structlog

from host_fakes import FakeHost, make_image

from spatialshot.chat_engine import ChatSessionEngine
from spatialshot.exceptions import TransientProviderError
from spatialshot.logging_utils import (
    build_structured_formatter,
    configure_logging,
    redact_secrets,
)


def _record(name: str = "spatialshot.test", msg: str = "ok") -> logging.LogRecord:
    return logging.LogRecord(
        name=name,
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
    )


class LoggingTests(unittest.IsolatedAsyncioTestCase):
    """Validate log format and required fallback event emission."""

    async def test_fallback_log_event_emitted(self) -> None:
        host = FakeHost()
        host.stream_plan = [TransientProviderError("busy", 503), ["ok"]]
        engine = ChatSessionEngine(
            host.bridge,
            model="gemini-2.5-flash",
            fallback_model="gemini-flash-lite-latest",
            warm_up_seconds=0,
        )

        with self.assertLogs("spatialshot.chat_engine", level="WARNING") as logs:
            await engine.start_session("AIza", engine.model, make_image(), "describe")

        self.assertEqual(engine.streaming_text, "ok")
        self.assertTrue(any("chat.session.fallback" in line for line in logs.output))

    async def test_structured_formatter_includes_extra_fields(self) -> None:
        formatter = build_structured_formatter()
        record = _record(msg="state transition")
        record.event = "auth.stage.transition"
        record.from_state = "NEEDS_CHAT_KEY"
        record.to_state = "NEEDS_LOGIN"

        data = json.loads(formatter.format(record))
        self.assertEqual(data["event"], "auth.stage.transition")
        self.assertEqual(data["from_state"], "NEEDS_CHAT_KEY")
        self.assertEqual(data["to_state"], "NEEDS_LOGIN")
        self.assertEqual(data["level"], "info")
        self.assertEqual(data["logger"], "spatialshot.test")
        self.assertIn("timestamp", data)

    async def test_structured_formatter_redacts_secret_fields(self) -> None:
        formatter = build_structured_formatter()
        record = _record()
        record.secret = "AIza-very-secret"
        record.plaintext = "imgbb-secret"
        record.provider = "chat"

        line = formatter.format(record)
        data = json.loads(line)
        self.assertEqual(data["secret"], "***")
        self.assertEqual(data["plaintext"], "***")
        self.assertEqual(data["provider"], "chat")
        self.assertNotIn("AIza-very-secret", line)

    async def test_redaction_processor_leaves_other_keys(self) -> None:
        event_dict = {"event": "capture.stored", "api_key": "k", "provider": "chat"}
        redacted = redact_secrets(None, "info", event_dict)
        self.assertEqual(
            redacted, {"event": "capture.stored", "api_key": "***", "provider": "chat"}
        )


class ConfigureLoggingTests(unittest.TestCase):
    """Validate configure_logging() handler setup behavior."""

    def setUp(self) -> None:
        # Preserve root logger state so tests do not pollute each other.
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
        structlog.reset_defaults()

    def _stream_handlers(self) -> list[logging.Handler]:
        return [
            h
            for h in logging.getLogger().handlers
            if isinstance(h, logging.StreamHandler)
            and not isinstance(h, logging.FileHandler)
        ]

    def test_configure_logging_structured_uses_processor_formatter(self) -> None:
        configure_logging({"level": "DEBUG", "structured": True, "log_to_file": False})
        formatters = [h.formatter for h in logging.getLogger().handlers]
        self.assertTrue(
            any(isinstance(f, structlog.stdlib.ProcessorFormatter) for f in formatters)
        )

    def test_configure_logging_plain_formatter_when_not_structured(self) -> None:
        configure_logging({"level": "DEBUG", "structured": False, "log_to_file": False})
        formatters = [h.formatter for h in logging.getLogger().handlers]
        self.assertFalse(
            any(isinstance(f, structlog.stdlib.ProcessorFormatter) for f in formatters)
        )

    def test_configure_logging_sets_root_level(self) -> None:
        configure_logging({"level": "DEBUG", "structured": False, "log_to_file": False})
        self.assertEqual(logging.getLogger().level, logging.DEBUG)

    def test_configure_logging_noisy_loggers_set_to_warning(self) -> None:
        configure_logging({"level": "DEBUG", "structured": False, "log_to_file": False})
        for name in ("httpx", "httpcore"):
            self.assertEqual(logging.getLogger(name).level, logging.WARNING)

    def test_configure_logging_file_handler_created(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            log_path = str(Path(tmp) / "test.log")
            configure_logging(
                {
                    "level": "DEBUG",
                    "structured": False,
                    "log_to_file": True,
                    "log_file_path": log_path,
                }
            )
            file_handlers = [
                h for h in logging.getLogger().handlers if isinstance(h, logging.FileHandler)
            ]
            self.assertTrue(len(file_handlers) >= 1)
            self.assertTrue(Path(log_path).exists())
            for handler in file_handlers:
                handler.close()

    def test_configure_logging_stderr_handler_filters_to_spatialshot(self) -> None:
        configure_logging({"level": "DEBUG", "structured": False, "log_to_file": False})
        handlers = self._stream_handlers()
        self.assertTrue(len(handlers) >= 1)
        handler = handlers[0]
        self.assertTrue(handler.filter(_record("spatialshot.provisioner")))
        self.assertFalse(handler.filter(_record("httpx", "noise")))


if __name__ == "__main__":
    unittest.main()
