"""Tests for structured JSON logging."""

import json
import logging

from dialgate.shared.logging import StructuredFormatter, correlation_id_var, log_with_context


def _record(message: str, **extra) -> logging.LogRecord:
    record = logging.LogRecord("dialgate.test", logging.INFO, __file__, 1, message, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestStructuredFormatter:
    def test_renders_json_with_extra_fields(self) -> None:
        output = StructuredFormatter().format(_record("Attempt started", attempt_id="a-1", waited_seconds=0.5))

        data = json.loads(output)
        assert data["message"] == "Attempt started"
        assert data["level"] == "INFO"
        assert data["logger"] == "dialgate.test"
        assert data["attempt_id"] == "a-1"
        assert data["waited_seconds"] == 0.5

    def test_includes_correlation_id(self) -> None:
        token = correlation_id_var.set("req-123")
        try:
            data = json.loads(StructuredFormatter().format(_record("hello")))
        finally:
            correlation_id_var.reset(token)

        assert data["correlation_id"] == "req-123"

    def test_colliding_extra_is_prefixed(self) -> None:
        data = json.loads(StructuredFormatter().format(_record("hello", level="custom")))
        assert data["level"] == "INFO"
        assert data["extra_level"] == "custom"


class TestLogWithContext:
    def test_extra_data_reaches_handler(self) -> None:
        logger = logging.getLogger("dialgate.test.context")
        logger.setLevel(logging.INFO)
        captured: list[logging.LogRecord] = []

        class Capture(logging.Handler):
            def emit(self, record: logging.LogRecord) -> None:
                captured.append(record)

        handler = Capture()
        logger.addHandler(handler)
        try:
            log_with_context(logger, logging.INFO, "Target paused", target="***1234")
        finally:
            logger.removeHandler(handler)

        data = json.loads(StructuredFormatter().format(captured[0]))
        assert data["target"] == "***1234"
