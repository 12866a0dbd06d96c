"""
Test Structured Logging
=======================
"""

import asyncio
import json
import logging
import sys

import pytest

from pollsync.observability.logging import (
    JsonFormatter, StructuredLogger, configure_logging, current_context, log_context
)


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    for handler in root.handlers:
        handler.close()
    root.handlers = handlers
    root.setLevel(level)


def make_record(message="hello", **extra):
    logger = logging.getLogger("pollsync.test")
    return logger.makeRecord(logger.name, logging.INFO, __file__, 10, message, (), None, extra=extra)


class TestLogContext:

    def test_nested_context_is_restored(self):
        with log_context(entity="orders"):
            with log_context(cycle_id="abc"):
                assert current_context() == {"entity": "orders", "cycle_id": "abc"}
            assert current_context() == {"entity": "orders"}
        assert current_context() == {}

    def test_concurrent_tasks_keep_separate_context(self):
        async def task(name):
            with log_context(entity=name):
                await asyncio.sleep(0.01)
                return current_context()["entity"]

        async def main():
            return await asyncio.gather(task("orders"), task("leads"))

        assert asyncio.run(main()) == ["orders", "leads"]


class TestJsonFormatter:

    def test_fields_context_and_extra(self):
        with log_context(entity="orders"):
            entry = json.loads(JsonFormatter().format(make_record(rows=5)))

        assert entry["level"] == "INFO"
        assert entry["logger"] == "pollsync.test"
        assert entry["message"] == "hello"
        assert entry["context"] == {"entity": "orders"}
        assert entry["rows"] == 5

    def test_extra_can_be_excluded(self):
        entry = json.loads(JsonFormatter(include_extra=False).format(make_record(rows=5)))
        assert "rows" not in entry

    def test_exception_block(self):
        try:
            raise ValueError("boom")
        except ValueError:
            record = make_record()
            record.exc_info = sys.exc_info()

        entry = json.loads(JsonFormatter().format(record))
        assert entry["exception"]["type"] == "ValueError"
        assert entry["exception"]["message"] == "boom"


class TestConfigureLogging:

    def test_file_output_is_json(self, tmp_path, restore_root_logger):
        log_path = tmp_path / "logs" / "pollsync.log"
        configure_logging(level="debug", log_to_file=True, log_path=str(log_path))

        StructuredLogger("pollsync.test").log_cycle_end("orders", "success", 0.25, rows_applied=3)
        for handler in restore_root_logger.handlers:
            handler.flush()

        entry = json.loads(log_path.read_text().splitlines()[-1])
        assert entry["event"] == "cycle_end"
        assert entry["rows_applied"] == 3
        assert "✓" in entry["message"]
        assert restore_root_logger.level == logging.DEBUG

    def test_failed_cycles_log_at_error(self, caplog):
        with caplog.at_level(logging.INFO, logger="pollsync.test"):
            StructuredLogger("pollsync.test").log_cycle_end("orders", "failed", 1.0)
        assert caplog.records[-1].levelno == logging.ERROR
        assert "✗" in caplog.records[-1].getMessage()
