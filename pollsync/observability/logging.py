"""
Structured Logger
=================

Structured logging for the polling engine.

Features:
- JSON-formatted logs
- Scoped context (entity, cycle_id) carried by contextvars, so each entity
  task keeps its own context under asyncio
- File output driven by the ``logging`` settings block
- Cycle lifecycle events
"""

import contextvars
import json
import logging
import os
import sys
import traceback
from contextlib import contextmanager
from typing import Dict, Optional

from ..utils import utcnow

_context: contextvars.ContextVar = contextvars.ContextVar("pollsync_log_context", default={})

_RESERVED_ATTRS = {
    'name', 'msg', 'args', 'created', 'filename', 'funcName',
    'levelname', 'levelno', 'lineno', 'module', 'msecs',
    'pathname', 'process', 'processName', 'relativeCreated',
    'stack_info', 'exc_info', 'exc_text', 'thread', 'threadName',
    'message', 'taskName'
}

TEXT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def current_context() -> Dict:
    """Context fields active in the calling task."""
    return dict(_context.get())


@contextmanager
def log_context(**kwargs):
    """
    Context manager for adding context to all logs within scope.

    Usage:
        with log_context(entity="orders", cycle_id="ab12cd34"):
            logger.info("Fetching")  # JSON output includes entity and cycle_id
    """
    token = _context.set({**_context.get(), **kwargs})
    try:
        yield
    finally:
        _context.reset(token)


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def __init__(self, include_extra: bool = True):
        super().__init__()
        self.include_extra = include_extra

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": utcnow().isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info)
            }

        context = current_context()
        if context:
            log_entry["context"] = context

        if self.include_extra:
            for key in set(record.__dict__.keys()) - _RESERVED_ATTRS:
                log_entry[key] = getattr(record, key)

        return json.dumps(log_entry, default=str)


def configure_logging(
    level: str = "INFO",
    json_format: bool = False,
    log_to_file: bool = False,
    log_path: str = "logs/pollsync.log"
):
    """
    Set up root logging from the ``logging`` settings block.

    Args:
        level: Log level name
        json_format: Use JSON formatting for console output
        log_to_file: Also write to ``log_path``
        log_path: Log file path
    """
    log_level = getattr(logging, str(level).upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(log_level)
    root.handlers = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(JsonFormatter() if json_format else logging.Formatter(TEXT_FORMAT))
    root.addHandler(console_handler)

    if log_to_file:
        directory = os.path.dirname(log_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(log_level)
        file_handler.setFormatter(JsonFormatter())
        root.addHandler(file_handler)


class StructuredLogger:
    """
    Thin wrapper adding scoped context and cycle events to a stdlib logger.

    Usage:
        logger = StructuredLogger("pollsync.orchestrator")

        with logger.context(entity="orders", cycle_id="ab12cd34"):
            logger.info("Processing batch", extra={"rows": 500})
            logger.error("Failed", exception=e)
    """

    def __init__(self, name: str):
        self.name = name
        self._logger = logging.getLogger(name)

    context = staticmethod(log_context)

    def _log(
        self,
        level: int,
        message: str,
        extra: Optional[Dict] = None,
        exception: Optional[BaseException] = None
    ):
        extra = dict(extra or {})
        context = current_context()
        if 'cycle_id' not in extra and 'cycle_id' in context:
            extra['cycle_id'] = context['cycle_id']

        if exception is not None:
            self._logger.log(level, message, extra=extra, exc_info=exception)
        else:
            self._logger.log(level, message, extra=extra)

    def debug(self, message: str, extra: Optional[Dict] = None):
        self._log(logging.DEBUG, message, extra)

    def info(self, message: str, extra: Optional[Dict] = None):
        self._log(logging.INFO, message, extra)

    def warning(self, message: str, extra: Optional[Dict] = None):
        self._log(logging.WARNING, message, extra)

    def error(
        self,
        message: str,
        extra: Optional[Dict] = None,
        exception: Optional[BaseException] = None
    ):
        self._log(logging.ERROR, message, extra, exception)

    def critical(
        self,
        message: str,
        extra: Optional[Dict] = None,
        exception: Optional[BaseException] = None
    ):
        self._log(logging.CRITICAL, message, extra, exception)

    def log_cycle_start(self, entity_name: str, watermark: str):
        """Log cycle start event."""
        self.debug(
            f"Cycle started: {entity_name}",
            extra={
                "event": "cycle_start",
                "entity_name": entity_name,
                "watermark": watermark
            }
        )

    def log_cycle_end(
        self,
        entity_name: str,
        status: str,
        duration_seconds: float,
        rows_applied: int = 0,
        watermark: Optional[str] = None
    ):
        """Log cycle end event. Failures log at ERROR."""
        level = logging.ERROR if status in ("failed", "fatal") else logging.INFO
        symbol = "✗" if level == logging.ERROR else "✓"
        self._log(
            level,
            f"{symbol} Cycle completed: {entity_name} ({status}, {rows_applied} rows, {duration_seconds:.3f}s)",
            extra={
                "event": "cycle_end",
                "entity_name": entity_name,
                "status": status,
                "duration_seconds": duration_seconds,
                "rows_applied": rows_applied,
                "watermark": watermark
            }
        )
