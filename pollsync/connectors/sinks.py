"""
Basic Sinks
===========

Adapters for plain functions and a logging sink for dry runs.
"""

import logging
from typing import Any, Callable

from ..models import ChangeRecord
from .base import Sink

logger = logging.getLogger(__name__)


class CallableSink(Sink):
    """Wraps a function (sync or async) taking a ChangeRecord."""

    def __init__(self, func: Callable[[ChangeRecord], Any], name: str = None):
        self.func = func
        self.name = name or getattr(func, "__name__", "callable")

    def apply(self, record: ChangeRecord) -> Any:
        return self.func(record)


class LoggingSink(Sink):
    """Logs every record. Safe to replay; has no side effects."""

    def __init__(self, level: int = logging.INFO):
        self.level = level
        self.count = 0

    def apply(self, record: ChangeRecord) -> bool:
        self.count += 1
        logger.log(
            self.level,
            f"{record.entity_name} {record.operation.value} {record.tiebreak_id} @ {record.timestamp.isoformat()}",
            extra={"idempotency_key": record.idempotency_key}
        )
        return True
