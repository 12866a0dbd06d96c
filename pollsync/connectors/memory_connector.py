"""
In-Memory Source Connector
==========================

Keeps rows in a list and answers keyset range queries the same way the SQL
connector does. Used for tests, demos and dry runs.
"""

import logging
import threading
from typing import Any, Dict, List, Optional

from ..errors import SourceUnavailable
from ..models import TrackedEntity, Watermark
from ..utils import parse_timestamp
from .base import SourceConnector

logger = logging.getLogger(__name__)


class MemorySourceConnector(SourceConnector):
    """
    In-memory change source.

    Usage:
        source = MemorySourceConnector(timestamp_column="updated_at", tiebreak_column="id")
        source.upsert({"id": 1, "updated_at": datetime(2024, 1, 1), "name": "a"})
        rows = source.fetch_rows(entity, Watermark.epoch(), limit=100)
    """

    def __init__(
        self,
        rows: Optional[List[Dict[str, Any]]] = None,
        timestamp_column: str = "updated_at",
        tiebreak_column: str = "id"
    ):
        self.timestamp_column = timestamp_column
        self.tiebreak_column = tiebreak_column
        self._rows: Dict[Any, Dict[str, Any]] = {}
        self._failures: List[Exception] = []
        self._lock = threading.Lock()
        self.fetch_count = 0

        for row in rows or []:
            self.upsert(row)

    def upsert(self, row: Dict[str, Any]):
        """Insert or replace a row, keyed by its tiebreak column."""
        with self._lock:
            self._rows[row[self.tiebreak_column]] = dict(row)

    def delete(self, tiebreak_id: Any) -> bool:
        """Hard-delete a row. Pure timestamp polling never observes this."""
        with self._lock:
            return self._rows.pop(tiebreak_id, None) is not None

    def fail_next(self, error: Optional[Exception] = None, times: int = 1):
        """Make the next ``times`` fetches raise ``error``."""
        error = error or SourceUnavailable("Injected source outage")
        with self._lock:
            self._failures.extend([error] * times)

    def all_rows(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(r) for r in self._rows.values()]

    def _key(self, row: Dict[str, Any]) -> Watermark:
        return Watermark(
            timestamp=parse_timestamp(row[self.timestamp_column]),
            tiebreak_id=row[self.tiebreak_column]
        )

    def fetch_rows(
        self,
        entity: TrackedEntity,
        watermark: Watermark,
        limit: int
    ) -> List[Dict[str, Any]]:
        with self._lock:
            self.fetch_count += 1
            if self._failures:
                raise self._failures.pop(0)

            newer = [r for r in self._rows.values() if self._key(r) > watermark]
            newer.sort(key=lambda r: self._key(r).sort_key())
            batch = [dict(r) for r in newer[:limit]]

        logger.debug(f"Memory source returned {len(batch)} rows for {entity.name} after {watermark}")
        return batch
