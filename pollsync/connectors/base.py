"""
Connector Contracts
===================

Source connectors answer keyset range queries; sinks apply one change
record at a time. Both may be synchronous or ``async``.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List

from ..models import ChangeRecord, TrackedEntity, Watermark


class SourceConnector(ABC):
    """
    Range-query capability over a change source.

    ``fetch_rows`` returns at most ``limit`` rows whose
    (timestamp column, tiebreak column) key is strictly greater than
    ``watermark``, ascending by that key. It raises ``SourceUnavailable``
    when the source cannot be reached and ``QueryMalformed`` when the
    entity's query cannot run.
    """

    @abstractmethod
    def fetch_rows(
        self,
        entity: TrackedEntity,
        watermark: Watermark,
        limit: int
    ) -> List[Dict[str, Any]]:
        ...

    def connect(self):
        """Open connections. Optional."""

    def disconnect(self):
        """Close connections. Optional."""


class Sink(ABC):
    """
    Applies a change record downstream.

    Implementations must be idempotent: the same record is delivered again
    whenever a batch is retried. Failure is signalled by raising or by
    returning ``False``.
    """

    @abstractmethod
    def apply(self, record: ChangeRecord) -> Any:
        ...
