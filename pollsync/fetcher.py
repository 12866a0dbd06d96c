"""
Change Fetcher
==============

Pulls the next bounded batch of changes for an entity and turns connector
rows into ChangeRecords.

The fetcher does not trust the connector: every batch is checked for the
ordering contract (strictly ascending, strictly above the watermark, at most
``limit`` rows). A connector that breaks it would let the watermark skip
rows, so a violation is treated as a misconfigured entity.
"""

import logging
from typing import Any, Dict, List

from .async_helpers import call_maybe_async
from .connectors.base import SourceConnector
from .errors import PollSyncError, QueryMalformed, SourceUnavailable
from .models import ChangeOperation, ChangeRecord, TrackedEntity, Watermark
from .utils import normalize_tiebreak, parse_timestamp

logger = logging.getLogger(__name__)

# Tiebreak ids are persisted in cursors as JSON
_TIEBREAK_TYPES = (int, float, str)


class ChangeFetcher:
    """
    Fetches ordered change batches through a source connector.

    Usage:
        fetcher = ChangeFetcher(SqlSourceConnector({"url": "sqlite:///source.db"}))
        records = await fetcher.fetch(entity, cursor.watermark, entity.batch_size)
    """

    def __init__(self, connector: SourceConnector):
        self.connector = connector

    async def fetch(
        self,
        entity: TrackedEntity,
        watermark: Watermark,
        limit: int
    ) -> List[ChangeRecord]:
        """
        Fetch up to ``limit`` records strictly after ``watermark``.

        Args:
            entity: Tracked entity
            watermark: Last committed watermark (exclusive lower bound)
            limit: Maximum records

        Returns:
            ChangeRecords ascending by (timestamp, tiebreak)

        Raises:
            SourceUnavailable: source unreachable (retryable)
            QueryMalformed: query or connector contract broken (fatal)
        """
        try:
            rows = await call_maybe_async(self.connector.fetch_rows, entity, watermark, limit)
        except PollSyncError:
            raise
        except Exception as e:
            raise SourceUnavailable(
                f"Source connector failed for {entity.name}: {type(e).__name__}: {e}",
                entity.name
            ) from e

        return self.to_records(entity, watermark, limit, rows or [])

    def to_records(
        self,
        entity: TrackedEntity,
        watermark: Watermark,
        limit: int,
        rows: List[Dict[str, Any]]
    ) -> List[ChangeRecord]:
        """Convert and validate one batch of connector rows."""
        if len(rows) > limit:
            raise QueryMalformed(
                f"Connector returned {len(rows)} rows for {entity.name}, limit was {limit}",
                entity.name
            )

        records: List[ChangeRecord] = []
        previous = watermark

        for row in rows:
            record = self._to_record(entity, row)
            current = record.watermark
            try:
                ascending = current > previous
            except TypeError:
                raise QueryMalformed(
                    f"Tiebreak ids for {entity.name} are not mutually comparable: "
                    f"{previous.tiebreak_id!r} vs {current.tiebreak_id!r}",
                    entity.name
                )
            if not ascending:
                if previous == watermark:
                    problem = f"row {current} is not after watermark {watermark}"
                else:
                    problem = f"row {current} does not follow {previous}"
                raise QueryMalformed(
                    f"Ordering contract broken for {entity.name}: {problem}",
                    entity.name
                )
            records.append(record)
            previous = current

        return records

    def _to_record(self, entity: TrackedEntity, row: Dict[str, Any]) -> ChangeRecord:
        ts_column, tb_column = entity.ordering_columns
        if ts_column not in row or tb_column not in row:
            raise QueryMalformed(
                f"Row for {entity.name} is missing ordering column(s) {ts_column}/{tb_column}",
                entity.name
            )

        timestamp = parse_timestamp(row[ts_column])
        tiebreak_id = normalize_tiebreak(row[tb_column])
        if timestamp is None or tiebreak_id is None:
            raise QueryMalformed(
                f"Row for {entity.name} has a null or unparseable ordering value: "
                f"{ts_column}={row[ts_column]!r}, {tb_column}={row[tb_column]!r}",
                entity.name
            )
        if isinstance(tiebreak_id, bool) or not isinstance(tiebreak_id, _TIEBREAK_TYPES):
            raise QueryMalformed(
                f"Unsupported tiebreak type for {entity.name}: "
                f"{type(tiebreak_id).__name__} ({tb_column}={tiebreak_id!r})",
                entity.name
            )

        return ChangeRecord(
            entity_name=entity.name,
            payload=dict(row),
            timestamp=timestamp,
            tiebreak_id=tiebreak_id,
            operation=self._detect_operation(entity, row)
        )

    @staticmethod
    def _detect_operation(entity: TrackedEntity, row: Dict[str, Any]) -> ChangeOperation:
        """Soft-delete rows (tombstones) are marked as deletes; everything else is an upsert."""
        rule = entity.delete_detection
        if not rule:
            return ChangeOperation.UPSERT

        column = rule.get("column")
        if column not in row:
            return ChangeOperation.UPSERT

        value = row[column]
        if "delete_value" in rule:
            is_deleted = value == rule["delete_value"]
        else:
            is_deleted = bool(value)
        return ChangeOperation.DELETE if is_deleted else ChangeOperation.UPSERT
