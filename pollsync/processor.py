"""
Batch Processor
===============

Applies a sink to each record of a batch, in order.

At-least-once: if any record fails, the batch is reported as failed and
nothing is committed, so the whole batch (including the records that were
already applied) is delivered again on the next attempt. Sinks must be
idempotent.
"""

import asyncio
import logging
from typing import Any, Callable, List, Optional, Union

from .async_helpers import call_with_timeout
from .connectors.base import Sink
from .errors import SinkFailure
from .models import BatchOutcome, ChangeRecord

logger = logging.getLogger(__name__)


class BatchProcessor:
    """
    Applies one sink to ordered batches of change records.

    Args:
        sink: Sink instance or plain callable (sync or async)
        record_timeout: Seconds allowed per sink invocation (None = unbounded)
    """

    def __init__(
        self,
        sink: Union[Sink, Callable[[ChangeRecord], Any]],
        record_timeout: Optional[float] = None
    ):
        self.sink = sink
        self.record_timeout = record_timeout
        self._apply = sink.apply if hasattr(sink, "apply") else sink

    async def apply(self, records: List[ChangeRecord]) -> BatchOutcome:
        """
        Apply every record in order, stopping at the first failure.

        Args:
            records: Ordered batch from the fetcher

        Returns:
            BatchOutcome with success flag and count applied
        """
        applied = 0

        for record in records:
            try:
                result = await call_with_timeout(self._apply, record, timeout=self.record_timeout)
            except asyncio.TimeoutError:
                error = SinkFailure(
                    f"Sink timed out after {self.record_timeout}s on {record.idempotency_key}",
                    record.entity_name,
                    record
                )
                return self._failed(records, applied, record, error)
            except SinkFailure as e:
                if e.record is None:
                    e.record = record
                return self._failed(records, applied, record, e)
            except Exception as e:
                error = SinkFailure(
                    f"Sink raised {type(e).__name__} on {record.idempotency_key}: {e}",
                    record.entity_name,
                    record
                )
                error.__cause__ = e
                return self._failed(records, applied, record, error)

            if result is False:
                error = SinkFailure(
                    f"Sink rejected {record.idempotency_key}",
                    record.entity_name,
                    record
                )
                return self._failed(records, applied, record, error)

            applied += 1

        return BatchOutcome(success=True, applied=applied, total=len(records))

    @staticmethod
    def _failed(
        records: List[ChangeRecord],
        applied: int,
        record: ChangeRecord,
        error: SinkFailure
    ) -> BatchOutcome:
        logger.warning(
            f"✗ Batch for {record.entity_name} failed at record {applied + 1}/{len(records)}: {error}"
        )
        return BatchOutcome(
            success=False,
            applied=applied,
            total=len(records),
            failed_record=record,
            error=error
        )
