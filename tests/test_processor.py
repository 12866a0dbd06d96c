"""
Test Batch Processor
====================
"""

import asyncio
import time

from conftest import RecordingSink, at
from pollsync.connectors.sinks import CallableSink, LoggingSink
from pollsync.errors import SinkFailure
from pollsync.models import ChangeRecord
from pollsync.processor import BatchProcessor


def make_records(count):
    return [ChangeRecord("orders", {"id": i}, at(i), i) for i in range(1, count + 1)]


def run(processor, records):
    return asyncio.run(processor.apply(records))


class TestBatchProcessor:

    def test_applies_every_record_in_order(self):
        sink = RecordingSink()
        outcome = run(BatchProcessor(sink), make_records(5))

        assert outcome.success
        assert outcome.applied == 5
        assert outcome.total == 5
        assert sink.applied_ids == [1, 2, 3, 4, 5]

    def test_stops_at_first_failure(self):
        sink = RecordingSink(fail_when=lambda r: r.tiebreak_id == 3)
        outcome = run(BatchProcessor(sink), make_records(5))

        assert not outcome.success
        assert outcome.applied == 2
        assert outcome.failed_record.tiebreak_id == 3
        assert isinstance(outcome.error, SinkFailure)
        assert outcome.error.record.tiebreak_id == 3
        assert sink.applied_ids == [1, 2, 3]

    def test_false_return_is_failure(self):
        sink = CallableSink(lambda record: record.tiebreak_id != 2)
        outcome = run(BatchProcessor(sink), make_records(3))
        assert not outcome.success
        assert outcome.applied == 1

    def test_plain_async_function_as_sink(self):
        seen = []

        async def apply(record):
            await asyncio.sleep(0)
            seen.append(record.tiebreak_id)

        outcome = run(BatchProcessor(apply), make_records(3))
        assert outcome.success
        assert seen == [1, 2, 3]

    def test_none_return_counts_as_success(self):
        outcome = run(BatchProcessor(lambda record: None), make_records(2))
        assert outcome.success
        assert outcome.applied == 2

    def test_slow_sink_times_out(self):
        def slow(record):
            time.sleep(0.5)

        outcome = run(BatchProcessor(slow, record_timeout=0.05), make_records(2))
        assert not outcome.success
        assert outcome.applied == 0
        assert "timed out" in str(outcome.error)

    def test_sink_failure_keeps_its_message(self):
        def reject(record):
            raise SinkFailure("downstream said no", record.entity_name)

        outcome = run(BatchProcessor(reject), make_records(1))
        assert str(outcome.error) == "downstream said no"
        assert outcome.error.record.tiebreak_id == 1

    def test_empty_batch(self):
        outcome = run(BatchProcessor(RecordingSink()), [])
        assert outcome.success
        assert outcome.applied == 0

    def test_logging_sink_counts(self):
        sink = LoggingSink()
        run(BatchProcessor(sink), make_records(4))
        assert sink.count == 4
