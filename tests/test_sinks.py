"""
Test Sinks
==========
"""

import json
import logging
from unittest import mock

import pytest

from conftest import T0
from pollsync.connectors import minio_sink as minio_module
from pollsync.connectors.minio_sink import MinIOSink
from pollsync.connectors.sinks import CallableSink, LoggingSink
from pollsync.models import ChangeOperation, ChangeRecord

CONNECTION = {
    "endpoint": "localhost:9000",
    "access_key": "minioadmin",
    "secret_key": "minioadmin123",
    "bucket": "raw-data",
    "prefix": "pollsync"
}


def make_record(tiebreak_id=7, operation=ChangeOperation.UPSERT):
    return ChangeRecord(
        entity_name="orders",
        payload={"id": tiebreak_id, "status": "open"},
        timestamp=T0,
        tiebreak_id=tiebreak_id,
        operation=operation
    )


@pytest.fixture
def minio_client():
    with mock.patch.object(minio_module, "Minio") as minio_cls:
        client = minio_cls.return_value
        client.bucket_exists.return_value = True
        yield client


class TestMinIOSink:

    def test_object_name_is_stable_per_record_version(self):
        sink = MinIOSink(CONNECTION)
        assert sink.object_name(make_record()) == "pollsync/orders/7/20240301T120000000000Z.json"
        assert sink.object_name(make_record()) == sink.object_name(make_record())

    def test_unsafe_characters_in_tiebreak(self):
        sink = MinIOSink(CONNECTION)
        assert "/a_b/" in sink.object_name(make_record(tiebreak_id="a/b"))

    def test_apply_uploads_json(self, minio_client):
        sink = MinIOSink(CONNECTION)
        path = sink.apply(make_record(operation=ChangeOperation.DELETE))

        assert path == "s3://raw-data/pollsync/orders/7/20240301T120000000000Z.json"
        kwargs = minio_client.put_object.call_args.kwargs
        assert kwargs["bucket_name"] == "raw-data"
        assert kwargs["content_type"] == "application/json"

        body = json.loads(kwargs["data"].getvalue())
        assert body["op"] == "delete"
        assert body["status"] == "open"
        assert body["gpk"] == make_record().idempotency_key
        assert kwargs["length"] == len(kwargs["data"].getvalue())

    def test_bucket_created_when_missing(self, minio_client):
        minio_client.bucket_exists.return_value = False
        MinIOSink(CONNECTION).connect()
        minio_client.make_bucket.assert_called_once_with("raw-data")

    def test_csv_format(self, minio_client):
        sink = MinIOSink({**CONNECTION, "file_format": "csv"})
        sink.apply(make_record())

        kwargs = minio_client.put_object.call_args.kwargs
        lines = kwargs["data"].getvalue().decode("utf-8").splitlines()
        assert lines[0].split(",")[:2] == ["id", "status"]
        assert kwargs["content_type"] == "text/csv"

    def test_unsupported_format(self):
        with pytest.raises(ValueError):
            MinIOSink({**CONNECTION, "file_format": "parquet"})


class TestBasicSinks:

    def test_callable_sink(self):
        seen = []
        sink = CallableSink(seen.append)
        sink.apply(make_record())
        assert sink.name == "append"
        assert seen == [make_record()]

    def test_logging_sink(self, caplog):
        sink = LoggingSink()
        with caplog.at_level(logging.INFO, logger="pollsync.connectors.sinks"):
            assert sink.apply(make_record()) is True
        assert sink.count == 1
        assert "orders upsert 7" in caplog.text
