"""
Test Sync Models
================
"""

from datetime import datetime, timedelta, timezone

import pandas as pd
import pytest

from conftest import T0, at, make_entity
from pollsync.errors import ConfigurationError
from pollsync.models import (
    ChangeOperation, ChangeRecord, CycleResult, CycleStatus, SyncCursor, Watermark
)
from pollsync.utils import EPOCH, parse_timestamp


class TestWatermark:

    def test_orders_by_timestamp_then_tiebreak(self):
        assert Watermark(T0, 5) < Watermark(T0, 6)
        assert Watermark(T0, 100) < Watermark(at(1), 1)
        assert max([Watermark(T0, 6), Watermark(at(1), 1), Watermark(T0, 5)]) == Watermark(at(1), 1)

    def test_epoch_sorts_below_everything(self):
        epoch = Watermark.epoch()
        assert epoch.is_epoch
        assert epoch.timestamp == EPOCH
        assert epoch < Watermark(EPOCH, 0)
        assert epoch < Watermark(T0, 1)

    def test_none_tiebreak_sorts_below_ids_at_same_instant(self):
        assert Watermark(T0, None) < Watermark(T0, -10)

    def test_naive_timestamps_are_taken_as_utc(self):
        naive = Watermark(datetime(2024, 3, 1, 12, 0, 0), 1)
        assert naive == Watermark(T0, 1)

    def test_other_zones_are_converted(self):
        plus_two = timezone(timedelta(hours=2))
        wm = Watermark(datetime(2024, 3, 1, 14, 0, 0, tzinfo=plus_two), 1)
        assert wm.timestamp == T0
        assert wm.timestamp.tzinfo == timezone.utc

    def test_dict_round_trip_keeps_microseconds(self):
        wm = Watermark(T0.replace(microsecond=123456), "abc")
        assert Watermark.from_dict(wm.to_dict()) == wm

    def test_from_empty_dict_is_epoch(self):
        assert Watermark.from_dict(None).is_epoch
        assert Watermark.from_dict({}).is_epoch

    def test_frozen(self):
        wm = Watermark(T0, 1)
        with pytest.raises(AttributeError):
            wm.tiebreak_id = 2


class TestTrackedEntity:

    def test_defaults(self):
        entity = make_entity()
        assert entity.timestamp_column == "updated_at"
        assert entity.tiebreak_column == "id"

    @pytest.mark.parametrize("kwargs", [
        {"batch_size": 0},
        {"batch_size": -5},
        {"poll_interval": 0},
        {"backoff_base": 0},
        {"backoff_cap": -1},
        {"error_threshold": 0},
        {"call_timeout": 0},
        {"ordering_columns": ("updated_at",)},
        {"query_template": "  "},
        {"delete_detection": {"delete_value": 1}},
    ])
    def test_invalid_settings_rejected(self, kwargs):
        with pytest.raises(ConfigurationError):
            make_entity(**kwargs)

    def test_empty_name_rejected(self):
        with pytest.raises(ConfigurationError):
            make_entity(name="")

    def test_backoff_is_exponential_and_capped(self):
        entity = make_entity(backoff_base=0.5, backoff_cap=3)
        assert entity.backoff_delay(0) == 0.5
        assert entity.backoff_delay(1) == 1.0
        assert entity.backoff_delay(2) == 2.0
        assert entity.backoff_delay(3) == 4.0
        assert entity.backoff_delay(10) == 4.0


class TestChangeRecord:

    def test_idempotency_key_is_stable(self):
        first = ChangeRecord("orders", {"id": 7, "v": 1}, T0, 7)
        replay = ChangeRecord("orders", {"id": 7, "v": 1}, T0, 7)
        assert first.idempotency_key == replay.idempotency_key
        assert first.idempotency_key == f"orders:{T0.isoformat()}:7"

    def test_default_operation_is_upsert(self):
        record = ChangeRecord("orders", {}, T0, 1)
        assert record.operation == ChangeOperation.UPSERT
        assert record.watermark == Watermark(T0, 1)


class TestSyncCursor:

    def test_new_cursor_starts_at_epoch(self):
        cursor = SyncCursor(entity_name="orders")
        assert cursor.watermark.is_epoch
        assert cursor.version == 0
        assert cursor.consecutive_error_count == 0

    def test_dict_round_trip(self):
        cursor = SyncCursor("orders", Watermark(T0, 3), at(5), 2, 9)
        assert SyncCursor.from_dict(cursor.to_dict()) == cursor


class TestCycleResult:

    def test_to_dict(self):
        result = CycleResult(
            entity_name="orders",
            status=CycleStatus.SUCCESS,
            started_at=T0,
            finished_at=at(1.5),
            previous_watermark=Watermark.epoch(),
            new_watermark=Watermark(T0, 4),
            fetched=4,
            applied=4
        )
        data = result.to_dict()
        assert data["status"] == "success"
        assert data["duration_seconds"] == 1.5
        assert data["new_watermark"] == {"timestamp": T0.isoformat(), "tiebreak_id": 4}
        assert data["error_kind"] is None
        assert result.succeeded


class TestParseTimestamp:

    def test_accepts_driver_representations(self):
        assert parse_timestamp(T0) == T0
        assert parse_timestamp(pd.Timestamp("2024-03-01 12:00:00")) == T0
        assert parse_timestamp("2024-03-01T12:00:00Z") == T0
        assert parse_timestamp("2024-03-01 12:00:00.000000") == T0
        assert parse_timestamp(T0.timestamp()) == T0

    def test_empty_values(self):
        assert parse_timestamp(None) is None
        assert parse_timestamp("") is None
        assert parse_timestamp(pd.NaT) is None
        assert parse_timestamp("not a date") is None
