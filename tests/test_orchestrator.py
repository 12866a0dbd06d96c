"""
Test Sync Orchestrator
======================

Cycle semantics, failure recovery and scheduling.
"""

import asyncio

import pytest

from conftest import T0, RecordingSink, at, make_entity, make_row
from pollsync.connectors.memory_connector import MemorySourceConnector
from pollsync.cursor_store import InMemoryCursorStore
from pollsync.errors import (
    ConfigurationError, QueryMalformed, SinkFailure, SourceUnavailable,
    StorageUnavailable, UnexpectedSyncError, WatermarkConflict
)
from pollsync.health import HealthMonitor
from pollsync.models import CycleStatus, SyncState, Watermark
from pollsync.observability.metrics import MetricsCollector
from pollsync.orchestrator import SyncOrchestrator


def run_cycles(orchestrator, name, count):
    async def _run():
        return [await orchestrator.run_cycle(name) for _ in range(count)]
    return asyncio.run(_run())


def committed(store, name):
    return store.get(name).watermark


class FlakyStore(InMemoryCursorStore):
    """Cursor store whose commit/record_error can be made to fail."""

    def __init__(self):
        super().__init__()
        self.fail_commits = 0
        self.fail_record_error = False

    def commit(self, entity_name, new_watermark, expected_version=None):
        if self.fail_commits:
            self.fail_commits -= 1
            raise StorageUnavailable("cursor database down", entity_name)
        return super().commit(entity_name, new_watermark, expected_version)

    def record_error(self, entity_name):
        if self.fail_record_error:
            raise StorageUnavailable("cursor database down", entity_name)
        return super().record_error(entity_name)


class BrokenCursorStore(InMemoryCursorStore):
    """Returns garbage instead of a cursor for one entity."""

    def __init__(self, broken_entity):
        super().__init__()
        self.broken_entity = broken_entity

    def get(self, entity_name):
        if entity_name == self.broken_entity:
            return None
        return super().get(entity_name)


class CrashingOrchestrator(SyncOrchestrator):
    """Scheduling blows up for one entity, killing its loop."""

    def next_delay(self, runtime, result, fast_cycles):
        if runtime.entity.name == "leads":
            raise RuntimeError("scheduler bug")
        return super().next_delay(runtime, result, fast_cycles)


# =========================================
# REGISTRATION
# =========================================

class TestRegistration:

    def test_register_creates_epoch_cursor(self, orchestrator, store, source, sink):
        orchestrator.register(make_entity(), source, sink)
        cursor = store.get("orders")
        assert cursor.version == 1
        assert cursor.watermark.is_epoch
        assert orchestrator.state("orders") == SyncState.IDLE

    def test_duplicate_name_rejected(self, orchestrator, source, sink):
        orchestrator.register(make_entity(), source, sink)
        with pytest.raises(ConfigurationError):
            orchestrator.register(make_entity(), source, sink)

    def test_unknown_entity(self, orchestrator):
        with pytest.raises(ConfigurationError):
            orchestrator.state("missing")


# =========================================
# CYCLE SEMANTICS
# =========================================

class TestCycle:

    def test_happy_path_commits_max_watermark(self, orchestrator, store, source, sink):
        for row in [make_row(1, 0), make_row(2, 5), make_row(3, 5)]:
            source.upsert(row)
        orchestrator.register(make_entity(), source, sink)

        [result] = run_cycles(orchestrator, "orders", 1)

        assert result.status == CycleStatus.SUCCESS
        assert result.fetched == 3
        assert result.applied == 3
        assert result.previous_watermark.is_epoch
        assert result.new_watermark == Watermark(at(5), 3)
        assert committed(store, "orders") == Watermark(at(5), 3)
        assert orchestrator.state("orders") == SyncState.IDLE

    def test_empty_fetch_is_noop(self, orchestrator, store, source, sink):
        orchestrator.register(make_entity(), source, sink)
        [result] = run_cycles(orchestrator, "orders", 1)

        assert result.status == CycleStatus.NOOP
        assert result.succeeded
        assert store.get("orders").version == 1

    def test_noop_resets_error_count(self, orchestrator, store, source, sink):
        orchestrator.register(make_entity(), source, sink)
        source.fail_next()
        failed, noop = run_cycles(orchestrator, "orders", 2)

        assert failed.consecutive_errors == 1
        assert noop.status == CycleStatus.NOOP
        assert store.get("orders").consecutive_error_count == 0
        assert committed(store, "orders").is_epoch

    def test_tiebreak_scenario_batch_size_one(self, orchestrator, store, source, sink):
        # Watermark (T0, 100); rows (T0, 101) and (T1, 50)
        source.upsert(make_row(101, 0))
        source.upsert(make_row(50, 60))
        source.upsert(make_row(99, 0))
        store.ensure("orders")
        store.commit("orders", Watermark(T0, 100), 1)
        orchestrator.register(make_entity(batch_size=1), source, sink)

        first, second, third = run_cycles(orchestrator, "orders", 3)

        assert first.new_watermark == Watermark(T0, 101)
        assert second.new_watermark == Watermark(at(60), 50)
        assert third.status == CycleStatus.NOOP
        assert sink.applied_ids == [101, 50]

    def test_same_timestamp_boundary_does_not_skip(self, orchestrator, store, source, sink):
        source.upsert(make_row(5, 0))
        source.upsert(make_row(6, 0))
        orchestrator.register(make_entity(batch_size=1), source, sink)

        first, second = run_cycles(orchestrator, "orders", 2)

        assert first.new_watermark == Watermark(T0, 5)
        assert second.new_watermark == Watermark(T0, 6)
        assert sink.applied_ids == [5, 6]

    def test_sink_failure_leaves_watermark_and_replays_batch(self, orchestrator, store, source):
        for i in range(1, 6):
            source.upsert(make_row(i, i))
        attempts = {"count": 0}

        def fail_third_once(record):
            if record.tiebreak_id == 3 and attempts["count"] == 0:
                attempts["count"] += 1
                return True
            return False

        sink = RecordingSink(fail_when=fail_third_once)
        orchestrator.register(make_entity(), source, sink)

        failed, retried = run_cycles(orchestrator, "orders", 2)

        assert failed.status == CycleStatus.FAILED
        assert isinstance(failed.error, SinkFailure)
        assert failed.applied == 2
        assert failed.new_watermark.is_epoch
        assert sink.applied_ids[:3] == [1, 2, 3]

        assert retried.status == CycleStatus.SUCCESS
        assert retried.fetched == 5
        assert sink.applied_ids[3:] == [1, 2, 3, 4, 5]
        assert committed(store, "orders") == Watermark(at(5), 5)

        single_pass = RecordingSink()
        for record in sink.calls:
            single_pass.apply(record)
        assert sink.state == single_pass.state

    def test_source_outage_keeps_watermark(self, orchestrator, store, source, sink):
        source.upsert(make_row(1, 0))
        orchestrator.register(make_entity(), source, sink)
        source.fail_next()

        failed, recovered = run_cycles(orchestrator, "orders", 2)

        assert failed.status == CycleStatus.FAILED
        assert isinstance(failed.error, SourceUnavailable)
        assert orchestrator.state("orders") == SyncState.IDLE
        assert recovered.status == CycleStatus.SUCCESS
        assert committed(store, "orders") == Watermark(T0, 1)

    def test_commit_outage_replays_batch(self, source, sink):
        store = FlakyStore()
        orchestrator = SyncOrchestrator(store, health_monitor=HealthMonitor())
        source.upsert(make_row(1, 0))
        orchestrator.register(make_entity(), source, sink)
        store.fail_commits = 1

        failed, retried = run_cycles(orchestrator, "orders", 2)

        assert isinstance(failed.error, StorageUnavailable)
        assert retried.status == CycleStatus.SUCCESS
        assert sink.applied_ids == [1, 1]
        assert committed(store, "orders") == Watermark(T0, 1)

    def test_error_count_falls_back_to_memory_when_store_is_down(self, source, sink):
        store = FlakyStore()
        orchestrator = SyncOrchestrator(store, health_monitor=HealthMonitor())
        orchestrator.register(make_entity(), source, sink)
        store.fail_record_error = True
        source.fail_next(times=2)

        first, second = run_cycles(orchestrator, "orders", 2)
        assert first.consecutive_errors == 1
        assert second.consecutive_errors == 2

    def test_query_malformed_disables_entity(self, store, source, sink):
        alerts = []
        monitor = HealthMonitor(alert_sink=alerts.append)
        orchestrator = SyncOrchestrator(store, health_monitor=monitor)
        orchestrator.register(make_entity(), source, sink)
        source.upsert(make_row(1, 0))
        source.fail_next(QueryMalformed("no such column: updated_at", "orders"))

        fatal, skipped = run_cycles(orchestrator, "orders", 2)

        assert fatal.status == CycleStatus.FATAL
        assert skipped is fatal
        assert orchestrator.is_disabled("orders")
        assert orchestrator.state("orders") == SyncState.DISABLED
        assert source.fetch_count == 1
        assert [a.kind for a in alerts] == ["fatal_error"]
        assert committed(store, "orders").is_epoch

        orchestrator.enable("orders")
        [result] = run_cycles(orchestrator, "orders", 1)
        assert result.status == CycleStatus.SUCCESS
        assert not orchestrator.is_disabled("orders")

    def test_stale_orchestrator_gets_conflict(self, source, sink):
        store = InMemoryCursorStore()
        orchestrator = SyncOrchestrator(store, health_monitor=HealthMonitor())
        source.upsert(make_row(1, 0))

        def race(record):
            # Another instance commits further ahead while this batch is in flight
            current = store.get("orders")
            store.commit("orders", Watermark(at(100), 1), current.version)
            return True

        orchestrator.register(make_entity(), source, race)
        [result] = run_cycles(orchestrator, "orders", 1)

        assert result.status == CycleStatus.FAILED
        assert isinstance(result.error, WatermarkConflict)
        assert committed(store, "orders") == Watermark(at(100), 1)

    def test_watermark_is_monotonic_across_errors(self, orchestrator, store, source, sink):
        orchestrator.register(make_entity(batch_size=2), source, sink)
        history = []

        async def scenario():
            for step in range(6):
                source.upsert(make_row(step + 1, step))
                if step % 2:
                    source.fail_next()
                await orchestrator.run_cycle("orders")
                history.append(committed(store, "orders"))
            await orchestrator.run_cycle("orders")
            history.append(committed(store, "orders"))

        asyncio.run(scenario())
        assert history == sorted(history)
        assert history[-1] == Watermark(at(5), 6)

    def test_no_loss_under_interleaved_writes(self, orchestrator, store, source, sink):
        orchestrator.register(make_entity(batch_size=3), source, sink)

        async def scenario():
            next_id = 1
            for step in range(8):
                for _ in range(2):
                    source.upsert(make_row(next_id, step // 3))
                    next_id += 1
                await orchestrator.run_cycle("orders")
            for _ in range(10):
                await orchestrator.run_cycle("orders")

        asyncio.run(scenario())
        watermark = committed(store, "orders")
        covered = {
            row["id"] for row in source.all_rows()
            if Watermark(row["updated_at"], row["id"]) <= watermark
        }
        assert covered == {i for i in range(1, 17)}
        assert set(sink.applied_ids) == covered

    def test_cycle_timeout_maps_to_source_unavailable(self, orchestrator, store, sink):
        class SlowSource(MemorySourceConnector):
            async def fetch_rows(self, entity, watermark, limit):
                await asyncio.sleep(1)
                return []

        orchestrator.register(make_entity(call_timeout=0.2), SlowSource(), sink)
        [result] = run_cycles(orchestrator, "orders", 1)
        assert isinstance(result.error, SourceUnavailable)

    def test_unexpected_error_is_a_retryable_failure(self, source, sink):
        store = BrokenCursorStore("orders")
        orchestrator = SyncOrchestrator(store, health_monitor=HealthMonitor())
        orchestrator.register(make_entity(), source, sink)

        result = run_cycles(orchestrator, "orders", 1)[0]

        assert result.status == CycleStatus.FAILED
        assert isinstance(result.error, UnexpectedSyncError)
        assert result.error.kind == "unexpected_error"
        assert isinstance(result.error.__cause__, AttributeError)
        assert result.consecutive_errors == 1
        assert orchestrator.state("orders") == SyncState.ERROR
        assert not orchestrator.is_disabled("orders")

    def test_cancelled_cycle_commits_nothing(self, orchestrator, store, source):
        source.upsert(make_row(1, 0))
        async def slow_sink(record):
            await asyncio.sleep(10)

        orchestrator.register(make_entity(call_timeout=30), source, slow_sink)

        async def scenario():
            task = asyncio.create_task(orchestrator.run_cycle("orders"))
            await asyncio.sleep(0.2)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())
        assert committed(store, "orders").is_epoch
        assert orchestrator.state("orders") == SyncState.ERROR


# =========================================
# SCHEDULING
# =========================================

class TestScheduling:

    def test_backoff_delay_grows_with_errors(self, orchestrator, source, sink):
        entity = make_entity(backoff_base=0.5, backoff_cap=2)
        runtime = orchestrator.register(entity, source, sink)
        source.fail_next(times=4)

        results = run_cycles(orchestrator, "orders", 4)
        delays = [orchestrator.next_delay(runtime, r, 0) for r in results]
        assert delays == [1.0, 2.0, 2.0, 2.0]

    def test_full_batch_is_a_fast_cycle_until_limit(self, orchestrator, source, sink):
        entity = make_entity(batch_size=1, max_fast_cycles=2, poll_interval=7.0)
        runtime = orchestrator.register(entity, source, sink)
        source.upsert(make_row(1, 0))

        [result] = run_cycles(orchestrator, "orders", 1)
        assert result.drained
        assert orchestrator.next_delay(runtime, result, 0) == 0.0
        assert orchestrator.next_delay(runtime, result, 1) == 0.0
        assert orchestrator.next_delay(runtime, result, 2) == 7.0

    def test_run_drains_backlog_then_stops(self, store, source, sink):
        orchestrator = SyncOrchestrator(store, health_monitor=HealthMonitor())
        for i in range(1, 8):
            source.upsert(make_row(i, i))
        orchestrator.register(make_entity(batch_size=2, poll_interval=60.0), source, sink)

        async def scenario():
            runner = asyncio.create_task(orchestrator.run())
            for _ in range(200):
                await asyncio.sleep(0.01)
                if committed(store, "orders") == Watermark(at(7), 7):
                    break
            orchestrator.stop()
            await asyncio.wait_for(runner, timeout=5)

        asyncio.run(scenario())
        assert sink.applied_ids == [1, 2, 3, 4, 5, 6, 7]

    def test_trigger_wakes_sleeping_loop(self, store, source, sink):
        orchestrator = SyncOrchestrator(store, health_monitor=HealthMonitor())
        orchestrator.register(make_entity(poll_interval=60.0), source, sink)

        async def scenario():
            runner = asyncio.create_task(orchestrator.run())
            await asyncio.sleep(0.1)
            source.upsert(make_row(1, 0))
            orchestrator.trigger("orders")
            for _ in range(200):
                await asyncio.sleep(0.01)
                if sink.applied_ids:
                    break
            orchestrator.stop()
            await asyncio.wait_for(runner, timeout=5)

        asyncio.run(scenario())
        assert sink.applied_ids == [1]

    def test_entities_run_independently(self, store, sink):
        orchestrator = SyncOrchestrator(store, health_monitor=HealthMonitor())
        healthy = MemorySourceConnector([make_row(1, 0)])
        broken = MemorySourceConnector([make_row(1, 0)])
        broken.fail_next(QueryMalformed("bad query"))
        orchestrator.register(make_entity("orders"), healthy, sink)
        orchestrator.register(make_entity("leads"), broken, sink)

        results = asyncio.run(orchestrator.run_once())

        assert results["orders"].status == CycleStatus.SUCCESS
        assert results["leads"].status == CycleStatus.FATAL
        assert committed(store, "orders") == Watermark(T0, 1)
        assert asyncio.run(orchestrator.run_once()) == {"orders": orchestrator.last_result("orders")}

    def test_disabled_loop_exits(self, store, sink):
        orchestrator = SyncOrchestrator(store, health_monitor=HealthMonitor())
        broken = MemorySourceConnector()
        broken.fail_next(QueryMalformed("bad query"))
        orchestrator.register(make_entity(), broken, sink)

        asyncio.run(asyncio.wait_for(orchestrator.run(), timeout=5))
        assert orchestrator.is_disabled("orders")

    def test_metrics_are_recorded(self, store, source, sink):
        metrics = MetricsCollector(backend="memory")
        orchestrator = SyncOrchestrator(store, health_monitor=HealthMonitor(), metrics=metrics)
        source.upsert(make_row(1, 0))
        orchestrator.register(make_entity(), source, sink)

        run_cycles(orchestrator, "orders", 1)

        names = {m["metric_name"] for m in metrics.get_memory_metrics()}
        assert "pollsync_cycles_total" in names
        assert "pollsync_records_applied_total" in names
        assert "pollsync_cycle_duration_seconds" in names

    def test_unexpected_error_leaves_other_entities_running(self, sink):
        store = BrokenCursorStore("leads")
        orchestrator = SyncOrchestrator(store, health_monitor=HealthMonitor())
        orders = MemorySourceConnector()
        orchestrator.register(make_entity("orders", poll_interval=0.05), orders, sink)
        orchestrator.register(make_entity("leads", poll_interval=0.05), MemorySourceConnector(), RecordingSink())

        async def scenario():
            runner = asyncio.create_task(orchestrator.run())
            await asyncio.sleep(0.1)
            orders.upsert(make_row(1, 0))
            for _ in range(200):
                await asyncio.sleep(0.01)
                if sink.applied_ids:
                    break
            orchestrator.stop()
            await asyncio.wait_for(runner, timeout=5)
            return runner

        runner = asyncio.run(scenario())
        assert runner.exception() is None
        assert sink.applied_ids == [1]
        assert orchestrator.last_result("leads").status == CycleStatus.FAILED
        assert orchestrator.last_result("leads").error.kind == "unexpected_error"

    def test_crashed_loop_does_not_stop_the_others(self, store, sink):
        orchestrator = CrashingOrchestrator(store, health_monitor=HealthMonitor())
        orders = MemorySourceConnector()
        orchestrator.register(make_entity("orders", poll_interval=0.05), orders, sink)
        orchestrator.register(make_entity("leads", poll_interval=0.05), MemorySourceConnector(), RecordingSink())

        async def scenario():
            runner = asyncio.create_task(orchestrator.run())
            await asyncio.sleep(0.1)
            orders.upsert(make_row(1, 0))
            for _ in range(200):
                await asyncio.sleep(0.01)
                if sink.applied_ids:
                    break
            orchestrator.stop()
            await asyncio.wait_for(runner, timeout=5)

        asyncio.run(scenario())
        assert sink.applied_ids == [1]
        assert committed(store, "orders") == Watermark(T0, 1)
