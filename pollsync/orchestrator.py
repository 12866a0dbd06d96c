"""
Sync Orchestrator
=================

Drives the fetch -> process -> commit loop for every tracked entity.

Each entity runs in its own asyncio task; cycles of one entity are strictly
sequential, cycles of different entities interleave freely. Per cycle:

1. Read the cursor (watermark, error count, version)
2. Fetch up to ``batch_size`` records strictly after the watermark
3. Nothing fetched: no-op cycle, wait ``poll_interval``
4. Apply the batch through the batch processor
5. Batch fully applied: commit the largest record watermark (compare-and-set
   on the cursor version)
6. Any failure: record the error, keep the watermark, back off
   ``backoff_base * 2 ** min(error_count, backoff_cap)``
7. Full batch: run the next cycle immediately, up to ``max_fast_cycles`` in a row

``QueryMalformed`` (and any other non-retryable error) disables the entity
until ``enable()`` is called.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .async_helpers import call_with_timeout
from .connectors.base import SourceConnector
from .cursor_store import CursorStore
from .errors import (
    ConfigurationError, PollSyncError, SourceUnavailable, StorageUnavailable, UnexpectedSyncError
)
from .fetcher import ChangeFetcher
from .health import HealthMonitor
from .models import CycleResult, CycleStatus, SyncState, TrackedEntity, Watermark
from .observability.logging import StructuredLogger, log_context
from .processor import BatchProcessor
from .utils import generate_cycle_id, utcnow

logger = StructuredLogger(__name__)


@dataclass
class EntityRuntime:
    """Mutable per-entity state owned by the orchestrator."""

    entity: TrackedEntity
    fetcher: ChangeFetcher
    processor: BatchProcessor
    lock: asyncio.Lock
    state: SyncState = SyncState.IDLE
    disabled: bool = False
    watermark: Watermark = field(default_factory=Watermark.epoch)
    error_count: int = 0
    last_result: Optional[CycleResult] = None
    wake: Optional[asyncio.Event] = None


class SyncOrchestrator:
    """
    Schedules sync cycles for registered entities.

    Usage:
        orchestrator = SyncOrchestrator(JsonFileCursorStore("state/cursors.json"))
        orchestrator.register(entity, SqlSourceConnector(config), sink)
        asyncio.run(orchestrator.run())
    """

    def __init__(
        self,
        cursor_store: CursorStore,
        health_monitor: Optional[HealthMonitor] = None,
        metrics: Optional[Any] = None,
        health_check_interval: float = 60.0,
        sleep: Callable = asyncio.sleep
    ):
        """
        Args:
            cursor_store: Watermark persistence
            health_monitor: Receives every cycle result (a silent one is created if omitted)
            metrics: Optional MetricsCollector
            health_check_interval: Seconds between staleness re-checks while running
            sleep: Coroutine used to yield between fast cycles
        """
        self.cursor_store = cursor_store
        self.health_monitor = health_monitor or HealthMonitor(metrics=metrics)
        self.metrics = metrics
        self.health_check_interval = health_check_interval
        self._sleep = sleep

        self._runtimes: Dict[str, EntityRuntime] = {}
        self._stopping = False
        self._stop_event: Optional[asyncio.Event] = None

    # =========================================
    # REGISTRATION
    # =========================================

    def register(self, entity: TrackedEntity, connector: SourceConnector, sink: Any) -> EntityRuntime:
        """
        Register a tracked entity with its source connector and sink.

        Creates the entity's cursor at the epoch if it has none yet.

        Raises:
            ConfigurationError: an entity with the same name is already registered
        """
        if entity.name in self._runtimes:
            raise ConfigurationError(f"Entity '{entity.name}' is already registered", entity.name)

        cursor = self.cursor_store.ensure(entity.name)

        runtime = EntityRuntime(
            entity=entity,
            fetcher=ChangeFetcher(connector),
            processor=BatchProcessor(sink, record_timeout=entity.call_timeout),
            lock=asyncio.Lock(),
            watermark=cursor.watermark,
            error_count=cursor.consecutive_error_count
        )
        self._runtimes[entity.name] = runtime
        self.health_monitor.register(entity)

        logger.info(
            f"Registered entity {entity.name} at watermark {cursor.watermark}",
            extra={"entity_name": entity.name, "batch_size": entity.batch_size}
        )
        return runtime

    @property
    def entities(self) -> List[TrackedEntity]:
        return [runtime.entity for runtime in self._runtimes.values()]

    def _runtime(self, entity_name: str) -> EntityRuntime:
        runtime = self._runtimes.get(entity_name)
        if runtime is None:
            raise ConfigurationError(f"Unknown entity '{entity_name}'", entity_name)
        return runtime

    def state(self, entity_name: str) -> SyncState:
        return self._runtime(entity_name).state

    def is_disabled(self, entity_name: str) -> bool:
        return self._runtime(entity_name).disabled

    def last_result(self, entity_name: str) -> Optional[CycleResult]:
        return self._runtime(entity_name).last_result

    def enable(self, entity_name: str):
        """Re-enable an entity disabled by a fatal error (after fixing its configuration)."""
        runtime = self._runtime(entity_name)
        if runtime.disabled:
            logger.info(f"Re-enabling entity {entity_name}")
        runtime.disabled = False
        self._set_state(runtime, SyncState.IDLE)

    def _set_state(self, runtime: EntityRuntime, state: SyncState):
        runtime.state = state
        self.health_monitor.update_state(runtime.entity.name, state)

    # =========================================
    # SINGLE CYCLE
    # =========================================

    async def run_cycle(self, entity_name: str) -> CycleResult:
        """
        Run exactly one cycle for an entity.

        Never raises for collaborator failures; they are reported in the
        returned CycleResult. A disabled entity is not cycled and its last
        (fatal) result is returned.
        """
        runtime = self._runtime(entity_name)

        async with runtime.lock:
            if runtime.disabled:
                logger.warning(f"Entity {entity_name} is disabled; skipping cycle")
                return runtime.last_result

            cycle_id = generate_cycle_id()
            with log_context(entity=entity_name, cycle_id=cycle_id):
                result = await self._execute_cycle(runtime, cycle_id)
                runtime.last_result = result
                await self._observe(runtime, result)
                return result

    async def _execute_cycle(self, runtime: EntityRuntime, cycle_id: str) -> CycleResult:
        entity = runtime.entity
        name = entity.name
        started_at = utcnow()
        previous = runtime.watermark
        fetched = 0
        applied = 0

        try:
            cursor = await self._call_store(entity, self.cursor_store.get, name)
            previous = runtime.watermark = cursor.watermark
            logger.log_cycle_start(name, str(previous))

            self._set_state(runtime, SyncState.FETCHING)
            records = await self._fetch(runtime, previous)
            fetched = len(records)

            if not records:
                if cursor.consecutive_error_count or runtime.error_count:
                    self._set_state(runtime, SyncState.COMMITTING)
                    await self._call_store(entity, self.cursor_store.commit, name, previous, cursor.version)
                new_watermark = previous
                status = CycleStatus.NOOP
            else:
                self._set_state(runtime, SyncState.PROCESSING)
                outcome = await runtime.processor.apply(records)
                applied = outcome.applied
                if not outcome.success:
                    raise outcome.error

                new_watermark = max(record.watermark for record in records)
                self._set_state(runtime, SyncState.COMMITTING)
                stored = await self._call_store(
                    entity, self.cursor_store.commit, name, new_watermark, cursor.version
                )
                runtime.watermark = stored.watermark
                status = CycleStatus.SUCCESS

        except asyncio.CancelledError:
            self._set_state(runtime, SyncState.ERROR)
            logger.warning(f"Cycle for {name} cancelled; watermark stays at {previous}")
            raise
        except PollSyncError as e:
            return await self._handle_failure(runtime, e, cycle_id, started_at, previous, fetched, applied)
        except Exception as e:
            logger.error(f"Unexpected error in cycle for {name}", exception=e)
            error = UnexpectedSyncError(f"{type(e).__name__}: {e}", name)
            error.__cause__ = e
            return await self._handle_failure(runtime, error, cycle_id, started_at, previous, fetched, applied)

        runtime.error_count = 0
        self._set_state(runtime, SyncState.IDLE)
        return CycleResult(
            entity_name=name,
            status=status,
            started_at=started_at,
            finished_at=utcnow(),
            previous_watermark=previous,
            new_watermark=new_watermark,
            fetched=fetched,
            applied=applied,
            consecutive_errors=0,
            cycle_id=cycle_id,
            drained=fetched == entity.batch_size
        )

    async def _handle_failure(
        self,
        runtime: EntityRuntime,
        error: PollSyncError,
        cycle_id: str,
        started_at: datetime,
        previous: Watermark,
        fetched: int,
        applied: int
    ) -> CycleResult:
        entity = runtime.entity
        name = entity.name

        try:
            error_count = await self._call_store(entity, self.cursor_store.record_error, name)
        except PollSyncError as store_error:
            error_count = runtime.error_count + 1
            logger.warning(
                f"Could not record error for {name} ({store_error}); using in-memory count {error_count}"
            )
        runtime.error_count = error_count

        fatal = not error.retryable
        if fatal:
            runtime.disabled = True
            self._set_state(runtime, SyncState.DISABLED)
            logger.critical(
                f"✗ Entity {name} disabled after {error.kind}: {error}",
                extra={"error_kind": error.kind}
            )
        else:
            self._set_state(runtime, SyncState.ERROR)
            logger.error(
                f"✗ Cycle for {name} failed ({error.kind}), error #{error_count}: {error}",
                extra={"error_kind": error.kind}
            )

        return CycleResult(
            entity_name=name,
            status=CycleStatus.FATAL if fatal else CycleStatus.FAILED,
            started_at=started_at,
            finished_at=utcnow(),
            previous_watermark=previous,
            new_watermark=previous,
            fetched=fetched,
            applied=applied,
            consecutive_errors=error_count,
            error=error,
            cycle_id=cycle_id
        )

    async def _fetch(self, runtime: EntityRuntime, watermark: Watermark):
        entity = runtime.entity
        try:
            return await asyncio.wait_for(
                runtime.fetcher.fetch(entity, watermark, entity.batch_size),
                timeout=entity.call_timeout
            )
        except asyncio.TimeoutError:
            raise SourceUnavailable(f"Fetch timed out after {entity.call_timeout}s", entity.name)

    async def _call_store(self, entity: TrackedEntity, method: Callable, *args):
        try:
            return await call_with_timeout(method, *args, timeout=entity.call_timeout)
        except PollSyncError:
            raise
        except asyncio.TimeoutError:
            raise StorageUnavailable(
                f"Cursor store call {method.__name__} timed out after {entity.call_timeout}s",
                entity.name
            )
        except Exception as e:
            raise StorageUnavailable(
                f"Cursor store call {method.__name__} failed: {type(e).__name__}: {e}",
                entity.name
            ) from e

    async def _observe(self, runtime: EntityRuntime, result: CycleResult):
        logger.log_cycle_end(
            result.entity_name,
            result.status.value,
            result.duration,
            rows_applied=result.applied,
            watermark=str(result.new_watermark)
        )
        if self.metrics is not None:
            try:
                self.metrics.record_cycle(result)
            except Exception as e:
                logger.error(f"Failed to record metrics for {result.entity_name}: {e}")
        try:
            await asyncio.to_thread(self.health_monitor.observe, result.entity_name, result)
        except Exception as e:
            logger.error(f"Health monitor failed for {result.entity_name}: {e}")

    # =========================================
    # LOOPS
    # =========================================

    def next_delay(self, runtime: EntityRuntime, result: CycleResult, fast_cycles: int) -> float:
        """Seconds to wait before the next cycle. 0 means a fast cycle."""
        entity = runtime.entity
        if not result.succeeded:
            return entity.backoff_delay(result.consecutive_errors)
        if result.drained and fast_cycles < entity.max_fast_cycles:
            return 0.0
        return entity.poll_interval

    async def run_entity(self, entity_name: str):
        """Cycle one entity until ``stop()`` is called or the entity is disabled."""
        runtime = self._runtime(entity_name)
        runtime.wake = asyncio.Event()
        fast_cycles = 0

        logger.info(f"Starting sync loop for {entity_name}")
        while not self._stopping and not runtime.disabled:
            result = await self.run_cycle(entity_name)
            if runtime.disabled or self._stopping:
                break

            delay = self.next_delay(runtime, result, fast_cycles)
            if delay == 0:
                fast_cycles += 1
                await self._sleep(0)
                continue

            fast_cycles = 0
            await self._wait(runtime, delay)

        logger.info(f"Sync loop for {entity_name} exited (disabled={runtime.disabled})")

    async def _wait(self, runtime: EntityRuntime, delay: float):
        try:
            await asyncio.wait_for(runtime.wake.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
        runtime.wake.clear()

    async def _health_watchdog(self):
        while not self._stopping:
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.health_check_interval)
            except asyncio.TimeoutError:
                await asyncio.to_thread(self.health_monitor.evaluate_all)

    async def run(self, entities: Optional[List[str]] = None):
        """
        Run the loops of the given entities (default: all) concurrently
        until ``stop()`` is called or every loop has exited.
        """
        names = entities or list(self._runtimes)
        for name in names:
            self._runtime(name)

        self._stopping = False
        self._stop_event = asyncio.Event()
        logger.info(f"Orchestrator starting {len(names)} entity loop(s)")

        tasks = [asyncio.create_task(self.run_entity(name), name=f"pollsync-{name}") for name in names]
        watchdog = asyncio.create_task(self._health_watchdog(), name="pollsync-health")
        try:
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for name, result in zip(names, results):
                if isinstance(result, Exception):
                    logger.error(f"✗ Sync loop for {name} crashed", exception=result)
        finally:
            for task in tasks + [watchdog]:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, watchdog, return_exceptions=True)
            logger.info("Orchestrator stopped")

    async def run_once(self, entities: Optional[List[str]] = None) -> Dict[str, CycleResult]:
        """One cycle per enabled entity, concurrently."""
        names = [name for name in (entities or list(self._runtimes)) if not self.is_disabled(name)]
        results = await asyncio.gather(*(self.run_cycle(name) for name in names))
        return dict(zip(names, results))

    def trigger(self, entity_name: str):
        """
        Wake a sleeping entity loop so its next cycle starts now.

        Must be called from the event loop thread.
        """
        runtime = self._runtime(entity_name)
        if runtime.wake is not None:
            runtime.wake.set()

    def stop(self):
        """Ask every loop to exit after its current cycle."""
        self._stopping = True
        if self._stop_event is not None:
            self._stop_event.set()
        for runtime in self._runtimes.values():
            if runtime.wake is not None:
                runtime.wake.set()

    def close(self):
        """Disconnect connectors and close the cursor store."""
        for runtime in self._runtimes.values():
            disconnect = getattr(runtime.fetcher.connector, "disconnect", None)
            if disconnect is not None:
                disconnect()
        self.cursor_store.close()
