"""
Health Monitor
==============

Tracks staleness, error streaks, cycle latency and throughput per tracked
entity, and hands alerts to a registered alert sink when a threshold is
breached.

The monitor only observes: it never touches cursors or entity state.

Alert kinds:
- staleness: no successful cycle for longer than ``staleness_sla``
- error_threshold: consecutive errors above ``error_threshold``
- latency_budget: a cycle took longer than ``latency_budget`` (the source
  is outrunning the batch size)
- fatal_error: the entity was disabled by a fatal error

An alert fires when its condition is entered and re-arms once it clears.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from .errors import ConfigurationError
from .models import Alert, CycleResult, CycleStatus, HealthSnapshot, SyncState, TrackedEntity
from .utils import utcnow

logger = logging.getLogger(__name__)


ALERT_SEVERITY = {
    "staleness": "warning",
    "error_threshold": "error",
    "latency_budget": "warning",
    "fatal_error": "critical"
}


@dataclass
class _EntityHealth:
    entity: TrackedEntity
    last_success_at: datetime
    last_batch_size: int = 0
    cycle_duration: float = 0.0
    error_count: int = 0
    state: SyncState = SyncState.IDLE
    total_records: int = 0
    total_cycles: int = 0
    total_failures: int = 0
    throughput: float = 0.0
    disabled: bool = False
    active_alerts: Set[str] = field(default_factory=set)


class HealthMonitor:
    """
    Per-entity health bookkeeping and threshold alerts.

    Usage:
        monitor = HealthMonitor(alert_sink=AlertManager(slack_webhook_url=url))
        monitor.register(entity)
        monitor.observe(entity.name, cycle_result)
        print(monitor.snapshot(entity.name).to_dict())
    """

    def __init__(
        self,
        alert_sink: Optional[Any] = None,
        metrics: Optional[Any] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        """
        Args:
            alert_sink: Object with ``notify(alert)`` or a callable taking an Alert
            metrics: Optional MetricsCollector for the staleness gauge
            clock: Returns the current aware UTC time
        """
        self.alert_sink = alert_sink
        self.metrics = metrics
        self.clock = clock
        self._entities: Dict[str, _EntityHealth] = {}
        self._lock = threading.RLock()

    def register(self, entity: TrackedEntity):
        """Start tracking an entity. Staleness is measured from registration until the first success."""
        with self._lock:
            if entity.name not in self._entities:
                self._entities[entity.name] = _EntityHealth(entity=entity, last_success_at=self.clock())

    def _get(self, entity_name: str) -> _EntityHealth:
        health = self._entities.get(entity_name)
        if health is None:
            raise ConfigurationError(f"Entity '{entity_name}' is not registered with the health monitor", entity_name)
        return health

    # =========================================
    # OBSERVATION
    # =========================================

    def observe(self, entity_name: str, result: CycleResult) -> List[Alert]:
        """
        Fold one cycle result into the entity's health and check thresholds.

        Returns:
            Alerts raised by this observation
        """
        with self._lock:
            health = self._get(entity_name)
            health.total_cycles += 1
            health.cycle_duration = result.duration
            health.error_count = result.consecutive_errors

            if result.succeeded:
                health.last_success_at = result.finished_at
                health.last_batch_size = result.applied
                health.total_records += result.applied
                health.throughput = result.applied / result.duration if result.duration > 0 else 0.0
                health.state = SyncState.IDLE
                health.disabled = False
            else:
                health.total_failures += 1
                health.state = SyncState.DISABLED if result.status == CycleStatus.FATAL else SyncState.ERROR
                health.disabled = result.status == CycleStatus.FATAL

            alerts = self._check(health, result)

        self._deliver(alerts)
        return alerts

    def update_state(self, entity_name: str, state: SyncState):
        """Mirror the orchestrator's state machine for snapshots."""
        with self._lock:
            health = self._get(entity_name)
            health.state = state
            if state == SyncState.DISABLED:
                health.disabled = True
            elif health.disabled and state == SyncState.IDLE:
                health.disabled = False
                health.active_alerts.discard("fatal_error")

    # =========================================
    # SNAPSHOTS
    # =========================================

    def snapshot(self, entity_name: str) -> HealthSnapshot:
        """Current health of one entity."""
        with self._lock:
            return self._snapshot(self._get(entity_name))

    def snapshots(self) -> List[HealthSnapshot]:
        with self._lock:
            return [self._snapshot(h) for h in self._entities.values()]

    def _snapshot(self, health: _EntityHealth) -> HealthSnapshot:
        return HealthSnapshot(
            entity_name=health.entity.name,
            last_success_at=health.last_success_at,
            last_batch_size=health.last_batch_size,
            cycle_duration=health.cycle_duration,
            error_count=health.error_count,
            staleness=self._staleness(health),
            state=health.state,
            total_records=health.total_records,
            total_cycles=health.total_cycles,
            total_failures=health.total_failures,
            throughput=health.throughput,
            disabled=health.disabled
        )

    def _staleness(self, health: _EntityHealth) -> float:
        return max((self.clock() - health.last_success_at).total_seconds(), 0.0)

    # =========================================
    # THRESHOLDS
    # =========================================

    def evaluate(self, entity_name: str) -> List[Alert]:
        """Re-check thresholds without a new cycle (catches entities stuck in a long call)."""
        with self._lock:
            alerts = self._check(self._get(entity_name), None)
        self._deliver(alerts)
        return alerts

    def evaluate_all(self) -> List[Alert]:
        alerts: List[Alert] = []
        for entity_name in list(self._entities):
            alerts.extend(self.evaluate(entity_name))
        return alerts

    def _check(self, health: _EntityHealth, result: Optional[CycleResult]) -> List[Alert]:
        entity = health.entity
        staleness = self._staleness(health)
        alerts: List[Alert] = []

        if self.metrics is not None:
            self.metrics.record_staleness(entity.name, staleness)

        conditions = {
            "staleness": (
                entity.staleness_sla is not None and staleness > entity.staleness_sla,
                f"No successful cycle for {staleness:.0f}s (SLA {entity.staleness_sla}s)"
            ),
            "error_threshold": (
                health.error_count > entity.error_threshold,
                f"{health.error_count} consecutive errors (threshold {entity.error_threshold})"
            ),
        }

        if result is not None:
            conditions["latency_budget"] = (
                entity.latency_budget is not None and result.duration > entity.latency_budget,
                f"Cycle took {result.duration:.3f}s (budget {entity.latency_budget}s); "
                f"source may be outrunning batch_size={entity.batch_size}"
            )
            conditions["fatal_error"] = (
                result.status == CycleStatus.FATAL,
                f"Entity disabled after fatal error: {result.error}"
            )

        for kind, (breached, detail) in conditions.items():
            if not breached:
                if kind in health.active_alerts and kind != "fatal_error":
                    logger.info(f"✓ {kind} cleared for {entity.name}")
                health.active_alerts.discard(kind)
                continue
            if kind in health.active_alerts:
                continue
            health.active_alerts.add(kind)
            alerts.append(Alert(
                entity_name=entity.name,
                kind=kind,
                detail=detail,
                severity=ALERT_SEVERITY[kind],
                created_at=self.clock(),
                metadata={
                    "error_count": health.error_count,
                    "staleness": round(staleness, 3),
                    "cycle_duration": round(health.cycle_duration, 3)
                }
            ))

        return alerts

    def _deliver(self, alerts: List[Alert]):
        for alert in alerts:
            logger.warning(f"✗ Health alert [{alert.kind}] {alert.entity_name}: {alert.detail}")
        if self.alert_sink is None:
            return
        notify = getattr(self.alert_sink, "notify", self.alert_sink)
        for alert in alerts:
            try:
                notify(alert)
            except Exception as e:
                logger.error(f"Alert sink failed for {alert.entity_name}/{alert.kind}: {e}")
