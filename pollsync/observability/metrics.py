"""
Metrics Collector
=================

Prometheus-compatible metrics collection for the polling engine.

Supports:
- prometheus: metrics held in a private CollectorRegistry, exposed in text
  format or pushed to a Pushgateway
- memory: in-memory list of observations (tests, dry runs)
"""

import logging
import threading
from typing import Dict, List, Optional

from prometheus_client import (
    CollectorRegistry, Counter, Gauge, Histogram, generate_latest, push_to_gateway
)

from ..models import CycleResult
from ..utils import utcnow

logger = logging.getLogger(__name__)


class MetricsCollector:
    """
    Collects and exports sync metrics.

    Usage:
        metrics = MetricsCollector(backend="prometheus")
        metrics.record_cycle(result)
        print(metrics.get_prometheus_metrics())
    """

    METRIC_DEFINITIONS = {
        "pollsync_cycle_duration_seconds": {
            "type": "histogram",
            "description": "Duration of sync cycles",
            "labels": ["entity", "status"]
        },
        "pollsync_cycles_total": {
            "type": "counter",
            "description": "Sync cycles by outcome",
            "labels": ["entity", "status"]
        },
        "pollsync_records_applied_total": {
            "type": "counter",
            "description": "Change records applied to sinks",
            "labels": ["entity"]
        },
        "pollsync_cycle_errors_total": {
            "type": "counter",
            "description": "Failed sync cycles by error kind",
            "labels": ["entity", "error_kind"]
        },
        "pollsync_staleness_seconds": {
            "type": "gauge",
            "description": "Seconds since the last successful cycle",
            "labels": ["entity"]
        },
        "pollsync_consecutive_errors": {
            "type": "gauge",
            "description": "Consecutive failed cycles",
            "labels": ["entity"]
        },
        "pollsync_watermark_timestamp_seconds": {
            "type": "gauge",
            "description": "Committed watermark as a Unix timestamp",
            "labels": ["entity"]
        }
    }

    def __init__(
        self,
        backend: str = "memory",
        pushgateway_url: Optional[str] = None,
        job_name: str = "pollsync"
    ):
        """
        Initialize metrics collector.

        Args:
            backend: 'prometheus' or 'memory'
            pushgateway_url: Prometheus Pushgateway URL
            job_name: Job name for Prometheus
        """
        if backend not in ("prometheus", "memory"):
            raise ValueError(f"Unsupported metrics backend: {backend}")

        self.backend = backend
        self.job_name = job_name
        self.pushgateway_url = pushgateway_url

        self._memory_store: List[Dict] = []
        self._prometheus_metrics: Dict = {}
        self._registry = CollectorRegistry()
        self._lock = threading.Lock()

        if backend == "prometheus":
            self._init_prometheus_metrics()

    def _init_prometheus_metrics(self):
        """Initialize Prometheus metric objects."""
        for name, definition in self.METRIC_DEFINITIONS.items():
            metric_type = definition["type"]
            description = definition["description"]
            labels = definition.get("labels", [])

            if metric_type == "counter":
                # prometheus_client appends _total itself
                self._prometheus_metrics[name] = Counter(
                    name[:-len("_total")] if name.endswith("_total") else name,
                    description, labels, registry=self._registry
                )
            elif metric_type == "gauge":
                self._prometheus_metrics[name] = Gauge(
                    name, description, labels, registry=self._registry
                )
            elif metric_type == "histogram":
                self._prometheus_metrics[name] = Histogram(
                    name, description, labels, registry=self._registry
                )

    # =========================================
    # METRIC RECORDING METHODS
    # =========================================

    def _record(self, metric_name: str, metric_type: str, value: float, labels: Optional[Dict]):
        labels = labels or {}

        with self._lock:
            if self.backend == "prometheus":
                metric = self._prometheus_metrics.get(metric_name)
                if metric is None:
                    logger.debug(f"Unknown metric ignored: {metric_name}")
                    return
                child = metric.labels(**labels)
                if metric_type == "counter":
                    child.inc(value)
                elif metric_type == "gauge":
                    child.set(value)
                else:
                    child.observe(value)
            else:
                self._memory_store.append({
                    "metric_name": metric_name,
                    "metric_type": metric_type,
                    "value": value,
                    "labels": labels,
                    "timestamp": utcnow().isoformat()
                })

    def record_counter(self, metric_name: str, value: float = 1, labels: Optional[Dict] = None):
        """Increment a counter metric."""
        self._record(metric_name, "counter", value, labels)

    def record_gauge(self, metric_name: str, value: float, labels: Optional[Dict] = None):
        """Set a gauge metric value."""
        self._record(metric_name, "gauge", value, labels)

    def record_histogram(self, metric_name: str, value: float, labels: Optional[Dict] = None):
        """Record a histogram observation."""
        self._record(metric_name, "histogram", value, labels)

    # =========================================
    # CONVENIENCE METHODS
    # =========================================

    def record_cycle(self, result: CycleResult):
        """Record metrics for one finished sync cycle."""
        entity = result.entity_name
        status = result.status.value

        self.record_histogram(
            "pollsync_cycle_duration_seconds",
            result.duration,
            {"entity": entity, "status": status}
        )
        self.record_counter("pollsync_cycles_total", 1, {"entity": entity, "status": status})

        if result.applied > 0:
            self.record_counter("pollsync_records_applied_total", result.applied, {"entity": entity})

        if result.error is not None:
            self.record_counter(
                "pollsync_cycle_errors_total",
                1,
                {"entity": entity, "error_kind": result.error_kind}
            )

        self.record_gauge("pollsync_consecutive_errors", result.consecutive_errors, {"entity": entity})

        if result.succeeded and not result.new_watermark.is_epoch:
            self.record_gauge(
                "pollsync_watermark_timestamp_seconds",
                result.new_watermark.timestamp.timestamp(),
                {"entity": entity}
            )

    def record_staleness(self, entity_name: str, staleness_seconds: float):
        """Record data staleness for an entity."""
        self.record_gauge("pollsync_staleness_seconds", staleness_seconds, {"entity": entity_name})

    # =========================================
    # EXPORT METHODS
    # =========================================

    def push_to_prometheus(self) -> bool:
        """Push metrics to Prometheus Pushgateway."""
        if not self.pushgateway_url:
            logger.warning("Pushgateway URL not configured")
            return False

        try:
            push_to_gateway(self.pushgateway_url, job=self.job_name, registry=self._registry)
            logger.info("Metrics pushed to Prometheus Pushgateway")
            return True
        except OSError as e:
            logger.error(f"Failed to push metrics: {e}")
            return False

    def get_prometheus_metrics(self) -> str:
        """Get metrics in Prometheus exposition format."""
        return generate_latest(self._registry).decode('utf-8')

    def get_memory_metrics(self) -> List[Dict]:
        """Get in-memory metrics store."""
        with self._lock:
            return list(self._memory_store)

    def clear_memory_metrics(self):
        """Clear in-memory metrics store."""
        with self._lock:
            self._memory_store.clear()
