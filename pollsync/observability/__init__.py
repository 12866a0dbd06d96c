"""
Sync Observability
==================

Structured logging, metrics and alerting for the polling engine.
"""

from .logging import StructuredLogger, configure_logging, log_context, JsonFormatter
from .metrics import MetricsCollector
from .alerts import AlertManager

__all__ = [
    "StructuredLogger",
    "configure_logging",
    "log_context",
    "JsonFormatter",
    "MetricsCollector",
    "AlertManager",
]
