"""
Pollsync
========

Incremental change polling engine: keyset-paginated polling of
"modified since" range queries, with per-entity watermarks, at-least-once
delivery to idempotent sinks, and health alerting.

Usage:
    from pollsync import SyncOrchestrator, TrackedEntity, InMemoryCursorStore

    orchestrator = SyncOrchestrator(InMemoryCursorStore())
    orchestrator.register(TrackedEntity("orders", "shop.orders"), connector, sink)
    await orchestrator.run()
"""

from .cursor_store import CursorStore, InMemoryCursorStore, JsonFileCursorStore, SqlCursorStore
from .errors import (
    ConfigurationError, PollSyncError, QueryMalformed, SinkFailure,
    SourceUnavailable, StorageUnavailable, WatermarkConflict
)
from .fetcher import ChangeFetcher
from .health import HealthMonitor
from .models import (
    Alert, BatchOutcome, ChangeOperation, ChangeRecord, CycleResult, CycleStatus,
    HealthSnapshot, SyncCursor, SyncState, TrackedEntity, Watermark
)
from .orchestrator import SyncOrchestrator
from .processor import BatchProcessor

__version__ = "1.0.0"

__all__ = [
    "CursorStore",
    "InMemoryCursorStore",
    "JsonFileCursorStore",
    "SqlCursorStore",
    "ConfigurationError",
    "PollSyncError",
    "QueryMalformed",
    "SinkFailure",
    "SourceUnavailable",
    "StorageUnavailable",
    "WatermarkConflict",
    "ChangeFetcher",
    "HealthMonitor",
    "Alert",
    "BatchOutcome",
    "ChangeOperation",
    "ChangeRecord",
    "CycleResult",
    "CycleStatus",
    "HealthSnapshot",
    "SyncCursor",
    "SyncState",
    "TrackedEntity",
    "Watermark",
    "SyncOrchestrator",
    "BatchProcessor",
]
