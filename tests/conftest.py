"""
Shared Test Fixtures
====================
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from pollsync.connectors.memory_connector import MemorySourceConnector
from pollsync.cursor_store import InMemoryCursorStore
from pollsync.health import HealthMonitor
from pollsync.models import ChangeRecord, TrackedEntity
from pollsync.orchestrator import SyncOrchestrator

T0 = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def at(seconds: float) -> datetime:
    """T0 plus ``seconds``."""
    return T0 + timedelta(seconds=seconds)


def make_row(row_id: int, seconds: float = 0, **extra) -> Dict[str, Any]:
    return {"id": row_id, "updated_at": at(seconds), "name": f"row-{row_id}", **extra}


def make_entity(name: str = "orders", **kwargs) -> TrackedEntity:
    kwargs.setdefault("query_template", "shop.orders")
    kwargs.setdefault("batch_size", 10)
    kwargs.setdefault("poll_interval", 1.0)
    kwargs.setdefault("call_timeout", 5.0)
    return TrackedEntity(name=name, **kwargs)


class RecordingSink:
    """
    Idempotent sink keyed by (entity, id); keeps the latest payload per key.

    ``fail_when`` makes the sink raise for matching records.
    """

    def __init__(self, fail_when: Optional[Callable[[ChangeRecord], bool]] = None):
        self.state: Dict[Any, Dict] = {}
        self.calls: List[ChangeRecord] = []
        self.fail_when = fail_when

    def apply(self, record: ChangeRecord) -> bool:
        self.calls.append(record)
        if self.fail_when is not None and self.fail_when(record):
            raise RuntimeError(f"sink rejected {record.tiebreak_id}")
        self.state[(record.entity_name, record.tiebreak_id)] = dict(record.payload)
        return True

    @property
    def applied_ids(self) -> List[Any]:
        return [record.tiebreak_id for record in self.calls]


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def store():
    return InMemoryCursorStore()


@pytest.fixture
def source():
    return MemorySourceConnector()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def orchestrator(store):
    return SyncOrchestrator(store, health_monitor=HealthMonitor())


@pytest.fixture
def clock():
    return FakeClock()
