"""
Sync Models
===========

Value objects shared by every component of the polling engine.

Watermarks are ordered lexicographically over (timestamp, tiebreak_id).
The tiebreak is what keeps two rows updated in the same millisecond from
being split across a batch boundary and lost.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from functools import total_ordering
from typing import Any, Dict, Optional, Tuple

from .errors import ConfigurationError
from .utils import EPOCH, normalize_tiebreak, parse_timestamp, to_utc, utcnow


# =========================================
# WATERMARK
# =========================================

@total_ordering
@dataclass(frozen=True)
class Watermark:
    """
    High-water mark for one tracked entity.

    Attributes:
        timestamp: Modification instant of the last processed row (UTC)
        tiebreak_id: Stable surrogate key breaking ties on identical
            timestamps. None only for the epoch watermark, and sorts below
            every concrete id at the same instant.
    """

    timestamp: datetime
    tiebreak_id: Any = None

    def __post_init__(self):
        object.__setattr__(self, "timestamp", to_utc(self.timestamp))
        object.__setattr__(self, "tiebreak_id", normalize_tiebreak(self.tiebreak_id))

    @classmethod
    def epoch(cls) -> "Watermark":
        return cls(timestamp=EPOCH, tiebreak_id=None)

    @property
    def is_epoch(self) -> bool:
        return self.timestamp == EPOCH and self.tiebreak_id is None

    def sort_key(self) -> Tuple:
        # (present, id) keeps None from ever being compared against an id
        return (self.timestamp, self.tiebreak_id is not None, self.tiebreak_id)

    def __lt__(self, other: "Watermark") -> bool:
        if not isinstance(other, Watermark):
            return NotImplemented
        return self.sort_key() < other.sort_key()

    def to_dict(self) -> Dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "tiebreak_id": self.tiebreak_id
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "Watermark":
        if not data:
            return cls.epoch()
        timestamp = parse_timestamp(data.get("timestamp"))
        if timestamp is None:
            return cls.epoch()
        return cls(timestamp=timestamp, tiebreak_id=data.get("tiebreak_id"))

    def __str__(self) -> str:
        return f"({self.timestamp.isoformat()}, {self.tiebreak_id})"


# =========================================
# ENUMS
# =========================================

class ChangeOperation(str, Enum):
    UPSERT = "upsert"
    DELETE = "delete"


class SyncState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    PROCESSING = "processing"
    COMMITTING = "committing"
    ERROR = "error"
    DISABLED = "disabled"


class CycleStatus(str, Enum):
    NOOP = "noop"
    SUCCESS = "success"
    FAILED = "failed"
    FATAL = "fatal"


# =========================================
# TRACKED ENTITY
# =========================================

@dataclass(frozen=True)
class TrackedEntity:
    """
    One source of change events (a table, view or query).

    Attributes:
        name: Unique entity name, also the cursor key
        query_template: Table name (``schema.table`` allowed) or a SELECT
            statement that is wrapped as a subquery
        ordering_columns: (timestamp column, tiebreak column)
        batch_size: Maximum rows per cycle
        poll_interval: Seconds between cycles when caught up
        backoff_base: Seconds; delay after a failure is
            ``backoff_base * 2 ** min(error_count, backoff_cap)``
        backoff_cap: Maximum backoff exponent
        error_threshold: An alert is raised once consecutive errors exceed this
        staleness_sla: Seconds without a successful cycle before an alert
            is raised (None disables the check)
        latency_budget: Seconds a single cycle may take before an alert is
            raised (None disables the check)
        max_fast_cycles: Consecutive full batches drained without waiting
            for ``poll_interval``
        call_timeout: Seconds allowed for each fetch, sink or cursor call
        delete_detection: Optional ``{"column": ..., "delete_value": ...}``
            soft-delete rule marking matching rows as deletes
    """

    name: str
    query_template: str
    ordering_columns: Tuple[str, str] = ("updated_at", "id")
    batch_size: int = 500
    poll_interval: float = 30.0
    backoff_base: float = 1.0
    backoff_cap: int = 6
    error_threshold: int = 5
    staleness_sla: Optional[float] = 3600.0
    latency_budget: Optional[float] = None
    max_fast_cycles: int = 10
    call_timeout: float = 30.0
    delete_detection: Optional[Dict] = field(default=None, hash=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "ordering_columns", tuple(self.ordering_columns))

        if not self.name:
            raise ConfigurationError("Entity name must not be empty")
        if not self.query_template or not str(self.query_template).strip():
            raise ConfigurationError(f"Entity '{self.name}' has no query template", self.name)
        if len(self.ordering_columns) != 2 or not all(self.ordering_columns):
            raise ConfigurationError(
                f"Entity '{self.name}' needs exactly two ordering columns "
                f"(timestamp, tiebreak), got {self.ordering_columns}",
                self.name
            )
        if not isinstance(self.batch_size, int) or self.batch_size <= 0:
            raise ConfigurationError(f"Entity '{self.name}': batch_size must be > 0", self.name)
        if self.poll_interval <= 0:
            raise ConfigurationError(f"Entity '{self.name}': poll_interval must be > 0", self.name)
        if self.backoff_base <= 0:
            raise ConfigurationError(f"Entity '{self.name}': backoff_base must be > 0", self.name)
        if self.backoff_cap < 0:
            raise ConfigurationError(f"Entity '{self.name}': backoff_cap must be >= 0", self.name)
        if self.error_threshold <= 0:
            raise ConfigurationError(f"Entity '{self.name}': error_threshold must be > 0", self.name)
        if self.max_fast_cycles < 0:
            raise ConfigurationError(f"Entity '{self.name}': max_fast_cycles must be >= 0", self.name)
        if self.call_timeout <= 0:
            raise ConfigurationError(f"Entity '{self.name}': call_timeout must be > 0", self.name)
        if self.delete_detection is not None and "column" not in self.delete_detection:
            raise ConfigurationError(
                f"Entity '{self.name}': delete_detection needs a 'column'", self.name
            )

    @property
    def timestamp_column(self) -> str:
        return self.ordering_columns[0]

    @property
    def tiebreak_column(self) -> str:
        return self.ordering_columns[1]

    def backoff_delay(self, error_count: int) -> float:
        """Delay in seconds before retrying after ``error_count`` consecutive errors."""
        return self.backoff_base * (2 ** min(max(error_count, 0), self.backoff_cap))


# =========================================
# CHANGE RECORD / CURSOR
# =========================================

@dataclass(frozen=True)
class ChangeRecord:
    """A changed row, as delivered to a sink. May be redelivered on retry."""

    entity_name: str
    payload: Dict[str, Any] = field(hash=False, compare=False)
    timestamp: datetime
    tiebreak_id: Any
    operation: ChangeOperation = ChangeOperation.UPSERT

    @property
    def watermark(self) -> Watermark:
        return Watermark(timestamp=self.timestamp, tiebreak_id=self.tiebreak_id)

    @property
    def idempotency_key(self) -> str:
        """Stable across redeliveries of the same row version."""
        return f"{self.entity_name}:{self.timestamp.isoformat()}:{self.tiebreak_id}"


@dataclass
class SyncCursor:
    """Persisted progress of one entity. ``version`` is the compare-and-set token."""

    entity_name: str
    watermark: Watermark = field(default_factory=Watermark.epoch)
    updated_at: Optional[datetime] = None
    consecutive_error_count: int = 0
    version: int = 0

    def to_dict(self) -> Dict:
        return {
            "entity_name": self.entity_name,
            "watermark": self.watermark.to_dict(),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "consecutive_error_count": self.consecutive_error_count,
            "version": self.version
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "SyncCursor":
        return cls(
            entity_name=data["entity_name"],
            watermark=Watermark.from_dict(data.get("watermark")),
            updated_at=parse_timestamp(data.get("updated_at")),
            consecutive_error_count=int(data.get("consecutive_error_count", 0)),
            version=int(data.get("version", 0))
        )


# =========================================
# OUTCOMES
# =========================================

@dataclass
class BatchOutcome:
    """Aggregate result of applying one batch to a sink."""

    success: bool
    applied: int
    total: int
    failed_record: Optional[ChangeRecord] = None
    error: Optional[Exception] = None


@dataclass
class CycleResult:
    """Outcome of one fetch -> process -> commit cycle."""

    entity_name: str
    status: CycleStatus
    started_at: datetime
    finished_at: datetime
    previous_watermark: Watermark
    new_watermark: Watermark
    fetched: int = 0
    applied: int = 0
    consecutive_errors: int = 0
    error: Optional[Exception] = None
    cycle_id: Optional[str] = None
    drained: bool = False

    @property
    def duration(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    @property
    def succeeded(self) -> bool:
        return self.status in (CycleStatus.SUCCESS, CycleStatus.NOOP)

    @property
    def error_kind(self) -> Optional[str]:
        if self.error is None:
            return None
        return getattr(self.error, "kind", type(self.error).__name__)

    def to_dict(self) -> Dict:
        return {
            "entity_name": self.entity_name,
            "cycle_id": self.cycle_id,
            "status": self.status.value,
            "rows_fetched": self.fetched,
            "rows_applied": self.applied,
            "previous_watermark": self.previous_watermark.to_dict(),
            "new_watermark": self.new_watermark.to_dict(),
            "start_time": self.started_at.isoformat(),
            "end_time": self.finished_at.isoformat(),
            "duration_seconds": round(self.duration, 3),
            "consecutive_errors": self.consecutive_errors,
            "error_kind": self.error_kind,
            "error": str(self.error) if self.error else None
        }


@dataclass
class HealthSnapshot:
    """Point-in-time health of one entity. Recomputed, never persisted."""

    entity_name: str
    last_success_at: Optional[datetime]
    last_batch_size: int
    cycle_duration: float
    error_count: int
    staleness: float
    state: SyncState = SyncState.IDLE
    total_records: int = 0
    total_cycles: int = 0
    total_failures: int = 0
    throughput: float = 0.0
    disabled: bool = False

    def to_dict(self) -> Dict:
        return {
            "entity_name": self.entity_name,
            "state": self.state.value,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
            "last_batch_size": self.last_batch_size,
            "cycle_duration": round(self.cycle_duration, 3),
            "error_count": self.error_count,
            "staleness": round(self.staleness, 3),
            "total_records": self.total_records,
            "total_cycles": self.total_cycles,
            "total_failures": self.total_failures,
            "throughput": round(self.throughput, 3),
            "disabled": self.disabled
        }


@dataclass
class Alert:
    """Notification handed to an alert sink."""

    entity_name: str
    kind: str
    detail: str
    severity: str = "warning"
    created_at: datetime = field(default_factory=utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)
