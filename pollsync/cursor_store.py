"""
Cursor Store
============

Persists the last committed watermark per tracked entity.

Backends:
- memory: in-process dict (tests, single-process demos)
- json: checkpoint file on local disk, rewritten atomically
- sql: any SQLAlchemy database, one row per entity

Every write bumps the cursor ``version``. ``commit`` is a compare-and-set on
that version, so an orchestrator holding a stale cursor (for example after a
crash/restart race) cannot overwrite a newer watermark.
"""

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from sqlalchemy import (
    Column, DateTime, Integer, MetaData, String, Table, Text,
    create_engine, insert, select, update, delete
)
from sqlalchemy.exc import (
    DisconnectionError, IntegrityError, InterfaceError, OperationalError
)

from .errors import StorageUnavailable, WatermarkConflict
from .models import SyncCursor, Watermark
from .utils import to_utc, utcnow

logger = logging.getLogger(__name__)


class CursorStore(ABC):
    """Contract shared by all cursor backends."""

    @abstractmethod
    def get(self, entity_name: str) -> SyncCursor:
        """Return the cursor, or an epoch cursor (version 0) if none exists."""

    @abstractmethod
    def ensure(self, entity_name: str) -> SyncCursor:
        """Create the epoch cursor if absent. Called when an entity is registered."""

    @abstractmethod
    def commit(
        self,
        entity_name: str,
        new_watermark: Watermark,
        expected_version: Optional[int] = None
    ) -> SyncCursor:
        """
        Advance the watermark and reset the error count.

        Args:
            entity_name: Entity to advance
            new_watermark: Watermark of the last record in the applied batch
            expected_version: Version read at cycle start; None skips the
                compare-and-set (administrative use only)

        Returns:
            The stored cursor

        Raises:
            WatermarkConflict: version moved on, or the watermark would go backward
            StorageUnavailable: backend unreachable
        """

    @abstractmethod
    def record_error(self, entity_name: str) -> int:
        """Increment and return ``consecutive_error_count``."""

    @abstractmethod
    def reset(self, entity_name: str) -> bool:
        """Delete the cursor so the entity re-syncs from the epoch. Returns True if it existed."""

    @abstractmethod
    def list_all(self) -> List[SyncCursor]:
        """Return every stored cursor."""

    def close(self):
        """Release backend resources."""

    @staticmethod
    def _check_commit(
        current: SyncCursor,
        new_watermark: Watermark,
        expected_version: Optional[int]
    ):
        if expected_version is not None and current.version != expected_version:
            raise WatermarkConflict(
                f"Cursor for '{current.entity_name}' is at version {current.version}, "
                f"expected {expected_version}",
                current.entity_name
            )
        if new_watermark < current.watermark:
            raise WatermarkConflict(
                f"Refusing to move '{current.entity_name}' watermark backward: "
                f"{current.watermark} -> {new_watermark}",
                current.entity_name
            )


# =========================================
# MEMORY BACKEND
# =========================================

class InMemoryCursorStore(CursorStore):
    """Dict-backed store. Thread-safe; not durable."""

    def __init__(self):
        self._cursors: Dict[str, SyncCursor] = {}
        self._lock = threading.Lock()

    def _copy(self, cursor: SyncCursor) -> SyncCursor:
        return SyncCursor.from_dict(cursor.to_dict())

    def get(self, entity_name: str) -> SyncCursor:
        with self._lock:
            cursor = self._cursors.get(entity_name)
            if cursor is None:
                return SyncCursor(entity_name=entity_name)
            return self._copy(cursor)

    def ensure(self, entity_name: str) -> SyncCursor:
        with self._lock:
            if entity_name not in self._cursors:
                self._cursors[entity_name] = SyncCursor(
                    entity_name=entity_name, updated_at=utcnow(), version=1
                )
                logger.info(f"Created cursor for {entity_name} at epoch")
            return self._copy(self._cursors[entity_name])

    def commit(
        self,
        entity_name: str,
        new_watermark: Watermark,
        expected_version: Optional[int] = None
    ) -> SyncCursor:
        with self._lock:
            current = self._cursors.get(entity_name) or SyncCursor(entity_name=entity_name)
            self._check_commit(current, new_watermark, expected_version)
            stored = SyncCursor(
                entity_name=entity_name,
                watermark=new_watermark,
                updated_at=utcnow(),
                consecutive_error_count=0,
                version=current.version + 1
            )
            self._cursors[entity_name] = stored
            return self._copy(stored)

    def record_error(self, entity_name: str) -> int:
        with self._lock:
            current = self._cursors.get(entity_name) or SyncCursor(entity_name=entity_name)
            current.consecutive_error_count += 1
            current.version += 1
            current.updated_at = utcnow()
            self._cursors[entity_name] = current
            return current.consecutive_error_count

    def reset(self, entity_name: str) -> bool:
        with self._lock:
            return self._cursors.pop(entity_name, None) is not None

    def list_all(self) -> List[SyncCursor]:
        with self._lock:
            return [self._copy(c) for c in self._cursors.values()]


# =========================================
# JSON FILE BACKEND
# =========================================

class JsonFileCursorStore(CursorStore):
    """
    Checkpoint file holding all cursors as one JSON document.

    Writes go to a temp file in the same directory followed by ``os.replace``,
    so a crash mid-write leaves the previous checkpoint intact. Only one
    process may own a checkpoint file.
    """

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()
        directory = os.path.dirname(os.path.abspath(path))
        try:
            os.makedirs(directory, exist_ok=True)
        except OSError as e:
            raise StorageUnavailable(f"Cannot create checkpoint directory {directory}: {e}")

    def _load(self) -> Dict[str, SyncCursor]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StorageUnavailable(f"Cannot read checkpoint {self.path}: {e}")
        return {
            name: SyncCursor.from_dict(entry)
            for name, entry in data.get("cursors", {}).items()
        }

    def _save(self, cursors: Dict[str, SyncCursor]):
        document = {
            "saved_at": utcnow().isoformat(),
            "cursors": {name: c.to_dict() for name, c in cursors.items()}
        }
        directory = os.path.dirname(os.path.abspath(self.path))
        try:
            fd, tmp_path = tempfile.mkstemp(prefix=".cursors-", dir=directory)
            with os.fdopen(fd, 'w') as f:
                json.dump(document, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise StorageUnavailable(f"Cannot write checkpoint {self.path}: {e}")

    def get(self, entity_name: str) -> SyncCursor:
        with self._lock:
            return self._load().get(entity_name) or SyncCursor(entity_name=entity_name)

    def ensure(self, entity_name: str) -> SyncCursor:
        with self._lock:
            cursors = self._load()
            if entity_name not in cursors:
                cursors[entity_name] = SyncCursor(
                    entity_name=entity_name, updated_at=utcnow(), version=1
                )
                self._save(cursors)
                logger.info(f"Created cursor for {entity_name} at epoch")
            return cursors[entity_name]

    def commit(
        self,
        entity_name: str,
        new_watermark: Watermark,
        expected_version: Optional[int] = None
    ) -> SyncCursor:
        with self._lock:
            cursors = self._load()
            current = cursors.get(entity_name) or SyncCursor(entity_name=entity_name)
            self._check_commit(current, new_watermark, expected_version)
            cursors[entity_name] = SyncCursor(
                entity_name=entity_name,
                watermark=new_watermark,
                updated_at=utcnow(),
                consecutive_error_count=0,
                version=current.version + 1
            )
            self._save(cursors)
            return cursors[entity_name]

    def record_error(self, entity_name: str) -> int:
        with self._lock:
            cursors = self._load()
            current = cursors.get(entity_name) or SyncCursor(entity_name=entity_name)
            current.consecutive_error_count += 1
            current.version += 1
            current.updated_at = utcnow()
            cursors[entity_name] = current
            self._save(cursors)
            return current.consecutive_error_count

    def reset(self, entity_name: str) -> bool:
        with self._lock:
            cursors = self._load()
            if entity_name not in cursors:
                return False
            del cursors[entity_name]
            self._save(cursors)
            return True

    def list_all(self) -> List[SyncCursor]:
        with self._lock:
            return list(self._load().values())


# =========================================
# SQL BACKEND
# =========================================

_UNAVAILABLE_ERRORS = (OperationalError, InterfaceError, DisconnectionError)


class SqlCursorStore(CursorStore):
    """
    One row per entity in ``pollsync_cursors``.

    ``commit`` is ``UPDATE ... WHERE entity_name = :name AND version = :expected``;
    zero affected rows means another writer got there first.
    """

    def __init__(self, url: str = None, engine=None, table_name: str = "pollsync_cursors"):
        if engine is None and url is None:
            raise ValueError("SqlCursorStore needs a url or an engine")
        self.engine = engine or create_engine(url, pool_pre_ping=True)
        self._owns_engine = engine is None

        metadata = MetaData()
        self.table = Table(
            table_name,
            metadata,
            Column("entity_name", String(255), primary_key=True),
            Column("watermark_ts", DateTime(timezone=True), nullable=False),
            Column("watermark_tiebreak", Text, nullable=True),
            Column("updated_at", DateTime(timezone=True), nullable=True),
            Column("consecutive_error_count", Integer, nullable=False, default=0),
            Column("version", Integer, nullable=False, default=1),
        )
        try:
            metadata.create_all(self.engine)
        except _UNAVAILABLE_ERRORS as e:
            raise StorageUnavailable(f"Cursor database unreachable: {e}")

    def close(self):
        if self._owns_engine:
            self.engine.dispose()

    # -- row mapping ---------------------------------------------------------

    @staticmethod
    def _encode_tiebreak(value) -> Optional[str]:
        # JSON keeps ints as ints on the way back out
        return None if value is None else json.dumps(value)

    @staticmethod
    def _decode_tiebreak(value: Optional[str]):
        return None if value is None else json.loads(value)

    def _to_cursor(self, row) -> SyncCursor:
        return SyncCursor(
            entity_name=row.entity_name,
            watermark=Watermark(
                timestamp=row.watermark_ts,
                tiebreak_id=self._decode_tiebreak(row.watermark_tiebreak)
            ),
            updated_at=to_utc(row.updated_at) if row.updated_at else None,
            consecutive_error_count=row.consecutive_error_count,
            version=row.version
        )

    def _select_one(self, conn, entity_name: str):
        return conn.execute(
            select(self.table).where(self.table.c.entity_name == entity_name)
        ).first()

    # -- operations ----------------------------------------------------------

    def get(self, entity_name: str) -> SyncCursor:
        try:
            with self.engine.connect() as conn:
                row = self._select_one(conn, entity_name)
        except _UNAVAILABLE_ERRORS as e:
            raise StorageUnavailable(f"Cursor read failed for {entity_name}: {e}", entity_name)
        if row is None:
            return SyncCursor(entity_name=entity_name)
        return self._to_cursor(row)

    def ensure(self, entity_name: str) -> SyncCursor:
        epoch = Watermark.epoch()
        try:
            with self.engine.begin() as conn:
                row = self._select_one(conn, entity_name)
                if row is None:
                    conn.execute(insert(self.table).values(
                        entity_name=entity_name,
                        watermark_ts=epoch.timestamp,
                        watermark_tiebreak=None,
                        updated_at=utcnow(),
                        consecutive_error_count=0,
                        version=1
                    ))
                    logger.info(f"Created cursor for {entity_name} at epoch")
        except IntegrityError:
            # Another instance registered the same entity concurrently
            pass
        except _UNAVAILABLE_ERRORS as e:
            raise StorageUnavailable(f"Cursor create failed for {entity_name}: {e}", entity_name)
        return self.get(entity_name)

    def commit(
        self,
        entity_name: str,
        new_watermark: Watermark,
        expected_version: Optional[int] = None
    ) -> SyncCursor:
        try:
            with self.engine.begin() as conn:
                row = self._select_one(conn, entity_name)
                if row is None:
                    current = SyncCursor(entity_name=entity_name)
                    self._check_commit(current, new_watermark, expected_version)
                    conn.execute(insert(self.table).values(
                        entity_name=entity_name,
                        watermark_ts=new_watermark.timestamp,
                        watermark_tiebreak=self._encode_tiebreak(new_watermark.tiebreak_id),
                        updated_at=utcnow(),
                        consecutive_error_count=0,
                        version=1
                    ))
                else:
                    current = self._to_cursor(row)
                    self._check_commit(current, new_watermark, expected_version)
                    result = conn.execute(
                        update(self.table)
                        .where(self.table.c.entity_name == entity_name)
                        .where(self.table.c.version == current.version)
                        .values(
                            watermark_ts=new_watermark.timestamp,
                            watermark_tiebreak=self._encode_tiebreak(new_watermark.tiebreak_id),
                            updated_at=utcnow(),
                            consecutive_error_count=0,
                            version=current.version + 1
                        )
                    )
                    if result.rowcount != 1:
                        raise WatermarkConflict(
                            f"Concurrent commit detected for '{entity_name}'", entity_name
                        )
        except IntegrityError as e:
            raise WatermarkConflict(f"Concurrent commit detected for '{entity_name}': {e}", entity_name)
        except _UNAVAILABLE_ERRORS as e:
            raise StorageUnavailable(f"Cursor commit failed for {entity_name}: {e}", entity_name)
        return self.get(entity_name)

    def record_error(self, entity_name: str) -> int:
        try:
            with self.engine.begin() as conn:
                row = self._select_one(conn, entity_name)
                if row is None:
                    epoch = Watermark.epoch()
                    conn.execute(insert(self.table).values(
                        entity_name=entity_name,
                        watermark_ts=epoch.timestamp,
                        watermark_tiebreak=None,
                        updated_at=utcnow(),
                        consecutive_error_count=1,
                        version=1
                    ))
                    return 1
                conn.execute(
                    update(self.table)
                    .where(self.table.c.entity_name == entity_name)
                    .values(
                        consecutive_error_count=self.table.c.consecutive_error_count + 1,
                        version=self.table.c.version + 1,
                        updated_at=utcnow()
                    )
                )
                return row.consecutive_error_count + 1
        except _UNAVAILABLE_ERRORS as e:
            raise StorageUnavailable(f"Cursor error count update failed for {entity_name}: {e}", entity_name)

    def reset(self, entity_name: str) -> bool:
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    delete(self.table).where(self.table.c.entity_name == entity_name)
                )
                return result.rowcount > 0
        except _UNAVAILABLE_ERRORS as e:
            raise StorageUnavailable(f"Cursor reset failed for {entity_name}: {e}", entity_name)

    def list_all(self) -> List[SyncCursor]:
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(
                    select(self.table).order_by(self.table.c.entity_name)
                ).fetchall()
        except _UNAVAILABLE_ERRORS as e:
            raise StorageUnavailable(f"Cursor listing failed: {e}")
        return [self._to_cursor(row) for row in rows]
