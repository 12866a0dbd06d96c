"""
SQL Source Connector
====================

Connector for polling changed rows out of any SQLAlchemy-supported database.

Queries use keyset pagination on (timestamp column, tiebreak column):

    WHERE ts > :ts OR (ts = :ts AND id > :id)
    ORDER BY ts, id
    LIMIT :limit

Offsets are never used; they shift under concurrent writes. On SQLite the
timestamp side is compared in a canonical text form, since DATETIME values
there are plain strings.
"""

import logging
import re
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    DateTime, MetaData, String, Table, and_, case, create_engine, func, literal,
    literal_column, or_, select, text
)
from sqlalchemy.exc import (
    ArgumentError, CompileError, DisconnectionError, InterfaceError,
    NoSuchTableError, OperationalError, ProgrammingError, SQLAlchemyError
)

from ..errors import QueryMalformed, SourceUnavailable
from ..models import TrackedEntity, Watermark
from ..utils import native_value
from .base import SourceConnector

logger = logging.getLogger(__name__)

_SELECT_RE = re.compile(r"^\s*(select|with)\b", re.IGNORECASE)

# Driver messages that mean the query itself is wrong, even when the driver
# reports them as OperationalError (SQLite, MySQL)
_MALFORMED_HINTS = (
    "no such table",
    "no such column",
    "syntax error",
    "unknown column",
    "doesn't exist",
    "does not exist",
)


class SqlSourceConnector(SourceConnector):
    """
    SQL database connector for incremental change extraction.
    """

    def __init__(self, config: Dict):
        """
        Initialize SQL connector.

        Args:
            config: Connection configuration dict. Either ``url`` (any
                SQLAlchemy URL) or ``dialect``/``username``/``password``/
                ``host``/``port``/``database``. ``timezone_aware`` marks text
                query templates whose timestamp column carries a time zone.
        """
        self.config = config
        self.engine = None
        self._selectables: Dict[str, Any] = {}

    @property
    def connection_string(self) -> str:
        if self.config.get("url"):
            return self.config["url"]
        return (
            f"{self.config.get('dialect', 'mysql+pymysql')}://"
            f"{self.config['username']}:{self.config['password']}"
            f"@{self.config['host']}:{self.config['port']}/{self.config['database']}"
        )

    def connect(self):
        """Establish connection to the source database."""
        self.engine = create_engine(self.connection_string, pool_pre_ping=True)

        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except (OperationalError, InterfaceError, DisconnectionError) as e:
            raise SourceUnavailable(f"Cannot connect to source database: {e}")

        logger.info(f"Connected to source: {self.engine.url.render_as_string(hide_password=True)}")

    def disconnect(self):
        """Close database connection."""
        if self.engine:
            self.engine.dispose()
            self.engine = None
            self._selectables.clear()
            logger.info("Source connection closed")

    def _ensure_engine(self):
        if self.engine is None:
            self.connect()

    # =========================================
    # QUERY BUILDING
    # =========================================

    def _resolve(self, entity: TrackedEntity):
        """
        Return (from clause, timestamp column, tiebreak column) for an entity.

        Table names are reflected so column types drive parameter binding.
        SELECT templates are wrapped as a derived table.
        """
        if entity.name in self._selectables:
            return self._selectables[entity.name]

        template = entity.query_template.strip().rstrip(";")

        if _SELECT_RE.match(template):
            source = text(template).columns().subquery("src")
            timezone = bool(self.config.get("timezone_aware", False))
            ts_col = literal_column(f"src.{entity.timestamp_column}", type_=DateTime(timezone=timezone))
            tb_col = literal_column(f"src.{entity.tiebreak_column}")
            resolved = (source, ts_col, tb_col)
        else:
            schema, _, table_name = template.rpartition(".")
            try:
                table = Table(
                    table_name,
                    MetaData(),
                    schema=schema or None,
                    autoload_with=self.engine
                )
            except NoSuchTableError:
                raise QueryMalformed(f"Table not found: {template}", entity.name)

            missing = [c for c in entity.ordering_columns if c not in table.c]
            if missing:
                raise QueryMalformed(
                    f"Table {template} has no ordering column(s) {missing}", entity.name
                )
            resolved = (table, table.c[entity.timestamp_column], table.c[entity.tiebreak_column])

        self._selectables[entity.name] = resolved
        return resolved

    def _stores_text_timestamps(self, column) -> bool:
        # SQLite keeps DATETIME as text, compared byte-wise
        return self.engine.dialect.name == "sqlite" and isinstance(column.type, DateTime)

    def _timestamp_key(self, column):
        """
        Expression the timestamp column is compared and ordered by.

        On SQLite, text values written by other clients may use a ``T``
        separator or drop the fractional seconds ('2024-03-01 12:00:00'),
        which does not compare equal to SQLAlchemy's
        '2024-03-01 12:00:00.000000'. Both sides are brought to the
        ``YYYY-MM-DD HH:MM:SS.ffffff`` form before comparing.
        """
        if not self._stores_text_timestamps(column):
            return column

        value = func.replace(column, "T", " ", type_=String)
        padded = func.substr(value, 20, 7, type_=String).concat(literal("000000", String))
        fraction = case(
            (func.substr(value, 20, 1, type_=String) == ".", func.substr(padded, 1, 7, type_=String)),
            else_=literal(".000000", String)
        )
        return func.substr(value, 1, 19, type_=String).concat(fraction)

    def _bind_timestamp(self, column, watermark: Watermark):
        if self._stores_text_timestamps(column):
            naive = watermark.timestamp.replace(tzinfo=None)
            return literal(naive.strftime("%Y-%m-%d %H:%M:%S.%f"), String)
        # Naive columns hold UTC wall-clock values
        if getattr(column.type, "timezone", False):
            return watermark.timestamp
        return watermark.timestamp.replace(tzinfo=None)

    def _keyset_predicate(self, ts_col, tb_col, watermark: Watermark):
        ts_key = self._timestamp_key(ts_col)
        ts_value = self._bind_timestamp(ts_col, watermark)
        if watermark.tiebreak_id is None:
            # (ts, None) sorts below every concrete id at ts
            return ts_key >= ts_value
        return or_(
            ts_key > ts_value,
            and_(ts_key == ts_value, tb_col > watermark.tiebreak_id)
        )

    def build_query(self, entity: TrackedEntity, watermark: Watermark, limit: int):
        """
        Build the keyset range query for one batch.

        Args:
            entity: Tracked entity
            watermark: Exclusive lower bound
            limit: Maximum rows

        Returns:
            SQLAlchemy Select
        """
        source, ts_col, tb_col = self._resolve(entity)
        predicate = self._keyset_predicate(ts_col, tb_col, watermark)

        if isinstance(source, Table):
            stmt = select(source)
        else:
            stmt = select(literal_column("*")).select_from(source)

        return stmt.where(predicate).order_by(self._timestamp_key(ts_col), tb_col).limit(limit)

    # =========================================
    # EXTRACTION
    # =========================================

    def fetch_rows(
        self,
        entity: TrackedEntity,
        watermark: Watermark,
        limit: int
    ) -> List[Dict[str, Any]]:
        """
        Extract the next batch of changed rows.

        Args:
            entity: Tracked entity
            watermark: Last committed watermark (exclusive)
            limit: Maximum rows to return

        Returns:
            List of row dicts, ascending by (timestamp, tiebreak)
        """
        try:
            self._ensure_engine()
            stmt = self.build_query(entity, watermark, limit)
            with self.engine.connect() as conn:
                rows = conn.execute(stmt).mappings().all()
        except (QueryMalformed, SourceUnavailable):
            raise
        except (ProgrammingError, CompileError, ArgumentError) as e:
            raise QueryMalformed(f"Range query failed for {entity.name}: {e}", entity.name)
        except (OperationalError, InterfaceError, DisconnectionError) as e:
            if any(hint in str(e).lower() for hint in _MALFORMED_HINTS):
                raise QueryMalformed(f"Range query failed for {entity.name}: {e}", entity.name)
            raise SourceUnavailable(f"Source unreachable for {entity.name}: {e}", entity.name)
        except SQLAlchemyError as e:
            raise SourceUnavailable(f"Range query failed for {entity.name}: {e}", entity.name)

        batch = [{key: native_value(value) for key, value in row.items()} for row in rows]
        logger.info(f"Extracted {len(batch)} changed rows from {entity.name} (watermark: {watermark})")
        return batch

    # =========================================
    # INTROSPECTION
    # =========================================

    def check_connection(self) -> bool:
        """Return True if the source answers ``SELECT 1``."""
        try:
            self._ensure_engine()
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except (SourceUnavailable, SQLAlchemyError) as e:
            logger.error(f"Source connection check failed: {e}")
            return False

    def get_row_count(self, entity: TrackedEntity) -> int:
        """Row count of the entity's table or query."""
        self._ensure_engine()
        source, _, _ = self._resolve(entity)
        stmt = select(func.count()).select_from(source)
        with self.engine.connect() as conn:
            return conn.execute(stmt).scalar()

    def get_backlog(self, entity: TrackedEntity, watermark: Watermark) -> Optional[int]:
        """Number of rows still ahead of ``watermark``."""
        self._ensure_engine()
        source, ts_col, tb_col = self._resolve(entity)
        predicate = self._keyset_predicate(ts_col, tb_col, watermark)
        stmt = select(func.count()).select_from(source).where(predicate)
        with self.engine.connect() as conn:
            return conn.execute(stmt).scalar()
