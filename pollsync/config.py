"""
Configuration
=============

Loads ``task_settings.json`` and ``table_mappings.json`` from a config
directory and wires them into a ready-to-run orchestrator.

table_mappings.json uses selection rules:

    {
        "rule-type": "selection",
        "rule-id": "1",
        "rule-name": "orders",
        "object-locator": {"schema-name": "shop", "table-name": "orders"},
        "rule-action": "explicit",
        "poll-config": {
            "tracking_column": "updated_at",
            "tiebreak_column": "id",
            "batch_size": 500,
            "delete_detection": {"column": "is_deleted", "delete_value": 1}
        }
    }

Rules with ``"rule-action": "exclude"`` are skipped. Values missing from
``poll-config`` fall back to ``task_settings.defaults`` and then to
``DEFAULT_ENTITY_SETTINGS``.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .connectors.base import Sink, SourceConnector
from .connectors.minio_sink import MinIOSink
from .connectors.sinks import LoggingSink
from .connectors.sql_connector import SqlSourceConnector
from .cursor_store import CursorStore, InMemoryCursorStore, JsonFileCursorStore, SqlCursorStore
from .errors import ConfigurationError
from .health import HealthMonitor
from .models import TrackedEntity
from .observability.alerts import AlertManager
from .observability.logging import configure_logging
from .observability.metrics import MetricsCollector
from .orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)


DEFAULT_CONFIG_PATH = str(Path(__file__).parent / "configs")

# Per-entity defaults; task_settings.defaults and poll-config override these
DEFAULT_ENTITY_SETTINGS = {
    "tracking_column": "updated_at",
    "tiebreak_column": "id",
    "batch_size": 500,
    "poll_interval": 30.0,
    "backoff_base": 1.0,
    "backoff_cap": 6,
    "error_threshold": 5,
    "staleness_sla": 3600.0,
    "latency_budget": None,
    "max_fast_cycles": 10,
    "call_timeout": 30.0,
    "delete_detection": None
}

# poll-config keys passed straight through to TrackedEntity
_ENTITY_FIELDS = (
    "batch_size", "poll_interval", "backoff_base", "backoff_cap",
    "error_threshold", "staleness_sla", "latency_budget",
    "max_fast_cycles", "call_timeout", "delete_detection"
)


@dataclass
class Settings:
    """Parsed configuration files."""

    config_path: str
    task_settings: Dict[str, Any] = field(default_factory=dict)
    table_mappings: Dict[str, Any] = field(default_factory=dict)

    def section(self, name: str) -> Dict[str, Any]:
        return self.task_settings.get(name) or {}

    @property
    def general(self) -> Dict[str, Any]:
        return self.section("task_settings")

    @property
    def logging(self) -> Dict[str, Any]:
        return self.general.get("logging") or {}

    @property
    def defaults(self) -> Dict[str, Any]:
        return {**DEFAULT_ENTITY_SETTINGS, **(self.general.get("defaults") or {})}


def _load_json(path: str) -> Dict:
    try:
        with open(path, 'r') as f:
            return json.load(f)
    except FileNotFoundError:
        raise ConfigurationError(f"Config file not found: {path}")
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON in {path}: {e}")


def load_settings(config_path: Optional[str] = None) -> Settings:
    """
    Load task settings and table mappings.

    Args:
        config_path: Directory holding task_settings.json and
            table_mappings.json (defaults to the bundled configs)

    Returns:
        Settings

    Raises:
        ConfigurationError: a file is missing or not valid JSON
    """
    config_path = config_path or DEFAULT_CONFIG_PATH
    settings = Settings(
        config_path=config_path,
        task_settings=_load_json(os.path.join(config_path, "task_settings.json")),
        table_mappings=_load_json(os.path.join(config_path, "table_mappings.json"))
    )
    logger.debug(f"Loaded settings from {config_path}")
    return settings


def setup_logging(settings: Settings):
    """Apply the ``task_settings.logging`` block."""
    log_settings = settings.logging
    configure_logging(
        level=log_settings.get("level", "INFO"),
        json_format=log_settings.get("json", False),
        log_to_file=log_settings.get("log_to_file", False),
        log_path=log_settings.get("log_path", "logs/pollsync.log")
    )


# =========================================
# ENTITIES
# =========================================

def get_entity_rules(settings: Settings) -> List[Dict]:
    """Explicit selection rules, in file order."""
    rules = []
    for rule in settings.table_mappings.get("rules", []):
        if rule.get("rule-type") == "selection" and rule.get("rule-action") == "explicit":
            rules.append(rule)
    return rules


def entity_from_rule(rule: Dict, defaults: Dict) -> TrackedEntity:
    """Build one TrackedEntity from a selection rule."""
    locator = rule.get("object-locator") or {}
    table = locator.get("table-name")
    schema = locator.get("schema-name")
    poll_config = {**defaults, **(rule.get("poll-config") or {})}

    query = poll_config.get("query")
    if not query:
        if not table:
            raise ConfigurationError(
                f"Rule {rule.get('rule-id')} needs object-locator.table-name or poll-config.query"
            )
        query = f"{schema}.{table}" if schema and schema != "%" else table

    name = rule.get("rule-name") or table
    kwargs = {key: poll_config[key] for key in _ENTITY_FIELDS if key in poll_config}

    try:
        return TrackedEntity(
            name=name,
            query_template=query,
            ordering_columns=(poll_config["tracking_column"], poll_config["tiebreak_column"]),
            **kwargs
        )
    except TypeError as e:
        raise ConfigurationError(f"Invalid poll-config for {name}: {e}", name)


def build_entities(settings: Settings) -> List[TrackedEntity]:
    """
    Tracked entities from table_mappings.json.

    Raises:
        ConfigurationError: invalid rule or duplicate entity name
    """
    defaults = settings.defaults
    entities = []
    seen = set()

    for rule in get_entity_rules(settings):
        entity = entity_from_rule(rule, defaults)
        if entity.name in seen:
            raise ConfigurationError(f"Duplicate entity name in table mappings: {entity.name}", entity.name)
        seen.add(entity.name)
        entities.append(entity)

    logger.info(f"Loaded {len(entities)} tracked entities")
    return entities


# =========================================
# COLLABORATORS
# =========================================

def build_cursor_store(settings: Settings) -> CursorStore:
    config = settings.section("cursor_store")
    backend = config.get("backend", "json")

    if backend == "memory":
        return InMemoryCursorStore()
    if backend == "json":
        return JsonFileCursorStore(config.get("path", "state/cursors.json"))
    if backend == "sql":
        if not config.get("url"):
            raise ConfigurationError("cursor_store.url is required for the sql backend")
        return SqlCursorStore(url=config["url"], table_name=config.get("table_name", "pollsync_cursors"))
    raise ConfigurationError(f"Unknown cursor_store backend: {backend}")


def build_source_connector(settings: Settings) -> SourceConnector:
    source = settings.section("source")
    connection = source.get("connection")
    if not connection:
        raise ConfigurationError("source.connection is required")
    return SqlSourceConnector(dict(connection))


def build_sink(settings: Settings) -> Sink:
    config = settings.section("sink")
    sink_type = config.get("type", "log")

    if sink_type == "log":
        return LoggingSink()
    if sink_type == "minio":
        connection = dict(config.get("connection") or {})
        connection.setdefault("bucket", config.get("bucket", "raw-data"))
        connection.setdefault("prefix", config.get("prefix", "pollsync"))
        connection.setdefault("file_format", config.get("file_format", "json"))
        try:
            return MinIOSink(connection)
        except ValueError as e:
            raise ConfigurationError(str(e))
    raise ConfigurationError(f"Unknown sink type: {sink_type}")


def build_metrics(settings: Settings) -> MetricsCollector:
    config = settings.section("metrics")
    try:
        return MetricsCollector(
            backend=config.get("backend", "memory"),
            pushgateway_url=config.get("pushgateway_url"),
            job_name=config.get("job_name", "pollsync")
        )
    except ValueError as e:
        raise ConfigurationError(str(e))


def build_alert_manager(settings: Settings) -> AlertManager:
    config = settings.section("alerts")
    return AlertManager(
        postgres_config=config.get("postgres"),
        slack_webhook_url=config.get("slack_webhook_url"),
        dedup_window_minutes=config.get("dedup_window_minutes", 60)
    )


def build_orchestrator(
    settings: Settings,
    connector: Optional[SourceConnector] = None,
    sink: Optional[Any] = None,
    cursor_store: Optional[CursorStore] = None
) -> SyncOrchestrator:
    """
    Wire a SyncOrchestrator from settings, registering every tracked entity.

    All entities share one source connector (and so one SQLAlchemy engine
    pool) and one sink. Any collaborator can be passed in to override the
    configured one.
    """
    metrics = build_metrics(settings)
    monitor = HealthMonitor(alert_sink=build_alert_manager(settings), metrics=metrics)
    orchestrator = SyncOrchestrator(
        cursor_store=cursor_store or build_cursor_store(settings),
        health_monitor=monitor,
        metrics=metrics,
        health_check_interval=settings.general.get("health_check_interval", 60.0)
    )

    connector = connector or build_source_connector(settings)
    sink = sink or build_sink(settings)
    for entity in build_entities(settings):
        orchestrator.register(entity, connector, sink)

    return orchestrator
