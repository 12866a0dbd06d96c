"""
Sync Connectors
===============

Source connectors and sinks for the polling engine.
"""

from .base import SourceConnector, Sink
from .memory_connector import MemorySourceConnector
from .sql_connector import SqlSourceConnector
from .sinks import CallableSink, LoggingSink
from .minio_sink import MinIOSink

__all__ = [
    "SourceConnector",
    "Sink",
    "MemorySourceConnector",
    "SqlSourceConnector",
    "CallableSink",
    "LoggingSink",
    "MinIOSink",
]
