"""
Sync Errors
===========

Error taxonomy for the polling engine.

Every error raised out of a collaborator (cursor store, source connector,
sink) is translated into one of these at the boundary, so the orchestrator
only has to decide between "retry with backoff" and "disable the entity".
"""

from typing import Any, Optional


class PollSyncError(Exception):
    """Base class for all polling engine errors."""

    kind = "error"
    retryable = True

    def __init__(self, message: str, entity_name: Optional[str] = None):
        super().__init__(message)
        self.entity_name = entity_name


class ConfigurationError(PollSyncError):
    """Invalid settings or entity definition. Raised at load/registration time."""

    kind = "configuration_error"
    retryable = False


class StorageUnavailable(PollSyncError):
    """Cursor backend could not be reached."""

    kind = "storage_unavailable"
    retryable = True


class SourceUnavailable(PollSyncError):
    """Data source could not be reached."""

    kind = "source_unavailable"
    retryable = True


class QueryMalformed(PollSyncError):
    """
    The range query for an entity is broken (missing table or column,
    bad SQL, connector breaking the ordering contract).

    Fatal for the entity: it is disabled and never retried automatically.
    """

    kind = "query_malformed"
    retryable = False


class SinkFailure(PollSyncError):
    """A record could not be applied. The whole batch is retried."""

    kind = "sink_failure"
    retryable = True

    def __init__(
        self,
        message: str,
        entity_name: Optional[str] = None,
        record: Any = None
    ):
        super().__init__(message, entity_name)
        self.record = record


class WatermarkConflict(PollSyncError):
    """
    Commit lost a compare-and-set race, or would move the watermark backward.

    The cycle is abandoned; the next cycle re-reads the cursor.
    """

    kind = "watermark_conflict"
    retryable = True


class UnexpectedSyncError(PollSyncError):
    """
    A collaborator raised something outside this taxonomy (a bug in a
    connector, processor or sink). Retried with backoff like any outage;
    the original exception is chained as ``__cause__``.
    """

    kind = "unexpected_error"
    retryable = True
