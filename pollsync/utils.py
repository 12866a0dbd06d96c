"""
Common Utilities
================

Timestamp and value normalization shared by connectors and cursor backends.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional
import uuid

import pandas as pd

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Formats seen in source tables that store timestamps as text
TIMESTAMP_FORMATS = [
    "%Y-%m-%d %H:%M:%S.%f",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%dT%H:%M:%S",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y",
]


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_utc(value: datetime) -> datetime:
    """Naive datetimes are taken as UTC; aware ones are converted."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a timestamp from the representations drivers hand back.

    Args:
        value: datetime, pandas Timestamp, ISO-8601 / common-format string,
            or epoch seconds

    Returns:
        Timezone-aware UTC datetime, or None if the value is empty or unparseable
    """
    if value is None or value is pd.NaT:
        return None

    if isinstance(value, pd.Timestamp):
        if pd.isna(value):
            return None
        return to_utc(value.to_pydatetime())

    if isinstance(value, datetime):
        return to_utc(value)

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc)

    value_str = str(value).strip()
    if value_str == "":
        return None

    try:
        return to_utc(datetime.fromisoformat(value_str.replace("Z", "+00:00")))
    except ValueError:
        pass

    for fmt in TIMESTAMP_FORMATS:
        try:
            return to_utc(datetime.strptime(value_str, fmt))
        except ValueError:
            continue
    return None


def native_value(value: Any) -> Any:
    """Unwrap numpy scalars so tiebreak ids compare and serialize like plain Python values."""
    if hasattr(value, "item") and not isinstance(value, (str, bytes)):
        try:
            return value.item()
        except (TypeError, ValueError):
            return value
    return value


def normalize_tiebreak(value: Any) -> Any:
    """
    Tiebreak ids as int, float or str so they order the same way in Python
    as in the source and round-trip through JSON unchanged.

    NUMERIC/DECIMAL keys come back as Decimal: integral values become int,
    others float. UUIDs become their canonical string.
    """
    value = native_value(value)
    if isinstance(value, Decimal):
        if value.is_finite() and value == value.to_integral_value():
            return int(value)
        return float(value)
    if isinstance(value, uuid.UUID):
        return str(value)
    return value


def generate_cycle_id() -> str:
    """Short id used to correlate the log lines of one sync cycle."""
    return str(uuid.uuid4())[:8]
