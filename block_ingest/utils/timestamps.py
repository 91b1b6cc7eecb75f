"""
Millisecond timestamp helpers shared by row models and storage partitioning.
"""

import time
from datetime import datetime, timezone


def now_ms() -> int:
    return int(time.time() * 1000)


def ms_to_datetime(timestamp_ms: int) -> datetime:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)


def ms_to_iso(timestamp_ms: int) -> str:
    """
    ISO-8601 UTC string with millisecond precision, e.g. 2024-05-01T12:00:00.000Z
    """
    dt = ms_to_datetime(timestamp_ms)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{timestamp_ms % 1000:03d}Z"


def partition_date(timestamp_ms: int) -> str:
    return ms_to_datetime(timestamp_ms).strftime("%Y-%m-%d")
