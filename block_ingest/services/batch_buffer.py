"""
In-memory row batching with a dual size/time flush policy.
"""

import threading
import time
from typing import Any, Callable, Dict, List, Optional

import structlog


def monotonic_ms() -> int:
    return int(time.monotonic() * 1000)


class BatchBuffer:
    """
    Ordered rows for one chain, handed to a writer in whole batches.

    A flush detaches the current contents under the lock and writes them
    outside it, so appends made while a write is in flight land in the next
    batch. Flushing an empty buffer performs no I/O and leaves the last-flush
    marker untouched.
    """

    def __init__(
        self,
        writer: Callable[[List[Any]], Any],
        max_rows: int,
        max_age_ms: Optional[int] = None,
        clock: Callable[[], int] = monotonic_ms,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.writer = writer
        self.max_rows = max_rows
        self.max_age_ms = max_age_ms
        self.clock = clock
        self.logger = structlog.get_logger().bind(**(context or {}))

        self._rows: List[Any] = []
        self._lock = threading.Lock()
        self.last_flush_ms = clock()
        self.flush_count = 0
        self.rows_flushed = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._rows)

    def append(self, row: Any) -> None:
        with self._lock:
            self._rows.append(row)

    def extend(self, rows: List[Any]) -> None:
        with self._lock:
            self._rows.extend(rows)

    def is_due(self) -> bool:
        with self._lock:
            pending = len(self._rows)
        if pending >= self.max_rows:
            return True
        if self.max_age_ms is not None:
            return self.clock() - self.last_flush_ms >= self.max_age_ms
        return False

    def maybe_flush(self) -> int:
        """Evaluate the flush policy; returns the number of rows written."""
        if not self.is_due():
            return 0
        return self.flush()

    def flush(self) -> int:
        """Unconditionally write whatever is buffered."""
        with self._lock:
            if not self._rows:
                return 0
            batch = self._rows
            self._rows = []

        try:
            self.writer(batch)
        except Exception as e:
            self.logger.error("Batch flush failed", count=len(batch), error=str(e))
            raise

        self.last_flush_ms = self.clock()
        self.flush_count += 1
        self.rows_flushed += len(batch)
        self.logger.info("Flushed batch", count=len(batch))
        return len(batch)
