"""Backfill of offline operator events from epoch transition blocks."""

import threading
from dataclasses import dataclass
from typing import Callable, List, Optional

import structlog

from block_ingest.models import ChainId, OfflineOperatorEvent
from block_ingest.utils.timestamps import now_ms

from .backfill import BackfillRange
from .batch_buffer import BatchBuffer
from .enrichment import OfflineOperatorExtractor
from .resume import ResumeResolver


@dataclass
class OfflineBackfillResult:

    start: int
    end: int
    blocks_scanned: int = 0
    epoch_transitions: int = 0
    offline_events: int = 0
    rows_written: int = 0
    stopped_early: bool = False


class OfflineOperatorWalker:
    """
    Scan consensus blocks for epoch completions and record offline operators.

    Blocks without an epoch completion are skipped without resolving their
    timestamp.
    """

    chain = ChainId.CONSENSUS

    def __init__(
        self,
        source,
        storage,
        settings,
        extractor: Optional[OfflineOperatorExtractor] = None,
        resolver: Optional[ResumeResolver] = None,
        stop_event: Optional[threading.Event] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.source = source
        self.storage = storage
        self.settings = settings
        self.extractor = extractor or OfflineOperatorExtractor()
        self.resolver = resolver or ResumeResolver(storage)
        self.stop_event = stop_event or threading.Event()
        self.clock = clock
        self.logger = structlog.get_logger().bind(chain=self.chain.value, dataset="offline_operators")

        self.buffer = BatchBuffer(
            self.storage.write_offline_batch,
            max_rows=settings.OFFLINE_FLUSH_ROWS,
            max_age_ms=settings.WRITE_BATCH_MS,
            context={"dataset": "offline_operators"},
        )
        self.epoch_transitions = 0
        self.offline_events = 0

    def resolve_range(self, start: Optional[int] = None, end: Optional[int] = None) -> BackfillRange:
        tip = self.source.get_tip_header().number
        k = self.settings.K_CONSENSUS
        confirmed_tip = tip - k

        end = end if end is not None else self.settings.BACKFILL_END
        end = end if end is not None else confirmed_tip

        explicit_start = start if start is not None else self.settings.BACKFILL_START
        if explicit_start is not None:
            return BackfillRange(explicit_start, end, tip, confirmed_tip, k)

        cursor = self.resolver.resolve_offline()
        if cursor is not None:
            return BackfillRange(cursor, end, tip, confirmed_tip, k, resumed=True)
        return BackfillRange(1, end, tip, confirmed_tip, k)

    def run(self, start: Optional[int] = None, end: Optional[int] = None) -> OfflineBackfillResult:
        span = self.resolve_range(start, end)
        result = OfflineBackfillResult(start=span.start, end=span.end)

        self.logger.info("Starting offline operator backfill", start=span.start, end=span.end, resumed=span.resumed)

        if span.is_empty:
            self.logger.info("Nothing to backfill", effective_start=span.start, end=span.end)
            return result

        try:
            for n in range(span.start, span.end + 1):
                if self.stop_event.is_set():
                    self.logger.info("Offline backfill interrupted", block_number=n)
                    result.stopped_early = True
                    break

                self.process_block(n)
                result.blocks_scanned += 1
                self.buffer.maybe_flush()
        except Exception:
            # the walk error takes precedence over a failed flush
            try:
                self.buffer.flush()
            except Exception as flush_error:
                self.logger.error("Final flush failed after walk error", error=str(flush_error))
            raise
        else:
            self.buffer.flush()

        result.epoch_transitions = self.epoch_transitions
        result.offline_events = self.offline_events
        result.rows_written = self.buffer.rows_flushed
        self.logger.info(
            "Offline operator backfill complete",
            epoch_transitions=result.epoch_transitions,
            offline_events=result.offline_events,
            rows_written=result.rows_written,
        )
        return result

    def process_block(self, n: int) -> List[OfflineOperatorEvent]:
        block_hash = self.source.get_block_hash(n)
        events = self.source.get_events(block_hash)

        epochs = self.extractor.extract_epoch_completed(events)
        if not epochs:
            if n % self.settings.OFFLINE_PROGRESS_INTERVAL == 0:
                self.logger.info(
                    "Scanning",
                    block_number=n,
                    epoch_transitions=self.epoch_transitions,
                    offline_events=self.offline_events,
                )
            return []

        self.epoch_transitions += len(epochs)
        ts = self.source.get_block_timestamp_ms(block_hash)

        offline = self.extractor.extract_operator_offline(events)
        self.offline_events += len(offline)

        rows = self.extractor.build_rows(
            block_number=n,
            block_hash=block_hash,
            timestamp_ms=ts,
            epochs=epochs,
            offline=offline,
            ingestion_ts_ms=self.clock(),
        )
        self.buffer.extend(rows)

        self.logger.info(
            "Epoch transition block",
            block_number=n,
            hash=block_hash,
            epoch_transitions=len(epochs),
            offline=len(offline),
            total_epochs=self.epoch_transitions,
            total_offline=self.offline_events,
        )
        return rows
