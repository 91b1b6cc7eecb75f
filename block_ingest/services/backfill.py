"""Sequential bounded-range block time backfill."""

import threading
from dataclasses import dataclass
from typing import Callable, Optional

import structlog

from block_ingest.models import BlockRecord, BlockView, ChainId
from block_ingest.utils.timestamps import now_ms

from .batch_buffer import BatchBuffer
from .enrichment import ChainStrategy, build_strategy
from .linkage import LinkageTracker
from .resume import ResumeResolver


@dataclass
class BackfillRange:

    start: int
    end: int
    tip: int
    confirmed_tip: int
    confirm_depth: int
    resumed: bool = False

    @property
    def is_empty(self) -> bool:
        return self.start > self.end


@dataclass
class BackfillResult:

    chain: ChainId
    start: int
    end: int
    blocks_scanned: int = 0
    rows_written: int = 0
    anomalies: int = 0
    stopped_early: bool = False


class BackfillWalker:
    """Walk a block range in order, emitting one row per linked transition."""

    def __init__(
        self,
        chain: ChainId,
        source,
        storage,
        settings,
        strategy: Optional[ChainStrategy] = None,
        resolver: Optional[ResumeResolver] = None,
        stop_event: Optional[threading.Event] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.chain = chain
        self.source = source
        self.storage = storage
        self.settings = settings
        self.strategy = strategy or build_strategy(chain, settings.confirmation_depth(chain))
        self.resolver = resolver or ResumeResolver(storage)
        self.stop_event = stop_event or threading.Event()
        self.clock = clock
        self.logger = structlog.get_logger().bind(chain=chain.value)

        self.tracker = LinkageTracker()
        self.buffer = BatchBuffer(
            lambda rows: self.storage.write_batch(self.chain, rows),
            max_rows=settings.WRITE_BATCH_ROWS,
            max_age_ms=settings.WRITE_BATCH_MS,
            context={"chain": chain.value},
        )
        self._anomalies = 0

    def resolve_range(
        self,
        start: Optional[int] = None,
        end: Optional[int] = None,
        confirm_depth: Optional[int] = None,
    ) -> BackfillRange:
        """
        Compute the effective range for this run.

        An explicit start (argument or BACKFILL_START) disables resuming;
        otherwise a persisted resume cursor overrides the default window.
        """
        tip = self.source.get_tip_header().number
        k = confirm_depth if confirm_depth is not None else self.strategy.confirm_depth
        confirmed_tip = tip - k

        end = end if end is not None else self.settings.BACKFILL_END
        end = end if end is not None else confirmed_tip

        explicit_start = start if start is not None else self.settings.BACKFILL_START
        if explicit_start is not None:
            return BackfillRange(explicit_start, end, tip, confirmed_tip, k)

        default_start = max(1, confirmed_tip - self.settings.BACKFILL_DEFAULT_WINDOW)
        cursor = self.resolver.resolve(self.chain)
        if cursor is not None:
            return BackfillRange(cursor, end, tip, confirmed_tip, k, resumed=True)
        return BackfillRange(default_start, end, tip, confirmed_tip, k)

    def run(
        self,
        start: Optional[int] = None,
        end: Optional[int] = None,
        confirm_depth: Optional[int] = None,
    ) -> BackfillResult:
        span = self.resolve_range(start, end, confirm_depth)
        result = BackfillResult(chain=self.chain, start=span.start, end=span.end)

        self.logger.info(
            "Starting backfill",
            start=span.start,
            end=span.end,
            tip=span.tip,
            k=span.confirm_depth,
            resumed=span.resumed,
        )

        if span.is_empty:
            self.logger.info("Nothing to backfill", effective_start=span.start, end=span.end)
            return result

        try:
            for n in range(span.start, span.end + 1):
                if self.stop_event.is_set():
                    self.logger.info("Backfill interrupted", block_number=n)
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

        result.rows_written = self.buffer.rows_flushed
        result.anomalies = self._anomalies
        self.logger.info(
            "Backfill complete",
            start=span.start,
            end=span.end,
            blocks_scanned=result.blocks_scanned,
            rows_written=result.rows_written,
            anomalies=result.anomalies,
        )
        return result

    def process_block(self, n: int) -> Optional[BlockRecord]:
        """Fetch block n, step the tracker and buffer a row if the step is linear."""
        block_hash = self.source.get_block_hash(n)
        header = self.source.get_header(block_hash)
        block_hash = header.hash or block_hash
        ts = self.source.get_timestamp_ms(block_hash)

        step = self.tracker.step(header.parent_hash, block_hash, ts)

        if n % self.settings.BACKFILL_LOG_INTERVAL == 0:
            self.logger.info(
                "Processed block",
                block_number=n,
                hash=block_hash,
                parent_hash=header.parent_hash,
                timestamp_ms=ts,
            )

        if step.is_anomaly:
            self._anomalies += 1
            self.logger.warning(
                "Non-linear backfill step; skipping delta",
                block_number=n,
                hash=block_hash,
                parent_hash=header.parent_hash,
                previous_hash=step.previous.hash,
            )
            return None
        if not step.emitted:
            return None

        events = self.source.get_events(block_hash) if self.strategy.needs_events else None
        record = BlockRecord(
            chain=self.chain,
            block_number=n,
            hash=block_hash,
            parent_hash=header.parent_hash,
            timestamp_ms=ts,
            delta_since_parent_ms=step.delta_ms,
            ingestion_ts_ms=self.clock(),
            extension=self.strategy.enrich(BlockView(header=header, events=events)),
        )
        self.buffer.append(record)
        return record
