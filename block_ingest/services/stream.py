"""
Live block time ingestion driven by new-head notifications.

One StreamSubscriber runs per chain on its own thread with its own tracker,
buffer and storage handle. Head handling and the liveness flush timer share a
lock so tracker updates and appends never interleave.
"""

import threading
import time
from typing import Callable, Dict, Iterable, List, Optional

import structlog

from block_ingest.models import BlockHeader, BlockRecord, BlockView, ChainId
from block_ingest.utils.exceptions import IngestError
from block_ingest.utils.timestamps import now_ms

from .batch_buffer import BatchBuffer, monotonic_ms
from .enrichment import ChainStrategy, build_strategy
from .error_handler import ErrorHandler
from .linkage import LinkageTracker
from .substrate_rpc import TRANSIENT_ERRORS

logger = structlog.get_logger()


class StreamSubscriber:
    """Unbounded ingestion for one chain"""

    def __init__(
        self,
        chain: ChainId,
        source,
        storage,
        settings,
        strategy: Optional[ChainStrategy] = None,
        stop_event: Optional[threading.Event] = None,
        error_handler: Optional[ErrorHandler] = None,
        clock: Callable[[], int] = now_ms,
        buffer_clock: Callable[[], int] = monotonic_ms,
    ):
        self.chain = chain
        self.source = source
        self.storage = storage
        self.settings = settings
        self.strategy = strategy or build_strategy(chain, settings.confirmation_depth(chain))
        self.stop_event = stop_event or threading.Event()
        self.error_handler = error_handler or ErrorHandler(
            base_delay=settings.RPC_BASE_DELAY,
            max_delay=settings.RPC_MAX_DELAY,
            max_retries=settings.RPC_MAX_RETRIES,
        )
        self.clock = clock
        self.logger = structlog.get_logger().bind(chain=chain.value)

        self.tracker = LinkageTracker()
        self.buffer = BatchBuffer(
            lambda rows: self.storage.write_batch(self.chain, rows),
            max_rows=settings.WRITE_BATCH_ROWS,
            max_age_ms=settings.WRITE_BATCH_MS,
            clock=buffer_clock,
            context={"chain": chain.value},
        )
        self.enrich_events = settings.STREAM_ENRICH_EVENTS
        self.flush_interval = settings.STREAM_FLUSH_INTERVAL_S

        self._lock = threading.Lock()
        # serializes buffer writes across head, timer and shutdown paths
        self._flush_lock = threading.Lock()
        self._timer: Optional[threading.Thread] = None
        self.error: Optional[BaseException] = None
        self.heads_seen = 0
        self.reorg_edges = 0

    def on_new_head(self, header: BlockHeader) -> Optional[BlockRecord]:
        """Handle one new-head notification."""
        if self.stop_event.is_set():
            return None

        with self._lock:
            record = self._link(header)

        if record is not None:
            self._flush(force=False)
        return record

    def _link(self, header: BlockHeader) -> Optional[BlockRecord]:
        self.heads_seen += 1
        ts = self.source.get_timestamp_ms(header.hash)
        step = self.tracker.step(header.parent_hash, header.hash, ts)

        if step.is_anomaly:
            self.reorg_edges += 1
            self.logger.warning(
                "Reorg edge detected; skipping delta",
                block_number=header.number,
                hash=header.hash,
                parent_hash=header.parent_hash,
                last=step.previous.hash,
            )
            return None
        if not step.emitted:
            return None

        events = None
        if self.strategy.needs_events and self.enrich_events:
            events = self.source.get_events(header.hash)

        record = BlockRecord(
            chain=self.chain,
            block_number=header.number,
            hash=header.hash,
            parent_hash=header.parent_hash,
            timestamp_ms=ts,
            delta_since_parent_ms=step.delta_ms,
            ingestion_ts_ms=self.clock(),
            extension=self.strategy.enrich(BlockView(header=header, events=events)),
        )
        self.buffer.append(record)
        return record

    def tick(self) -> int:
        """Liveness timer evaluation of the time-based flush condition."""
        return self._flush(force=False)

    def _flush(self, force: bool) -> int:
        try:
            with self._flush_lock:
                return self.buffer.flush() if force else self.buffer.maybe_flush()
        except Exception as e:
            self.error_handler.handle_persistence_error(e, {"chain": self.chain.value})
            self._fail(e)
            raise

    def _fail(self, error: BaseException) -> None:
        if self.error is None:
            self.error = error
        self.stop_event.set()

    def _timer_loop(self) -> None:
        while not self.stop_event.wait(self.flush_interval):
            try:
                self.tick()
            except Exception:
                # already recorded by _flush
                return

    def start_timer(self) -> None:
        self._timer = threading.Thread(
            target=self._timer_loop, name=f"flush-timer-{self.chain.value}", daemon=True
        )
        self._timer.start()

    def run(self) -> None:
        """Subscribe until stopped, resubscribing after transient failures."""
        self.logger.info("Starting stream")
        self.start_timer()
        attempt = 0
        try:
            while not self.stop_event.is_set():
                try:
                    self.source.subscribe_new_heads(self.on_new_head, self.stop_event)
                    attempt = 0
                except TRANSIENT_ERRORS as e:
                    attempt += 1
                    if not self.error_handler.handle_rpc_error(e, {"function": "subscribe_new_heads", "attempt": attempt}):
                        self._fail(e)
                        break
                    self.stop_event.wait(self.error_handler.get_retry_delay(attempt))
                except Exception as e:
                    if self.error is None:
                        self.logger.error("Stream failed", error=str(e))
                    self._fail(e)
                    break
        finally:
            self.shutdown()

    def shutdown(self) -> int:
        """Stop accepting heads and write any buffered rows."""
        self.stop_event.set()
        # wait out a head that is mid-append
        with self._lock:
            pass
        # let an in-flight timer flush finish before the final write
        if self._timer is not None and self._timer is not threading.current_thread():
            self._timer.join()
        try:
            with self._flush_lock:
                written = self.buffer.flush()
        except Exception as e:
            self.error_handler.handle_persistence_error(e, {"chain": self.chain.value, "phase": "shutdown"})
            if self.error is None:
                self.error = e
            return 0
        if written:
            self.logger.info("Flushed on shutdown", count=written)
        return written


def run_streams(
    chains: Iterable[ChainId],
    settings,
    source_factory: Callable[[ChainId], object],
    storage_factory: Callable[[], object],
    stop_event: Optional[threading.Event] = None,
    join_timeout: float = 0.5,
) -> List[StreamSubscriber]:
    """
    Run one subscriber per chain concurrently until stopped or one fails.

    Chains without a configured endpoint are skipped with a warning.

    Raises:
        IngestError: If any subscriber stopped because of an error
    """
    stop_event = stop_event or threading.Event()
    subscribers: List[StreamSubscriber] = []
    for chain in chains:
        if not settings.has_endpoint(chain):
            logger.warning("No RPC endpoint configured; skipping stream", chain=chain.value)
            continue
        subscribers.append(
            StreamSubscriber(
                chain,
                source_factory(chain),
                storage_factory(),
                settings,
                stop_event=stop_event,
            )
        )

    if not subscribers:
        logger.warning("No chains to stream")
        return subscribers

    threads: Dict[ChainId, threading.Thread] = {}
    for sub in subscribers:
        thread = threading.Thread(target=sub.run, name=f"stream-{sub.chain.value}", daemon=True)
        thread.start()
        threads[sub.chain] = thread

    try:
        while any(t.is_alive() for t in threads.values()) and not stop_event.is_set():
            time.sleep(join_timeout)
    finally:
        stop_event.set()
        for sub in subscribers:
            threads[sub.chain].join(timeout=join_timeout)
            if threads[sub.chain].is_alive():
                # still blocked waiting for the next head
                sub.shutdown()

    failed = [sub for sub in subscribers if sub.error is not None]
    if failed:
        first = failed[0]
        raise IngestError(f"Stream for chain '{first.chain.value}' failed: {first.error}")
    return subscribers
