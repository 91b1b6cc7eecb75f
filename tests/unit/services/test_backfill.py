"""
Tests for the bounded-range backfill walker.
"""

import threading

import pytest

from block_ingest.models import ChainEvent, ChainId, DigestLog
from block_ingest.services.backfill import BackfillWalker
from block_ingest.utils.exceptions import PersistenceError, TransientSourceError


def walker_for(chain, source, storage, settings, **kwargs):
    return BackfillWalker(chain, source, storage, settings, clock=lambda: 42, **kwargs)


class TestResolveRange:

    def test_default_window_below_confirmed_tip(self, source, storage, make_settings):
        source.tip = 10_000
        settings = make_settings(K_CONSENSUS=64, BACKFILL_DEFAULT_WINDOW=5000)
        span = walker_for(ChainId.CONSENSUS, source, storage, settings).resolve_range()
        assert (span.start, span.end, span.confirmed_tip) == (4936, 9936, 9936)
        assert not span.resumed

    def test_default_window_clamped_to_one(self, source, storage, make_settings):
        source.tip = 100
        settings = make_settings(K_CONSENSUS=10)
        span = walker_for(ChainId.CONSENSUS, source, storage, settings).resolve_range()
        assert (span.start, span.end) == (1, 90)

    def test_resume_overrides_default(self, source, make_storage, make_settings):
        source.tip = 10_000
        settings = make_settings(K_CONSENSUS=64)
        span = walker_for(ChainId.CONSENSUS, source, make_storage(max_block=1234), settings).resolve_range()
        assert span.start == 1235
        assert span.resumed

    def test_explicit_start_disables_resume(self, source, make_storage, settings):
        source.tip = 10_000
        span = walker_for(ChainId.CONSENSUS, source, make_storage(max_block=1234), settings).resolve_range(start=10, end=20)
        assert (span.start, span.end, span.resumed) == (10, 20, False)

    def test_configured_start_counts_as_explicit(self, source, make_storage, make_settings):
        source.tip = 10_000
        settings = make_settings(BACKFILL_START=50, BACKFILL_END=60)
        span = walker_for(ChainId.CONSENSUS, source, make_storage(max_block=1234), settings).resolve_range()
        assert (span.start, span.end, span.resumed) == (50, 60, False)

    def test_confirm_depth_override(self, source, storage, make_settings):
        source.tip = 1000
        settings = make_settings(K_AUTO_EVM=64)
        span = walker_for(ChainId.AUTO_EVM, source, storage, settings).resolve_range(start=1, confirm_depth=100)
        assert span.end == 900
        assert span.confirm_depth == 100


class TestRun:

    def test_n_plus_one_blocks_give_n_rows(self, source, storage, settings):
        source.add_linear(100, [1000, 2000, 3000, 4000])
        result = walker_for(ChainId.CONSENSUS, source, storage, settings).run(start=100, end=103)

        rows = storage.rows(ChainId.CONSENSUS)
        assert [r.block_number for r in rows] == [101, 102, 103]
        assert [r.delta_since_parent_ms for r in rows] == [1000, 1000, 1000]
        assert all(r.ingestion_ts_ms == 42 for r in rows)
        assert result.rows_written == 3
        assert result.blocks_scanned == 4

    def test_resumed_range_skips_first_block(self, source, make_storage, settings):
        source.add_linear(1, [i * 6000 for i in range(10)])
        source.tip = 10
        storage = make_storage(max_block=5)
        result = walker_for(ChainId.CONSENSUS, source, storage, settings).run()

        assert result.start == 6
        assert [r.block_number for r in storage.rows(ChainId.CONSENSUS)] == [7, 8, 9, 10]

    def test_mismatch_suppresses_only_that_block(self, source, storage, settings):
        source.add_linear(1, [6000, 12000, 18000])
        source.add_block(4, 24000, parent_hash="0xforked")
        source.add_block(5, 30000)
        result = walker_for(ChainId.CONSENSUS, source, storage, settings).run(start=1, end=5)

        assert [r.block_number for r in storage.rows(ChainId.CONSENSUS)] == [2, 3, 5]
        assert result.anomalies == 1

    def test_empty_range(self, source, storage, settings):
        source.add_linear(1, [1000, 2000])
        result = walker_for(ChainId.CONSENSUS, source, storage, settings).run(start=5, end=2)
        assert result.blocks_scanned == 0
        assert storage.batches == {}
        assert source.called("get_block_hash") == []

    def test_batches_by_row_count(self, source, storage, make_settings):
        source.add_linear(1, [i * 1000 for i in range(1, 8)])
        settings = make_settings(WRITE_BATCH_ROWS=2)
        walker_for(ChainId.CONSENSUS, source, storage, settings).run(start=1, end=7)

        sizes = [len(batch) for batch in storage.batches[ChainId.CONSENSUS]]
        assert sizes == [2, 2, 2]

    def test_consensus_rows_enriched_from_events(self, source, storage, settings):
        source.add_block(1, 1000)
        source.add_block(
            2,
            2000,
            events=[
                ChainEvent("Subspace", "SegmentHeaderStored", {}),
                ChainEvent("Domains", "BundleStored", {}),
            ],
        )
        walker_for(ChainId.CONSENSUS, source, storage, settings).run(start=1, end=2)

        [row] = storage.rows(ChainId.CONSENSUS)
        assert row.extension == {"contains_segment_header": True, "bundle_count": 1}
        # the first block emits no row so its events are never fetched
        assert source.called("get_events") == [row.hash]

    def test_auto_evm_rows_use_header_digest(self, source, storage, settings):
        source.add_block(1, 1000)
        source.add_block(2, 2000, digest_logs=[DigestLog("PreRuntime", b"RGTR", b"\xab" * 32)])
        walker_for(ChainId.AUTO_EVM, source, storage, settings).run(start=1, end=2)

        [row] = storage.rows(ChainId.AUTO_EVM)
        assert row.extension == {"consensus_block_hash": "0x" + "ab" * 32}
        assert source.called("get_events") == []

    def test_stop_event_flushes_buffered_rows(self, source, storage, settings):
        source.add_linear(1, [1000, 2000, 3000, 4000])
        stop_event = threading.Event()
        walker = walker_for(ChainId.CONSENSUS, source, storage, settings, stop_event=stop_event)

        original = walker.process_block

        def process_then_stop(n):
            record = original(n)
            if n == 3:
                stop_event.set()
            return record

        walker.process_block = process_then_stop
        result = walker.run(start=1, end=4)

        assert result.stopped_early
        assert [r.block_number for r in storage.rows(ChainId.CONSENSUS)] == [2, 3]

    def test_persistence_failure_propagates(self, source, make_storage, settings):
        source.add_linear(1, [1000, 2000])
        with pytest.raises(PersistenceError):
            walker_for(ChainId.CONSENSUS, source, make_storage(fail=True), settings).run(start=1, end=2)

    def test_source_error_not_masked_by_failed_final_flush(self, source, make_storage, settings):
        source.add_linear(1, [1000, 2000, 3000])
        storage = make_storage(fail=True)
        fetch = source.get_block_hash

        def get_block_hash(n):
            if n == 3:
                raise TransientSourceError("node went away", attempts=5)
            return fetch(n)

        source.get_block_hash = get_block_hash
        with pytest.raises(TransientSourceError, match="node went away"):
            walker_for(ChainId.CONSENSUS, source, storage, settings).run(start=1, end=3)

    def test_source_error_still_flushes_buffered_rows(self, source, storage, settings):
        source.add_linear(1, [1000, 2000, 3000])
        fetch = source.get_block_hash

        def get_block_hash(n):
            if n == 3:
                raise TransientSourceError("node went away", attempts=5)
            return fetch(n)

        source.get_block_hash = get_block_hash
        with pytest.raises(TransientSourceError):
            walker_for(ChainId.CONSENSUS, source, storage, settings).run(start=1, end=3)
        assert [r.block_number for r in storage.rows(ChainId.CONSENSUS)] == [2]
