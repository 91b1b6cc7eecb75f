"""
Tests for parent-hash linkage tracking.
"""

from block_ingest.services.linkage import LinkageTracker, StepKind


class TestLinkageTracker:

    def test_first_block_never_emits(self):
        tracker = LinkageTracker()
        result = tracker.step("0xparent", "0xa", 1000)
        assert result.kind == StepKind.FIRST
        assert not result.emitted
        assert tracker.previous.hash == "0xa"

    def test_linked_block_emits_delta(self):
        tracker = LinkageTracker()
        tracker.step("0x0", "0xa", 1000)
        result = tracker.step("0xa", "0xb", 7000)
        assert result.emitted
        assert result.delta_ms == 6000
        assert result.previous.hash == "0xa"

    def test_mismatched_parent_is_anomaly(self):
        tracker = LinkageTracker()
        tracker.step("0x0", "0xa", 1000)
        result = tracker.step("0xzz", "0xb", 7000)
        assert result.is_anomaly
        assert result.delta_ms is None

    def test_tracker_advances_after_anomaly(self):
        tracker = LinkageTracker()
        tracker.step("0x0", "0xa", 1000)
        tracker.step("0xzz", "0xb", 7000)
        result = tracker.step("0xb", "0xc", 13000)
        assert result.emitted
        assert result.delta_ms == 6000

    def test_single_mismatch_suppresses_only_that_block(self):
        tracker = LinkageTracker()
        chain = [("0x0", "0x1"), ("0x1", "0x2"), ("0xfork", "0x3"), ("0x3", "0x4"), ("0x4", "0x5")]
        kinds = [tracker.step(parent, h, i * 6000).kind for i, (parent, h) in enumerate(chain)]
        assert kinds == [StepKind.FIRST, StepKind.EMIT, StepKind.ANOMALY, StepKind.EMIT, StepKind.EMIT]

    def test_negative_delta_is_emitted_as_is(self):
        tracker = LinkageTracker()
        tracker.step("0x0", "0xa", 5000)
        result = tracker.step("0xa", "0xb", 4000)
        assert result.delta_ms == -1000

    def test_reset(self):
        tracker = LinkageTracker()
        tracker.step("0x0", "0xa", 1000)
        tracker.reset()
        assert tracker.previous is None
        assert tracker.step("0xa", "0xb", 2000).kind == StepKind.FIRST
