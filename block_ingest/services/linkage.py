"""
Parent-hash linkage tracking for block time deltas.

One tracker belongs to exactly one ingestion run for one chain. It remembers
the last processed block and decides, for each new block, whether the step
from the previous block is linear (emit a delta) or an anomaly (reorg edge or
non-contiguous backfill window).
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class StepKind(Enum):

    FIRST = "first"
    EMIT = "emit"
    ANOMALY = "anomaly"


@dataclass(frozen=True)
class LinkState:

    hash: str
    timestamp_ms: int


@dataclass(frozen=True)
class StepResult:

    kind: StepKind
    delta_ms: Optional[int] = None
    previous: Optional[LinkState] = None

    @property
    def emitted(self) -> bool:
        return self.kind == StepKind.EMIT

    @property
    def is_anomaly(self) -> bool:
        return self.kind == StepKind.ANOMALY


class LinkageTracker:
    """Track linear continuity of a block sequence"""

    def __init__(self):
        self.previous: Optional[LinkState] = None

    def step(self, parent_hash: str, block_hash: str, timestamp_ms: int) -> StepResult:
        """
        Advance the tracker by one block.

        The tracker always moves to the new block, including after an anomaly:
        subsequent deltas are measured from the anomalous block.

        Args:
            parent_hash: Parent hash reported by the candidate block
            block_hash: Candidate block hash
            timestamp_ms: Candidate block timestamp in milliseconds

        Returns:
            StepResult describing whether a delta may be emitted
        """
        previous = self.previous
        self.previous = LinkState(hash=block_hash, timestamp_ms=timestamp_ms)

        if previous is None:
            return StepResult(kind=StepKind.FIRST)

        if previous.hash == parent_hash:
            return StepResult(
                kind=StepKind.EMIT,
                delta_ms=timestamp_ms - previous.timestamp_ms,
                previous=previous,
            )

        return StepResult(kind=StepKind.ANOMALY, previous=previous)

    def reset(self) -> None:
        self.previous = None
