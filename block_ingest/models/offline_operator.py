from dataclasses import dataclass
from typing import Any, Dict

import pyarrow as pa

from block_ingest.utils.timestamps import ms_to_iso

OFFLINE_OPERATOR_SCHEMA = pa.schema(
    [
        ("block_number", pa.int64()),
        ("block_hash", pa.string()),
        ("timestamp_ms", pa.int64()),
        ("timestamp_utc", pa.string()),
        ("domain_id", pa.int64()),
        ("epoch_index", pa.int64()),
        ("operator_id", pa.int64()),
        ("submitted_bundles", pa.int64()),
        ("expected_bundles", pa.int64()),
        ("min_required_bundles", pa.int64()),
        ("shortfall", pa.int64()),
        ("shortfall_pct", pa.float64()),
        ("ingestion_ts_ms", pa.int64()),
    ]
)


@dataclass(frozen=True)
class EpochCompleted:

    domain_id: int
    epoch_index: int


@dataclass(frozen=True)
class OperatorOffline:

    operator_id: int
    domain_id: int
    submitted_bundles: int
    expected_bundles: int
    min_required_bundles: int


@dataclass(frozen=True)
class OfflineOperatorEvent:
    """One row per operator found under-participating in an epoch."""

    block_number: int
    block_hash: str
    timestamp_ms: int
    domain_id: int
    epoch_index: int
    operator_id: int
    submitted_bundles: int
    expected_bundles: int
    min_required_bundles: int
    ingestion_ts_ms: int

    @property
    def shortfall(self) -> int:
        return self.min_required_bundles - self.submitted_bundles

    @property
    def shortfall_pct(self) -> float:
        if self.expected_bundles <= 0:
            return 0.0
        return self.shortfall / self.expected_bundles * 100

    def to_row(self) -> Dict[str, Any]:
        return {
            "block_number": self.block_number,
            "block_hash": self.block_hash,
            "timestamp_ms": self.timestamp_ms,
            "timestamp_utc": ms_to_iso(self.timestamp_ms),
            "domain_id": self.domain_id,
            "epoch_index": self.epoch_index,
            "operator_id": self.operator_id,
            "submitted_bundles": self.submitted_bundles,
            "expected_bundles": self.expected_bundles,
            "min_required_bundles": self.min_required_bundles,
            "shortfall": self.shortfall,
            "shortfall_pct": self.shortfall_pct,
            "ingestion_ts_ms": self.ingestion_ts_ms,
        }
