from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional

import pyarrow as pa

from block_ingest.utils.timestamps import ms_to_iso
from .chain import ChainId

_COMMON_FIELDS = [
    ("chain", pa.string()),
    ("block_number", pa.int64()),
    ("hash", pa.string()),
    ("parent_hash", pa.string()),
    ("timestamp_ms", pa.int64()),
    ("timestamp_utc", pa.string()),
    ("delta_since_parent_ms", pa.int64()),
    ("ingestion_ts_ms", pa.int64()),
]

BLOCK_TIME_SCHEMAS = {
    ChainId.CONSENSUS: pa.schema(
        _COMMON_FIELDS
        + [
            ("contains_segment_header", pa.bool_()),
            ("bundle_count", pa.int64()),
        ]
    ),
    ChainId.AUTO_EVM: pa.schema(_COMMON_FIELDS + [("consensus_block_hash", pa.string())]),
}


@dataclass(frozen=True)
class BlockRecord:
    """One row per linked block transition."""

    chain: ChainId
    block_number: int
    hash: str
    parent_hash: str
    timestamp_ms: int
    delta_since_parent_ms: int
    ingestion_ts_ms: int
    extension: Dict[str, Any] = field(default_factory=dict)

    @property
    def timestamp_utc(self) -> str:
        return ms_to_iso(self.timestamp_ms)

    def to_row(self) -> Dict[str, Any]:
        row = {
            "chain": self.chain.value,
            "block_number": self.block_number,
            "hash": self.hash,
            "parent_hash": self.parent_hash,
            "timestamp_ms": self.timestamp_ms,
            "timestamp_utc": self.timestamp_utc,
            "delta_since_parent_ms": self.delta_since_parent_ms,
            "ingestion_ts_ms": self.ingestion_ts_ms,
        }
        row.update(self.extension)
        return row


@dataclass(frozen=True)
class ConsensusExtension:

    contains_segment_header: bool = False
    bundle_count: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class AutoEvmExtension:

    consensus_block_hash: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)
