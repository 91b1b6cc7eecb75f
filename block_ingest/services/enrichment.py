"""
Chain-specific enrichment of block rows.

Each chain kind has one strategy that derives a fixed set of extension fields
from data already fetched for the block (its event list or its header digest).
Strategies hold no mutable state and never perform RPC calls themselves.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Sequence

import structlog

from block_ingest.models import (
    AutoEvmExtension,
    BlockView,
    ChainEvent,
    ChainId,
    ConsensusExtension,
    EpochCompleted,
    OfflineOperatorEvent,
    OperatorOffline,
)

logger = structlog.get_logger()

SEGMENT_HEADER_STORED = ("Subspace", "SegmentHeaderStored")
BUNDLE_STORED = ("Domains", "BundleStored")
DOMAIN_EPOCH_COMPLETED = ("Domains", "DomainEpochCompleted")
OPERATOR_OFFLINE = ("Domains", "OperatorOffline")

# PreRuntime digest engine id carrying the consensus block hash on the EVM domain
CONSENSUS_HASH_ENGINE_ID = b"RGTR"
HASH_LENGTH = 32


def _attribute(attributes: Any, index: int, *names: str) -> Any:
    """Fetch an event attribute by field name (named events) or position (tuple events)."""
    if isinstance(attributes, dict):
        for name in names:
            if name in attributes:
                return attributes[name]
        raise KeyError(f"Event attribute not found: {names[0]}")
    if isinstance(attributes, (list, tuple)):
        return attributes[index]
    raise KeyError(f"Unsupported event attributes: {type(attributes).__name__}")


def _as_int(value: Any) -> int:
    if isinstance(value, dict) and "value" in value:
        value = value["value"]
    if isinstance(value, str) and value.startswith("0x"):
        return int(value, 16)
    return int(value)


class ChainStrategy(ABC):
    """Per-chain ingestion parameters plus the enrichment rule."""

    chain: ChainId
    needs_events: bool = False

    def __init__(self, confirm_depth: int):
        self.confirm_depth = confirm_depth

    @abstractmethod
    def enrich(self, block: BlockView) -> Dict[str, Any]:
        """Return the chain's extension fields for the block."""


class ConsensusEnrichment(ChainStrategy):

    chain = ChainId.CONSENSUS
    needs_events = True

    def enrich(self, block: BlockView) -> Dict[str, Any]:
        if not block.events:
            return ConsensusExtension().as_dict()

        contains_segment_header = False
        bundle_count = 0
        for event in block.events:
            if event.matches(*SEGMENT_HEADER_STORED):
                contains_segment_header = True
            elif event.matches(*BUNDLE_STORED):
                bundle_count += 1

        return ConsensusExtension(
            contains_segment_header=contains_segment_header,
            bundle_count=bundle_count,
        ).as_dict()


class AutoEvmEnrichment(ChainStrategy):

    chain = ChainId.AUTO_EVM

    def enrich(self, block: BlockView) -> Dict[str, Any]:
        if block.header is None:
            return AutoEvmExtension().as_dict()
        return AutoEvmExtension(consensus_block_hash=self.consensus_block_hash(block)).as_dict()

    def consensus_block_hash(self, block: BlockView) -> Optional[str]:
        for log in block.header.digest_logs:
            if log.kind != "PreRuntime" or log.engine_id != CONSENSUS_HASH_ENGINE_ID:
                continue
            if len(log.data) < HASH_LENGTH:
                logger.warning(
                    "Short consensus hash digest",
                    block_number=block.header.number,
                    hash=block.header.hash,
                    length=len(log.data),
                )
                return None
            return "0x" + log.data[:HASH_LENGTH].hex()
        return None


STRATEGIES = {
    ChainId.CONSENSUS: ConsensusEnrichment,
    ChainId.AUTO_EVM: AutoEvmEnrichment,
}


def build_strategy(chain: ChainId, confirm_depth: int) -> ChainStrategy:
    return STRATEGIES[chain](confirm_depth)


class OfflineOperatorExtractor:
    """Derive offline-operator rows from an epoch transition block's events."""

    def extract_epoch_completed(self, events: Iterable[ChainEvent]) -> List[EpochCompleted]:
        epochs = []
        for event in events:
            if not event.matches(*DOMAIN_EPOCH_COMPLETED):
                continue
            epochs.append(
                EpochCompleted(
                    domain_id=_as_int(_attribute(event.attributes, 0, "domain_id")),
                    epoch_index=_as_int(
                        _attribute(event.attributes, 1, "completed_epoch_index", "epoch_index")
                    ),
                )
            )
        return epochs

    def extract_operator_offline(self, events: Iterable[ChainEvent]) -> List[OperatorOffline]:
        offline = []
        for event in events:
            if not event.matches(*OPERATOR_OFFLINE):
                continue
            attrs = event.attributes
            expectations = _attribute(attrs, 3, "expectations")
            offline.append(
                OperatorOffline(
                    operator_id=_as_int(_attribute(attrs, 0, "operator_id")),
                    domain_id=_as_int(_attribute(attrs, 1, "domain_id")),
                    submitted_bundles=_as_int(_attribute(attrs, 2, "submitted_bundles")),
                    expected_bundles=_as_int(_attribute(expectations, 0, "expected_bundles")),
                    min_required_bundles=_as_int(
                        _attribute(expectations, 1, "min_required_bundles")
                    ),
                )
            )
        return offline

    def build_rows(
        self,
        block_number: int,
        block_hash: str,
        timestamp_ms: int,
        epochs: Sequence[EpochCompleted],
        offline: Sequence[OperatorOffline],
        ingestion_ts_ms: int,
    ) -> List[OfflineOperatorEvent]:
        """
        Join offline events to the epoch completed for the same domain in the same block.

        Offline events without a matching epoch get epoch index 0.
        """
        epoch_by_domain: Dict[int, int] = {}
        for epoch in epochs:
            epoch_by_domain.setdefault(epoch.domain_id, epoch.epoch_index)

        return [
            OfflineOperatorEvent(
                block_number=block_number,
                block_hash=block_hash,
                timestamp_ms=timestamp_ms,
                domain_id=evt.domain_id,
                epoch_index=epoch_by_domain.get(evt.domain_id, 0),
                operator_id=evt.operator_id,
                submitted_bundles=evt.submitted_bundles,
                expected_bundles=evt.expected_bundles,
                min_required_bundles=evt.min_required_bundles,
                ingestion_ts_ms=ingestion_ts_ms,
            )
            for evt in offline
        ]
