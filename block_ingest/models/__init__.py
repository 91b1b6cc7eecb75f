from .chain import BlockBody, BlockHeader, BlockView, ChainEvent, ChainId, DigestLog
from .block import BLOCK_TIME_SCHEMAS, AutoEvmExtension, BlockRecord, ConsensusExtension
from .offline_operator import (
    OFFLINE_OPERATOR_SCHEMA,
    EpochCompleted,
    OfflineOperatorEvent,
    OperatorOffline,
)

__all__ = [
    "BlockBody",
    "BlockHeader",
    "BlockView",
    "ChainEvent",
    "ChainId",
    "DigestLog",
    "BLOCK_TIME_SCHEMAS",
    "AutoEvmExtension",
    "BlockRecord",
    "ConsensusExtension",
    "OFFLINE_OPERATOR_SCHEMA",
    "EpochCompleted",
    "OfflineOperatorEvent",
    "OperatorOffline",
]
