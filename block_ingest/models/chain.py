"""
Narrow views of chain data consumed by the ingestion core.

The RPC service converts library objects into these types so that nothing
beyond hashes, numbers, digest logs and decoded events reaches the walkers.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional


class ChainId(str, Enum):

    CONSENSUS = "consensus"
    AUTO_EVM = "auto-evm"

    @classmethod
    def parse(cls, value: str) -> "ChainId":
        try:
            return cls(value.strip())
        except ValueError:
            known = ", ".join(c.value for c in cls)
            raise ValueError(f"Unknown chain '{value}' (expected one of: {known})")


@dataclass(frozen=True)
class DigestLog:

    kind: str
    engine_id: bytes = b""
    data: bytes = b""


@dataclass(frozen=True)
class BlockHeader:

    number: int
    hash: str
    parent_hash: str
    digest_logs: List[DigestLog] = field(default_factory=list)
    state_root: str = ""
    extrinsics_root: str = ""


@dataclass(frozen=True)
class ChainEvent:
    """A decoded runtime event: pallet, event name and its attributes."""

    module: str
    name: str
    attributes: Any = None

    def matches(self, module: str, name: str) -> bool:
        return self.module == module and self.name == name


@dataclass(frozen=True)
class BlockBody:

    header: BlockHeader
    extrinsics: List[Any] = field(default_factory=list)


@dataclass(frozen=True)
class BlockView:
    """Everything an enrichment strategy may look at for one block."""

    header: BlockHeader
    events: Optional[List[ChainEvent]] = None
