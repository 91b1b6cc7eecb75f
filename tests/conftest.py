import threading
from typing import Dict, List, Optional

import pytest

from block_ingest.config import load_settings
from block_ingest.models import BlockHeader, ChainEvent, ChainId
from block_ingest.utils.exceptions import PersistenceError


@pytest.fixture(autouse=True, scope="session")
def configure_logging():
    import logging
    import structlog

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.dev.ConsoleRenderer(),
    )

    root_logger = logging.getLogger()
    handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)


def block_hash(n: int) -> str:
    return f"0x{n:06d}"


class FakeChainSource:
    """
    In-memory chain source.

    Blocks are keyed by number; each has a header, timestamp and event list.
    Every call is recorded in `calls` as (method, argument).
    """

    def __init__(self, tip: Optional[int] = None):
        self.headers: Dict[str, BlockHeader] = {}
        self.by_number: Dict[int, str] = {}
        self.timestamps: Dict[str, int] = {}
        self.events: Dict[str, List[ChainEvent]] = {}
        self.heads: List[BlockHeader] = []
        self.tip = tip
        self.calls: List[tuple] = []

    def add_block(self, number, timestamp_ms, parent_hash=None, hash=None, events=None, digest_logs=None):
        hash = hash or block_hash(number)
        parent_hash = parent_hash if parent_hash is not None else block_hash(number - 1)
        header = BlockHeader(number=number, hash=hash, parent_hash=parent_hash, digest_logs=digest_logs or [])
        self.headers[hash] = header
        self.by_number[number] = hash
        self.timestamps[hash] = timestamp_ms
        self.events[hash] = events or []
        return header

    def add_linear(self, start: int, timestamps: List[int]) -> List[BlockHeader]:
        return [self.add_block(start + i, ts) for i, ts in enumerate(timestamps)]

    def get_tip_header(self) -> BlockHeader:
        self.calls.append(("get_tip_header", None))
        number = self.tip if self.tip is not None else max(self.by_number)
        return BlockHeader(number=number, hash=block_hash(number), parent_hash=block_hash(number - 1))

    def get_block_hash(self, number: int) -> str:
        self.calls.append(("get_block_hash", number))
        return self.by_number[number]

    def get_header(self, hash: str) -> BlockHeader:
        self.calls.append(("get_header", hash))
        return self.headers[hash]

    def get_timestamp_ms(self, hash: str) -> int:
        self.calls.append(("get_timestamp_ms", hash))
        return self.timestamps[hash]

    def get_block_timestamp_ms(self, hash: str) -> int:
        self.calls.append(("get_block_timestamp_ms", hash))
        return self.timestamps[hash]

    def get_events(self, hash: str) -> List[ChainEvent]:
        self.calls.append(("get_events", hash))
        return self.events.get(hash, [])

    def subscribe_new_heads(self, callback, stop_event: Optional[threading.Event] = None) -> None:
        for header in self.heads:
            if stop_event is not None and stop_event.is_set():
                return
            callback(header)
        if stop_event is not None:
            stop_event.set()

    def called(self, method: str) -> List:
        return [arg for name, arg in self.calls if name == method]


class FakeStorage:
    """Records written batches in memory."""

    def __init__(self, max_block: Optional[int] = None, fail: bool = False):
        self.batches: Dict[ChainId, List[list]] = {}
        self.offline_batches: List[list] = []
        self.max_block = max_block
        self.max_offline_block: Optional[int] = None
        self.fail = fail

    def write_batch(self, chain: ChainId, rows):
        if self.fail:
            raise PersistenceError("disk full", rows=len(rows))
        self.batches.setdefault(chain, []).append(list(rows))

    def write_offline_batch(self, rows):
        if self.fail:
            raise PersistenceError("disk full", rows=len(rows))
        self.offline_batches.append(list(rows))

    def rows(self, chain: ChainId) -> list:
        return [row for batch in self.batches.get(chain, []) for row in batch]

    def max_persisted_block_number(self, chain: ChainId) -> Optional[int]:
        return self.max_block

    def max_persisted_offline_block_number(self) -> Optional[int]:
        return self.max_offline_block


@pytest.fixture
def make_settings(tmp_path):
    def _make(**overrides):
        values = {
            "CONSENSUS_RPC_WS": "ws://localhost:9944",
            "AUTO_EVM_RPC_WS": "ws://localhost:9945",
            "DATA_DIR": str(tmp_path / "data"),
            "K_CONSENSUS": 0,
            "K_AUTO_EVM": 0,
            "BACKFILL_START": None,
            "BACKFILL_END": None,
        }
        values.update(overrides)
        return load_settings(**values)

    return _make


@pytest.fixture
def settings(make_settings):
    return make_settings()


@pytest.fixture
def source():
    return FakeChainSource()


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def make_storage():
    return FakeStorage


@pytest.fixture
def make_source():
    return FakeChainSource
