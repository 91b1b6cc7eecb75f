"""
Substrate RPC service for chain interaction.
"""

import random
import threading
import time
from dataclasses import replace
from enum import Enum
from functools import wraps
from typing import Any, Callable, Dict, List, Optional

import structlog
from substrateinterface import SubstrateInterface
from substrateinterface.exceptions import SubstrateRequestException
from websocket import WebSocketException

from block_ingest.models import BlockBody, BlockHeader, ChainEvent, ChainId, DigestLog
from block_ingest.utils.exceptions import TransientSourceError

from .error_handler import ErrorHandler

logger = structlog.get_logger()

TRANSIENT_ERRORS = (
    SubstrateRequestException,
    WebSocketException,
    ConnectionError,
    TimeoutError,
    OSError,
)


class ConnectionState(Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    FAILED = "failed"


def retry_on_rpc_error(func):
    """
    Decorator for automatic retry with capped exponential backoff on RPC errors.

    Retries indefinitely unless the service's error handler carries a retry
    ceiling, in which case TransientSourceError is raised once it is reached.
    """

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        attempt = 0
        while True:
            try:
                result = func(self, *args, **kwargs)
                if self._connection_state != ConnectionState.HEALTHY:
                    self.logger.info("RPC connection recovered", function=func.__name__, attempts=attempt + 1)
                    self._connection_state = ConnectionState.HEALTHY
                return result
            except TRANSIENT_ERRORS as e:
                attempt += 1

                if self._is_connection_error(e):
                    self.logger.warning(
                        "RPC connection error detected, forcing reconnection",
                        error=str(e),
                        attempt=attempt,
                    )
                    self._force_reconnect()
                self._connection_state = ConnectionState.DEGRADED

                context = {"function": func.__name__, "attempt": attempt}
                if self._stop_requested() or not self.error_handler.handle_rpc_error(e, context):
                    self._connection_state = ConnectionState.FAILED
                    raise TransientSourceError(
                        f"{func.__name__} failed after {attempt} attempts: {e}",
                        attempts=attempt,
                    ) from e

                delay = self.error_handler.get_retry_delay(attempt)
                jitter = random.uniform(0, delay * 0.1)  # nosec B311
                time.sleep(delay + jitter)

    return wrapper


def _as_int(value: Any) -> int:
    if isinstance(value, str) and value.startswith("0x"):
        return int(value, 16)
    return int(value)


def _as_bytes(value: Any) -> bytes:
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, (list, tuple)):
        return bytes(value)
    if isinstance(value, str):
        if value.startswith("0x"):
            return bytes.fromhex(value[2:])
        return value.encode("latin-1")
    raise TypeError(f"Cannot convert {type(value).__name__} to bytes")


def _scale_value(obj: Any) -> Any:
    return obj.value if hasattr(obj, "value") else obj


def parse_digest_log(item: Any) -> DigestLog:
    """
    Normalize a decoded header digest item.

    Items look like {"PreRuntime": [engine_id, data]}; the engine id may be
    hex (0x52475452) or its ASCII form (RGTR).
    """
    value = _scale_value(item)
    if not isinstance(value, dict) or not value:
        return DigestLog(kind="Other")

    kind, payload = next(iter(value.items()))
    kind = kind[:1].upper() + kind[1:]
    if isinstance(payload, dict):
        payload = (payload.get("engine") or payload.get("engine_id"), payload.get("data"))
    if isinstance(payload, (list, tuple)) and len(payload) == 2:
        engine_id, data = payload
        return DigestLog(kind=kind, engine_id=_as_bytes(engine_id), data=_as_bytes(data))
    return DigestLog(kind=kind)


def parse_header(raw: Dict[str, Any], block_hash: Optional[str] = None) -> BlockHeader:
    if "header" in raw and isinstance(raw["header"], dict):
        raw = raw["header"]
    digest = raw.get("digest") or {}
    logs = digest.get("logs", []) if isinstance(digest, dict) else []
    return BlockHeader(
        number=_as_int(raw["number"]),
        hash=raw.get("hash") or block_hash or "",
        parent_hash=raw["parentHash"],
        digest_logs=[parse_digest_log(item) for item in logs],
        state_root=raw.get("stateRoot") or "",
        extrinsics_root=raw.get("extrinsicsRoot") or "",
    )


def parse_event(record: Any) -> ChainEvent:
    value = _scale_value(record)
    event = value.get("event") if isinstance(value.get("event"), dict) else value
    return ChainEvent(
        module=event.get("module_id") or value.get("module_id"),
        name=event.get("event_id") or value.get("event_id"),
        attributes=event.get("attributes", value.get("attributes")),
    )


def timestamp_from_extrinsics(extrinsics: List[Any]) -> Optional[int]:
    """Read the Timestamp.set inherent; None if the block carries none."""
    for extrinsic in extrinsics:
        value = _scale_value(extrinsic)
        call = value.get("call") if isinstance(value, dict) else None
        if not call:
            continue
        if call.get("call_module") != "Timestamp" or call.get("call_function") != "set":
            continue
        for arg in call.get("call_args", []):
            if arg.get("name") == "now":
                return _as_int(arg["value"])
    return None


class SubstrateRPCService:
    """
    Substrate RPC service with automatic retry and connection management.

    Exposes only the narrow chain views the ingestion core consumes.
    """

    def __init__(
        self,
        url: str,
        chain: ChainId,
        error_handler: Optional[ErrorHandler] = None,
        stop_event: Optional[threading.Event] = None,
    ):
        """
        Initialize Substrate RPC service.

        Args:
            url: Websocket or HTTP endpoint of the node
            chain: Chain this endpoint serves (used for log context)
            error_handler: Retry policy (defaults to unbounded retries)
            stop_event: Shutdown signal that aborts pending retries
        """
        if not url:
            raise ValueError("Substrate RPC URL is required")

        self.url = url
        self.chain = chain
        self.error_handler = error_handler or ErrorHandler()
        self.stop_event = stop_event
        self.logger = logger.bind(chain=chain.value)

        self._substrate: Optional[SubstrateInterface] = None
        self._connection_state = ConnectionState.HEALTHY

        self.logger.info("Substrate RPC service initialized", rpc_url=self.url)

    def _stop_requested(self) -> bool:
        return self.stop_event is not None and self.stop_event.is_set()

    def _is_connection_error(self, error: Exception) -> bool:
        """Check if an error is connection-related and should trigger reconnection."""
        if isinstance(error, (WebSocketException, ConnectionError, BrokenPipeError)):
            return True
        error_str = str(error).lower()
        connection_error_indicators = [
            "connection refused",
            "connection reset",
            "connection closed",
            "connection is already closed",
            "broken pipe",
            "timed out",
            "timeout",
        ]
        return any(indicator in error_str for indicator in connection_error_indicators)

    def _force_reconnect(self):
        """Drop the current connection; the next call reconnects."""
        if self._substrate is not None:
            try:
                self._substrate.close()
            except Exception as e:
                self.logger.warning("Error during forced reconnection", error=str(e))
            self._substrate = None
            self.logger.info("Disconnected from chain, reconnecting on next call")

    def _get_substrate(self) -> SubstrateInterface:
        if self._substrate is None:
            self.logger.info("Connecting to chain", rpc_url=self.url)
            self._substrate = SubstrateInterface(url=self.url)
            self.logger.info("Connected to chain", rpc_url=self.url)
        return self._substrate

    def get_connection_status(self) -> Dict[str, Any]:
        return {
            "state": self._connection_state.value,
            "connected": self._substrate is not None,
            "connection_url": self.url,
            "healthy": self._connection_state == ConnectionState.HEALTHY,
        }

    @retry_on_rpc_error
    def get_tip_header(self) -> BlockHeader:
        header = parse_header(self._get_substrate().get_block_header())
        if not header.hash:
            header = replace(header, hash=self._get_substrate().get_block_hash(header.number))
        return header

    @retry_on_rpc_error
    def get_block_hash(self, number: int) -> str:
        block_hash = self._get_substrate().get_block_hash(number)
        if block_hash is None:
            raise SubstrateRequestException(f"No block hash for block {number}")
        return block_hash

    @retry_on_rpc_error
    def get_header(self, block_hash: str) -> BlockHeader:
        return parse_header(self._get_substrate().get_block_header(block_hash=block_hash), block_hash)

    @retry_on_rpc_error
    def get_block(self, block_hash: str) -> BlockBody:
        raw = self._get_substrate().get_block(block_hash=block_hash)
        return BlockBody(
            header=parse_header(raw, block_hash),
            extrinsics=[_scale_value(e) for e in raw.get("extrinsics", [])],
        )

    @retry_on_rpc_error
    def get_events(self, block_hash: str) -> List[ChainEvent]:
        return [parse_event(record) for record in self._get_substrate().get_events(block_hash=block_hash)]

    @retry_on_rpc_error
    def get_timestamp_ms(self, block_hash: str) -> int:
        result = self._get_substrate().query("Timestamp", "Now", block_hash=block_hash)
        return _as_int(_scale_value(result))

    def get_block_timestamp_ms(self, block_hash: str) -> int:
        """Timestamp from the block's inherent, falling back to storage."""
        ts = timestamp_from_extrinsics(self.get_block(block_hash).extrinsics)
        if ts is None:
            ts = self.get_timestamp_ms(block_hash)
        return ts

    def subscribe_new_heads(
        self,
        callback: Callable[[BlockHeader], None],
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        """
        Block the calling thread delivering new heads to callback, in order.

        Returns once stop_event is set (checked on each notification).
        """
        stop_event = stop_event or self.stop_event

        def handler(obj, update_nr, subscription_id):
            if stop_event is not None and stop_event.is_set():
                return True
            header = parse_header(obj)
            if not header.hash:
                header = self._resolve_head_hash(header)
                if header is None:
                    return None
            callback(header)
            if stop_event is not None and stop_event.is_set():
                return True
            return None

        self.logger.info("Subscribing to new heads")
        self._get_substrate().subscribe_block_headers(handler)
        self.logger.info("New head subscription ended")

    def _resolve_head_hash(self, header: BlockHeader) -> Optional[BlockHeader]:
        """
        Fill in the hash of a notified head by looking it up by number.

        The canonical block at that height can differ from the notified one
        while a reorg is in flight, so the stored header must match field for
        field. Returns None when it does not.
        """
        candidate = self.get_block_hash(header.number)
        stored = self.get_header(candidate)
        if replace(stored, hash=header.hash) != header:
            self.logger.warning(
                "Head hash lookup returned a different block; skipping notification",
                block_number=header.number,
                parent_hash=header.parent_hash,
                candidate=candidate,
            )
            return None
        return replace(header, hash=candidate)

    def close(self):
        if self._substrate is not None:
            try:
                self._substrate.close()
            except Exception as e:
                self.logger.warning("Error during RPC connection close", error=str(e))
            self._substrate = None
            self._connection_state = ConnectionState.HEALTHY
            self.logger.info("RPC connection closed")
