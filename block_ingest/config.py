from functools import lru_cache
from typing import Optional

from pydantic import ValidationError, field_validator
from pydantic_settings import BaseSettings

from block_ingest.models.chain import ChainId
from block_ingest.utils.exceptions import ConfigurationError, MissingEndpointError

URL_SCHEMES = ("ws://", "wss://", "http://", "https://")


class Settings(BaseSettings):
    # Chain endpoints
    CONSENSUS_RPC_WS: str
    AUTO_EVM_RPC_WS: Optional[str] = None

    # Storage
    DATA_DIR: str = "data"

    # Monitoring
    LOG_LEVEL: str = "info"
    LOG_FORMAT: str = "json"

    # Batching
    WRITE_BATCH_ROWS: int = 5000
    WRITE_BATCH_MS: int = 60000
    OFFLINE_FLUSH_ROWS: int = 10
    STREAM_FLUSH_INTERVAL_S: float = 2.0
    STREAM_ENRICH_EVENTS: bool = True

    # Confirmation depth per chain
    K_CONSENSUS: int = 64
    K_AUTO_EVM: int = 64

    # Backfill range
    BACKFILL_START: Optional[int] = None
    BACKFILL_END: Optional[int] = None
    BACKFILL_DEFAULT_WINDOW: int = 5000
    BACKFILL_LOG_INTERVAL: int = 500
    OFFLINE_PROGRESS_INTERVAL: int = 10000

    # Error handling
    RPC_MAX_RETRIES: Optional[int] = None  # None retries forever with a capped delay
    RPC_BASE_DELAY: float = 1.0
    RPC_MAX_DELAY: float = 30.0

    @field_validator("AUTO_EVM_RPC_WS", "BACKFILL_START", "BACKFILL_END", "RPC_MAX_RETRIES", mode="before")
    @classmethod
    def empty_as_unset(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("CONSENSUS_RPC_WS", "AUTO_EVM_RPC_WS")
    @classmethod
    def check_url(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        if not v.startswith(URL_SCHEMES) or len(v.split("://", 1)[1]) == 0:
            raise ValueError("must be a ws://, wss://, http:// or https:// URL")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def check_log_level(cls, v: str) -> str:
        v = v.lower()
        if v not in ("debug", "info", "warn", "warning", "error"):
            raise ValueError("must be one of debug, info, warn, error")
        return v

    @field_validator("LOG_FORMAT")
    @classmethod
    def check_log_format(cls, v: str) -> str:
        v = v.lower()
        if v not in ("json", "console"):
            raise ValueError("must be json or console")
        return v

    @field_validator(
        "WRITE_BATCH_ROWS",
        "WRITE_BATCH_MS",
        "OFFLINE_FLUSH_ROWS",
        "BACKFILL_DEFAULT_WINDOW",
        "BACKFILL_LOG_INTERVAL",
        "OFFLINE_PROGRESS_INTERVAL",
        "STREAM_FLUSH_INTERVAL_S",
    )
    @classmethod
    def check_positive(cls, v):
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("K_CONSENSUS", "K_AUTO_EVM", "BACKFILL_START", "BACKFILL_END", "RPC_MAX_RETRIES")
    @classmethod
    def check_non_negative(cls, v):
        if v is not None and v < 0:
            raise ValueError("must be non-negative")
        return v

    def rpc_url(self, chain: ChainId) -> str:
        url = self.CONSENSUS_RPC_WS if chain == ChainId.CONSENSUS else self.AUTO_EVM_RPC_WS
        if not url:
            raise MissingEndpointError(chain.value)
        return url

    def has_endpoint(self, chain: ChainId) -> bool:
        return chain == ChainId.CONSENSUS or bool(self.AUTO_EVM_RPC_WS)

    def confirmation_depth(self, chain: ChainId) -> int:
        return self.K_CONSENSUS if chain == ChainId.CONSENSUS else self.K_AUTO_EVM

    class Config:
        env_file = ".env"
        extra = "ignore"


def load_settings(**overrides) -> Settings:
    try:
        return Settings(**overrides)
    except ValidationError as e:
        issues = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigurationError(f"Invalid environment: {issues}") from e


@lru_cache()
def get_settings() -> Settings:
    return load_settings()
