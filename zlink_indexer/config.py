import os
import logging
from typing import List, Optional, Mapping

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator
from web3 import Web3

# always load from local file
load_dotenv(".env")

# --- zLink event topics (keccak256) ---
# ShieldAssets(indexed bytes32 shield_address, indexed bytes32 commitment, indexed address token,
#              uint256 nonce, uint256 amount, uint256 treeIndex)
TOPIC_SHIELD_ASSETS = "0x92b167eff0c8136c9019a881f06cad6738b847c189e77da5c89112642b8dfaee"
# ShieldUTXOsUpdate(indexed bytes32 commitment, bytes encryptedUTXO, uint256 treeIndex)
TOPIC_UTXOS_UPDATE  = "0x6c4dbf3caba6334c79e9d1a8e9e2566f13e707f15c68cb872504e451219ef705"

# widest page a client may request from /utxos
MAX_PAGE_SPAN = 1100

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class Settings(BaseModel):
    rpc_url: str
    rpc_fallback_urls: List[str] = Field(default_factory=list)
    contract_address: str

    start_block: int = Field(1, ge=0)
    max_blocks_per_batch: int = Field(1000, ge=1)
    block_difference: int = Field(10, ge=0)

    requests_per_second: int = Field(5, ge=1)
    max_retries: int = Field(3, ge=1)
    retry_delay_ms: int = Field(1000, ge=0)
    poll_delay_ms: int = Field(1000, ge=0)
    governor_batch_size: int = Field(10, ge=1)
    max_consecutive_errors: int = Field(10, ge=1)

    unspent_start_block: int = Field(0, ge=0)
    decoder_cache_size: int = Field(10_000, ge=1)
    decoder_cache_ttl: float = Field(300.0, gt=0)

    db_path: str = "zlink_index.sqlite"
    enable_indexing: bool = True
    log_level: str = "INFO"

    http_host: str = "0.0.0.0"
    http_port: int = Field(8323, ge=1, le=65535)

    private_key: Optional[str] = None
    chain_id: Optional[int] = None

    @field_validator("contract_address")
    @classmethod
    def _checksum(cls, v: str) -> str:
        return Web3.to_checksum_address(v)

    @field_validator("log_level")
    @classmethod
    def _level(cls, v: str) -> str:
        v = v.upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level {v}")
        return v

    @property
    def endpoints(self) -> List[str]:
        return [self.rpc_url, *self.rpc_fallback_urls]


def _csv(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [part.strip() for part in raw.split(",") if part.strip()]


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if env is None else env

    if not env.get("RPC_URL"):
        raise SystemExit("Missing RPC_URL in .env")
    if not env.get("ZLINK_CONTRACT_ADDRESS"):
        raise SystemExit("Missing ZLINK_CONTRACT_ADDRESS in .env")

    retry_delay = env.get("RETRY_DELAY", "1000")
    raw = {
        "rpc_url":                env["RPC_URL"],
        "rpc_fallback_urls":      _csv(env.get("RPC_FALLBACK_URLS")),
        "contract_address":       env["ZLINK_CONTRACT_ADDRESS"],
        "start_block":            env.get("START_BLOCK", "1"),
        "max_blocks_per_batch":   env.get("MAX_BLOCKS_PER_REQUEST", "1000"),
        "block_difference":       env.get("BLOCK_DIFFERENCE", "10"),
        "requests_per_second":    env.get("REQUESTS_PER_SECOND", "5"),
        "max_retries":            env.get("MAX_RETRIES", "3"),
        "retry_delay_ms":         retry_delay,
        "poll_delay_ms":          env.get("POLL_DELAY", retry_delay),
        "governor_batch_size":    env.get("GOVERNOR_BATCH_SIZE", "10"),
        "max_consecutive_errors": env.get("MAX_CONSECUTIVE_ERRORS", "10"),
        "unspent_start_block":    env.get("UNSPENT_START_BLOCK", "0"),
        "decoder_cache_size":     env.get("DECODER_CACHE_SIZE", "10000"),
        "decoder_cache_ttl":      env.get("DECODER_CACHE_TTL", "300"),
        "db_path":                env.get("DB_PATH", "zlink_index.sqlite"),
        "enable_indexing":        env.get("ENABLE_INDEXING", "true").lower() == "true",
        "log_level":              env.get("LOG_LEVEL", "INFO"),
        "http_host":              env.get("HTTP_HOST", "0.0.0.0"),
        "http_port":              env.get("HTTP_PORT", "8323"),
        "private_key":            env.get("PRIVATE_KEY") or None,
        "chain_id":               env.get("CHAIN_ID") or None,
    }
    try:
        return Settings(**raw)
    except ValidationError as e:
        raise SystemExit(f"Invalid configuration: {e}")


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
