import re
import time
import logging
from collections import OrderedDict
from typing import Callable, Hashable, Iterable, Optional, Sequence, Tuple

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from zlink_indexer.config import TOPIC_SHIELD_ASSETS, TOPIC_UTXOS_UPDATE
from zlink_indexer.errors import DecodeError
from zlink_indexer.helpers import to_hex
from zlink_indexer.models import (
    SHIELD_ASSETS, UTXOS_UPDATE,
    DecodedBatch, DecodedEvent, EncryptedUnspent, LeafRecord,
    PublicUnspent, RawEventLog, ShieldNote,
)

logger = logging.getLogger(__name__)

_HEX_RE = re.compile(r"^0x[0-9a-fA-F]*$")


class AbiCache:
    """Bounded, time-expiring read-through cache for ABI decode results.

    Entries older than ``ttl_seconds`` are treated as missing.  When the cache
    grows past ``max_size`` expired entries are dropped first, then the least
    recently used ones.
    """

    def __init__(self, max_size: int = 10_000, ttl_seconds: float = 300.0,
                 clock: Callable[[], float] = time.monotonic):
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: "OrderedDict[Hashable, Tuple[float, object]]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: Hashable):
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        stored_at, value = entry
        if self._clock() - stored_at >= self.ttl_seconds:
            del self._entries[key]
            self.misses += 1
            return None
        self._entries.move_to_end(key)
        self.hits += 1
        return value

    def put(self, key: Hashable, value) -> None:
        self._entries[key] = (self._clock(), value)
        self._entries.move_to_end(key)
        if len(self._entries) > self.max_size:
            self.evict_expired()
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)

    def evict_expired(self) -> int:
        now = self._clock()
        stale = [k for k, (ts, _) in self._entries.items() if now - ts >= self.ttl_seconds]
        for k in stale:
            del self._entries[k]
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()
        self.hits = self.misses = 0

    def stats(self) -> dict:
        lookups = self.hits + self.misses
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "ttl_seconds": self.ttl_seconds,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": (self.hits / lookups) if lookups else 0.0,
        }


class EventDecoder:
    """Turns raw zLink logs into leaf + unspent records.

    Unknown event signatures decode to ``None``; malformed known events raise
    ``DecodeError``.  No I/O happens here.
    """

    def __init__(self, cache: Optional[AbiCache] = None):
        self.cache = cache if cache is not None else AbiCache()

    @classmethod
    def from_settings(cls, settings) -> "EventDecoder":
        return cls(AbiCache(settings.decoder_cache_size, settings.decoder_cache_ttl))

    # ---------- primitive ----------
    def decode_values(self, hex_str: str, types: Sequence[str], ignore_method_hash: bool = False) -> tuple:
        if not isinstance(hex_str, str) or not hex_str:
            raise DecodeError("invalid hex input: must be a non-empty string")
        h = hex_str if hex_str.startswith("0x") else "0x" + hex_str
        if not _HEX_RE.match(h):
            raise DecodeError("invalid hex format: must contain only hexadecimal characters")

        types = tuple(types)
        key = (h.lower(), types, ignore_method_hash)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        body = h[2:]
        if ignore_method_hash and len(body) % 64 == 8:
            body = body[8:]
        if len(body) % 64 != 0:
            raise DecodeError("encoded data length must be a multiple of 32 bytes")

        try:
            raw = abi_decode(list(types), bytes.fromhex(body))
        except (DecodingError, ValueError, TypeError) as e:
            raise DecodeError(f"cannot decode {','.join(types)}: {e}") from e

        values = tuple(_format(t, v) for t, v in zip(types, raw))
        self.cache.put(key, values)
        return values

    # ---------- events ----------
    def decode(self, log: RawEventLog) -> Optional[DecodedEvent]:
        if not log.topics:
            return None
        signature = log.topics[0].lower()
        if signature == TOPIC_SHIELD_ASSETS:
            return self._decode_shield(log)
        if signature == TOPIC_UTXOS_UPDATE:
            return self._decode_transfer(log)
        return None

    def _leaf(self, log: RawEventLog, commitment: str, tree_index: int) -> LeafRecord:
        if not log.tx_id or log.block_number is None or log.log_index is None:
            raise DecodeError("log is missing its block/tx/log coordinates")
        return LeafRecord(
            block_number=log.block_number,
            log_index=log.log_index,
            tx_id=log.tx_id,
            commitment=commitment,
            tree_index=tree_index,
        )

    def _decode_shield(self, log: RawEventLog) -> DecodedEvent:
        # topics: [sig, shield_address, commitment, token]; data: (nonce, amount, treeIndex)
        if len(log.topics) < 4:
            raise DecodeError(f"ShieldAssets log expects 4 topics, got {len(log.topics)}")
        (shield_address,) = self.decode_values(log.topics[1], ("bytes32",))
        (commitment,)     = self.decode_values(log.topics[2], ("bytes32",))
        (token,)          = self.decode_values(log.topics[3], ("address",))
        nonce, amount, tree_index = self.decode_values(log.data, ("uint256", "uint256", "uint256"))

        leaf = self._leaf(log, commitment, tree_index)
        unspent = PublicUnspent(
            block_number=log.block_number,
            tx_id=log.tx_id,
            note=ShieldNote(shield_address=shield_address, amount=str(amount), nonce=str(nonce), token=token),
        )
        return DecodedEvent(SHIELD_ASSETS, leaf, unspent)

    def _decode_transfer(self, log: RawEventLog) -> DecodedEvent:
        # topics: [sig, commitment]; data: (encryptedUTXO bytes, treeIndex)
        if len(log.topics) < 2:
            raise DecodeError(f"ShieldUTXOsUpdate log expects 2 topics, got {len(log.topics)}")
        (commitment,) = self.decode_values(log.topics[1], ("bytes32",))
        payload, tree_index = self.decode_values(log.data, ("bytes", "uint256"))

        leaf = self._leaf(log, commitment, tree_index)
        unspent = EncryptedUnspent(block_number=log.block_number, tx_id=log.tx_id, payload=payload)
        return DecodedEvent(UTXOS_UPDATE, leaf, unspent)

    def decode_batch(self, logs: Iterable[RawEventLog]) -> DecodedBatch:
        batch = DecodedBatch()
        for log in logs:
            try:
                event = self.decode(log)
            except DecodeError as e:
                batch.dropped += 1
                logger.warning(
                    "[decoder] dropping log %s#%s in block %s: %s",
                    log.tx_id, log.log_index, log.block_number, e.reason,
                )
                continue
            batch.add(event)
        return batch


def _format(abi_type: str, value):
    if abi_type == "address":
        return Web3.to_checksum_address(value)
    if abi_type.startswith("bytes"):
        return to_hex(value)
    return value
