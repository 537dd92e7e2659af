"""Domain records produced by the decoder and persisted by the stores.

An unspent output is one of two shapes, ``PublicUnspent`` (shield deposit,
plaintext note fields) or ``EncryptedUnspent`` (private transfer, opaque
payload). ``is_encrypted`` is derived from the variant, never stored beside
optional fields.
"""
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional, Union


@dataclass(frozen=True)
class Checkpoint:
    last_indexed_block: int
    latest_observed_block: int

    @property
    def difference(self) -> int:
        return self.latest_observed_block - self.last_indexed_block


@dataclass(frozen=True)
class RawEventLog:
    address: str
    topics: List[str]
    data: str
    block_number: int
    tx_id: str
    log_index: int


@dataclass(frozen=True)
class LeafRecord:
    block_number: int
    log_index: int
    tx_id: str
    commitment: str
    tree_index: int


@dataclass(frozen=True)
class ShieldNote:
    shield_address: str
    amount: str
    nonce: str
    token: str

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


@dataclass(frozen=True)
class PublicUnspent:
    block_number: int
    tx_id: str
    note: ShieldNote
    is_encrypted: bool = field(default=False, init=False)


@dataclass(frozen=True)
class EncryptedUnspent:
    block_number: int
    tx_id: str
    payload: str
    is_encrypted: bool = field(default=True, init=False)


UnspentRecord = Union[PublicUnspent, EncryptedUnspent]

SHIELD_ASSETS = "SHIELD_ASSETS"
UTXOS_UPDATE  = "UTXOS_UPDATE"


@dataclass(frozen=True)
class DecodedEvent:
    kind: str
    leaf: LeafRecord
    unspent: UnspentRecord


@dataclass
class DecodedBatch:
    leaves: List[LeafRecord] = field(default_factory=list)
    unspents: List[UnspentRecord] = field(default_factory=list)
    dropped: int = 0
    ignored: int = 0

    def add(self, event: Optional[DecodedEvent]) -> None:
        if event is None:
            self.ignored += 1
            return
        self.leaves.append(event.leaf)
        self.unspents.append(event.unspent)
