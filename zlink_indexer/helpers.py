from typing import Any, Mapping, Optional

from web3 import Web3

from zlink_indexer.models import RawEventLog

# ---------------- helpers ----------------
def to_hex(x) -> Optional[str]:
    """0x-prefixed lowercase hex for bytes/HexBytes/int/str."""
    if x is None: return None
    if isinstance(x, (bytes, bytearray)): return Web3.to_hex(bytes(x))
    if isinstance(x, int): return hex(x)
    s = str(x)
    return s.lower() if s.startswith("0x") else "0x" + s.lower()

def strip_0x(h: str) -> str:
    return h[2:] if h.startswith("0x") else h

def to_addr(x):
    if x is None: return None
    return Web3.to_checksum_address(x)

def hex_to_int(x):
    if x is None: return None
    if isinstance(x, int): return x
    if isinstance(x, bytes): return int.from_bytes(x, "big")
    s = str(x)
    return int(s, 16) if s.startswith("0x") else int(s)

def normalize_log(lg: Mapping[str, Any]) -> RawEventLog:
    """web3 log receipt -> RawEventLog with plain hex strings and ints."""
    return RawEventLog(
        address      = to_addr(lg["address"]),
        topics       = [to_hex(t) for t in lg["topics"]],
        data         = to_hex(lg["data"]) if lg["data"] else "0x",
        block_number = hex_to_int(lg["blockNumber"]),
        tx_id        = to_hex(lg["transactionHash"]),
        log_index    = hex_to_int(lg["logIndex"]),
    )
