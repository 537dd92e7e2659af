"""Read-only projections over the stores.

Each function returns ``(status_code, payload)``; the HTTP routes send both,
the MCP tools return only the payload.
"""
import json
from typing import Any, Dict, Tuple

from zlink_indexer.config import MAX_PAGE_SPAN
from zlink_indexer.db import CheckpointStore, RecordStore
from zlink_indexer.models import EncryptedUnspent

Reply = Tuple[int, Dict[str, Any]]

ENCRYPTED   = "encrypted"
UNENCRYPTED = "unencrypted"


def _fail(status: int, message: str) -> Reply:
    return status, {"isSuccess": False, "message": message}

def _ok(data) -> Reply:
    return 200, {"isSuccess": True, "data": data}


def health(checkpoints: CheckpointStore) -> Reply:
    cp = checkpoints.get_checkpoint()
    if cp is None:
        return _fail(500, "Indexer not initialized")
    return _ok({
        "lastIndexedBlock": cp.last_indexed_block,
        "latestBlock": cp.latest_observed_block,
        "difference": cp.difference,
    })


def _unspent_payload(record) -> str:
    if isinstance(record, EncryptedUnspent):
        return record.payload
    note = json.dumps(record.note.to_dict(), separators=(",", ":"))
    return note.encode("utf-8").hex()


def get_utxos(records: RecordStore, start=0, end=100, utxos_type=None) -> Reply:
    """Page of unspent payloads of one kind, positions ``[start, end)``."""
    if utxos_type not in (ENCRYPTED, UNENCRYPTED):
        return _fail(400, "Invalid utxos type")
    try:
        start, end = int(start), int(end)
    except (TypeError, ValueError):
        return _fail(400, "Invalid range")
    if start < 0 or end < start:
        return _fail(400, "Invalid range")
    if end - start > MAX_PAGE_SPAN:
        return _fail(400, "Max limit exceeded")

    is_encrypted = utxos_type == ENCRYPTED
    rows = records.list_unspents(is_encrypted, start, end - start)
    total = records.count_unspents(is_encrypted)
    return _ok({
        "start": start,
        "end": end,
        "total": total,
        "remaining": total - end > 0,
        "result": [_unspent_payload(r) for r in rows],
    })


def get_commitments(records: RecordStore, tree_index) -> Reply:
    try:
        idx = int(tree_index)
    except (TypeError, ValueError):
        return _fail(400, "Invalid tree index")
    if idx < 0:
        return _fail(400, "Invalid tree index")
    leaves = records.find_leaves_by_tree_index(idx)
    if not leaves:
        return _fail(200, "No leaf found")
    return _ok([leaf.commitment for leaf in leaves])


def get_tree_index(records: RecordStore, commitment: str) -> Reply:
    if not commitment:
        return _fail(400, "Commitment is required")
    leaf = records.find_leaf_by_commitment(commitment)
    if leaf is None:
        return _fail(200, "No tree index found")
    return _ok({"treeIndex": str(leaf.tree_index)})
