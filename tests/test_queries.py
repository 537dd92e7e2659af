"""Tests for the read-only query projections."""

import json

from zlink_indexer import queries
from zlink_indexer.models import EncryptedUnspent, LeafRecord, PublicUnspent, ShieldNote

from conftest import TOKEN, tx, word


def seed_unspents(records, encrypted=3, public=2):
    rows = [EncryptedUnspent(100 + i, tx(i), "0x%04x" % i) for i in range(encrypted)]
    rows += [
        PublicUnspent(200 + i, tx(100 + i), ShieldNote(word(0x11), str(1000 + i), str(i), TOKEN))
        for i in range(public)
    ]
    records.insert_unspents(rows)


class TestHealth:

    def test_uninitialized(self, checkpoints):
        assert queries.health(checkpoints) == (500, {"isSuccess": False, "message": "Indexer not initialized"})

    def test_reports_lag(self, checkpoints):
        checkpoints.set_checkpoint(141, 150)
        status, body = queries.health(checkpoints)
        assert status == 200
        assert body["data"] == {"lastIndexedBlock": 141, "latestBlock": 150, "difference": 9}


class TestUtxos:

    def test_encrypted_page(self, records):
        seed_unspents(records)
        status, body = queries.get_utxos(records, 0, 2, "encrypted")
        assert status == 200
        assert body["data"] == {
            "start": 0, "end": 2, "total": 3, "remaining": True,
            "result": ["0x0000", "0x0001"],
        }

    def test_last_page_has_nothing_remaining(self, records):
        seed_unspents(records)
        _, body = queries.get_utxos(records, "2", "10", "encrypted")
        assert body["data"]["result"] == ["0x0002"]
        assert body["data"]["remaining"] is False

    def test_unencrypted_payload_is_hex_encoded_json(self, records):
        seed_unspents(records)
        _, body = queries.get_utxos(records, 0, 100, "unencrypted")
        first = body["data"]["result"][0]
        note = json.loads(bytes.fromhex(first).decode("utf-8"))
        assert note == {"shield_address": word(0x11), "amount": "1000", "nonce": "0", "token": TOKEN}
        assert body["data"]["total"] == 2

    def test_invalid_type(self, records):
        assert queries.get_utxos(records, 0, 10, "plain")[0] == 400
        assert queries.get_utxos(records, 0, 10)[1]["message"] == "Invalid utxos type"

    def test_span_limit(self, records):
        assert queries.get_utxos(records, 0, 1100, "encrypted")[0] == 200
        status, body = queries.get_utxos(records, 0, 1101, "encrypted")
        assert status == 400
        assert body["message"] == "Max limit exceeded"

    def test_invalid_range(self, records):
        assert queries.get_utxos(records, 10, 5, "encrypted")[0] == 400
        assert queries.get_utxos(records, -1, 5, "encrypted")[0] == 400
        assert queries.get_utxos(records, "a", 5, "encrypted")[0] == 400


class TestLeafLookups:

    def test_commitments_by_tree_index(self, records):
        records.insert_leaves([
            LeafRecord(100, 0, tx(1), word(0x01), 8),
            LeafRecord(100, 1, tx(1), word(0x02), 8),
        ])
        assert queries.get_commitments(records, "8") == (200, {"isSuccess": True, "data": [word(0x01), word(0x02)]})

    def test_commitments_missing(self, records):
        status, body = queries.get_commitments(records, 9)
        assert status == 200
        assert body == {"isSuccess": False, "message": "No leaf found"}

    def test_commitments_bad_index(self, records):
        assert queries.get_commitments(records, "x")[0] == 400
        assert queries.get_commitments(records, -3)[0] == 400

    def test_tree_index_of_commitment(self, records):
        records.insert_leaves([LeafRecord(100, 0, tx(1), word(0xcd), 2**100)])
        status, body = queries.get_tree_index(records, word(0xcd))
        assert status == 200
        assert body["data"] == {"treeIndex": str(2**100)}

    def test_tree_index_missing_and_empty(self, records):
        assert queries.get_tree_index(records, word(0xcd))[1]["message"] == "No tree index found"
        assert queries.get_tree_index(records, "") == (400, {"isSuccess": False, "message": "Commitment is required"})
