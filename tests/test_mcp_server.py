"""Smoke tests for the HTTP routes served next to the MCP tools."""

import pytest
from starlette.testclient import TestClient

from zlink_indexer.config import Settings
from zlink_indexer.db import CheckpointStore, RecordStore
from zlink_indexer.mcp_server import create_app
from zlink_indexer.models import EncryptedUnspent, LeafRecord

from conftest import CONTRACT, tx, word


def make_client(conn, private_key=None):
    settings = Settings(rpc_url="http://localhost:8545", contract_address=CONTRACT, private_key=private_key)
    return TestClient(create_app(settings, conn=conn).http_app())


@pytest.fixture
def client(conn):
    return make_client(conn)


class TestReadRoutes:

    def test_health(self, client, conn):
        assert client.get("/health").status_code == 500

        CheckpointStore(conn).set_checkpoint(141, 150)
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["data"] == {"lastIndexedBlock": 141, "latestBlock": 150, "difference": 9}

    def test_utxos_reads_query_params(self, client, conn):
        RecordStore(conn).insert_unspents([EncryptedUnspent(100 + i, tx(i), "0x%04x" % i) for i in range(3)])

        resp = client.get("/utxos", params={"start": 1, "end": 3, "utxos_type": "encrypted"})
        assert resp.status_code == 200
        assert resp.json()["data"]["result"] == ["0x0001", "0x0002"]

        resp = client.get("/utxos", params={"start": 0, "end": 1101, "utxos_type": "encrypted"})
        assert resp.status_code == 400
        assert resp.json()["message"] == "Max limit exceeded"

    def test_commitments_by_tree_index(self, client, conn):
        RecordStore(conn).insert_leaves([LeafRecord(120, 0, tx(1), word(0x22), 8)])

        resp = client.get("/commitments/8")
        assert resp.status_code == 200
        assert resp.json()["data"] == [word(0x22)]
        assert client.get("/commitments/abc").status_code == 400

    def test_tree_index_by_commitment(self, client, conn):
        RecordStore(conn).insert_leaves([LeafRecord(120, 0, tx(1), word(0x22), 8)])

        resp = client.get(f"/treeIndex/{word(0x22)}")
        assert resp.status_code == 200
        assert resp.json()["data"] == {"treeIndex": "8"}


class TestRelayRoute:

    def test_unavailable_without_key(self, client):
        resp = client.post("/relayer/submit-proof/unshieldNative", json={})
        assert resp.status_code == 400
        assert resp.json()["message"] == "Relayer is unavailable !!!"

    def test_body_must_be_a_json_object(self, conn):
        client = make_client(conn, private_key="0x" + "11" * 32)

        resp = client.post("/relayer/submit-proof/unshieldNative", content=b"not json",
                           headers={"content-type": "application/json"})
        assert resp.status_code == 400
        assert resp.json()["message"] == "Invalid request"

        resp = client.post("/relayer/submit-proof/unshieldNative", json=["proof"])
        assert resp.status_code == 400
        assert resp.json()["message"] == "Invalid request"
