"""Shared fixtures: in-memory stores, a scripted chain reader and log builders."""

import asyncio

import pytest
from eth_abi import encode

from zlink_indexer.config import TOPIC_SHIELD_ASSETS, TOPIC_UTXOS_UPDATE
from zlink_indexer.db import CheckpointStore, RecordStore, open_db
from zlink_indexer.decoder import EventDecoder
from zlink_indexer.models import RawEventLog

CONTRACT = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"
TOKEN = "0xfB6916095ca1df60bB79Ce92cE3Ea74c37c5d359"


def tx(n: int) -> str:
    return "0x%064x" % n


def word(byte: int) -> str:
    return "0x" + bytes([byte]).hex() * 32


def shield_log(block, log_index=0, txn=1, shield_byte=0x11, commitment_byte=0x22,
               token=TOKEN, nonce=7, amount=1000, tree_index=3):
    return RawEventLog(
        address=CONTRACT,
        topics=[
            TOPIC_SHIELD_ASSETS,
            word(shield_byte),
            word(commitment_byte),
            "0x" + "00" * 12 + token[2:].lower(),
        ],
        data="0x" + encode(["uint256", "uint256", "uint256"], [nonce, amount, tree_index]).hex(),
        block_number=block,
        tx_id=tx(txn),
        log_index=log_index,
    )


def transfer_log(block, log_index=0, txn=2, commitment_byte=0x33,
                 payload=b"\xde\xad\xbe\xef" * 5, tree_index=4):
    return RawEventLog(
        address=CONTRACT,
        topics=[TOPIC_UTXOS_UPDATE, word(commitment_byte)],
        data="0x" + encode(["bytes", "uint256"], [payload, tree_index]).hex(),
        block_number=block,
        tx_id=tx(txn),
        log_index=log_index,
    )


class FakeClock:
    """Monotonic clock whose ``sleep`` advances time instantly."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class FakeChainReader:
    """Chain reader substitute serving logs from a list."""

    def __init__(self, head: int, logs=(), fetch_failures: int = 0):
        self.head = head
        self.logs = list(logs)
        self.fetch_failures = fetch_failures
        self.connected = False
        self.connect_calls = 0
        self.get_logs_calls = []

    async def is_connected(self) -> bool:
        return self.connected

    async def connect(self) -> None:
        self.connect_calls += 1
        self.connected = True

    def close(self) -> None:
        self.connected = False

    async def current_height(self) -> int:
        return self.head

    async def get_logs(self, from_block, to_block, addresses=None, topic_filters=None):
        self.get_logs_calls.append((from_block, to_block))
        if self.fetch_failures:
            self.fetch_failures -= 1
            raise RuntimeError("rpc unavailable")
        return [lg for lg in self.logs if from_block <= lg.block_number <= to_block]


@pytest.fixture
def conn():
    c = open_db(":memory:")
    yield c
    c.close()


@pytest.fixture
def checkpoints(conn):
    return CheckpointStore(conn)


@pytest.fixture
def records(conn):
    return RecordStore(conn)


@pytest.fixture
def decoder():
    return EventDecoder()


@pytest.fixture
def clock():
    return FakeClock()
