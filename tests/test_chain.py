"""Tests for the chain reader against a scripted web3 stand-in."""

import pytest
from hexbytes import HexBytes

from zlink_indexer.chain import ChainReader
from zlink_indexer.errors import RpcConnectionError
from zlink_indexer.governor import RateGovernor

from conftest import CONTRACT, FakeClock


class MockEth:
    def __init__(self, head=100, logs=(), fail=False):
        self.head = head
        self.logs = list(logs)
        self.fail = fail
        self.log_params = []

    @property
    def block_number(self):
        async def _height():
            if self.fail:
                raise ConnectionError("endpoint down")
            return self.head
        return _height()

    async def get_logs(self, params):
        if self.fail:
            raise ConnectionError("endpoint down")
        self.log_params.append(params)
        return self.logs


class MockWeb3:
    def __init__(self, eth):
        self.eth = eth

    async def is_connected(self):
        return not self.eth.fail


def make_reader(urls, eths, **gov_kw):
    clock = FakeClock()
    gov_kw.setdefault("requests_per_second", 1000)
    gov_kw.setdefault("retry_delay_ms", 1)
    governor = RateGovernor(clock=clock, sleep=clock.sleep, **gov_kw)
    reader = ChainReader(urls, governor)
    reader._build = lambda url: MockWeb3(eths[url])
    if len(urls) > 1:
        governor.set_switcher(reader)
    return reader


class TestConnection:

    @pytest.mark.asyncio
    async def test_reads_require_connect(self):
        reader = make_reader(["http://a"], {"http://a": MockEth()})
        assert await reader.is_connected() is False
        with pytest.raises(RpcConnectionError):
            await reader.current_height()
        with pytest.raises(RpcConnectionError):
            await reader.get_logs(1, 2)

    @pytest.mark.asyncio
    async def test_connect_then_height(self):
        reader = make_reader(["http://a"], {"http://a": MockEth(head=321)})
        await reader.connect()
        assert await reader.is_connected() is True
        assert await reader.current_height() == 321

    @pytest.mark.asyncio
    async def test_unreachable_endpoint(self):
        reader = make_reader(["http://a"], {"http://a": MockEth(fail=True)}, max_retries=2)
        with pytest.raises(RpcConnectionError, match="http://a"):
            await reader.connect()
        assert await reader.is_connected() is False

    @pytest.mark.asyncio
    async def test_close_drops_connection(self):
        reader = make_reader(["http://a"], {"http://a": MockEth()})
        await reader.connect()
        reader.close()
        assert await reader.is_connected() is False


class TestGetLogs:

    @pytest.mark.asyncio
    async def test_normalizes_web3_logs(self):
        raw = {
            "address": CONTRACT.lower(),
            "topics": [HexBytes("0x" + "ab" * 32), HexBytes("0x" + "CD" * 32)],
            "data": HexBytes("0x" + "00" * 31 + "05"),
            "blockNumber": 120,
            "transactionHash": HexBytes("0x" + "ef" * 32),
            "logIndex": 3,
        }
        eth = MockEth(logs=[raw])
        reader = make_reader(["http://a"], {"http://a": eth})
        await reader.connect()

        logs = await reader.get_logs(100, 140, [CONTRACT], [["0x" + "ab" * 32]])

        assert eth.log_params == [{
            "fromBlock": 100, "toBlock": 140,
            "address": [CONTRACT], "topics": [["0x" + "ab" * 32]],
        }]
        (log,) = logs
        assert log.address == CONTRACT
        assert log.topics == ["0x" + "ab" * 32, "0x" + "cd" * 32]
        assert log.data == "0x" + "00" * 31 + "05"
        assert log.block_number == 120
        assert log.tx_id == "0x" + "ef" * 32
        assert log.log_index == 3

    @pytest.mark.asyncio
    async def test_empty_data_becomes_0x(self):
        raw = {
            "address": CONTRACT, "topics": [], "data": HexBytes(b""),
            "blockNumber": 1, "transactionHash": HexBytes(b"\x01" * 32), "logIndex": 0,
        }
        reader = make_reader(["http://a"], {"http://a": MockEth(logs=[raw])})
        await reader.connect()
        (log,) = await reader.get_logs(1, 1)
        assert log.data == "0x"


class TestFailover:

    @pytest.mark.asyncio
    async def test_single_endpoint_cannot_switch(self):
        reader = make_reader(["http://a"], {"http://a": MockEth()})
        assert await reader.attempt_switch() is False
        assert reader.current_endpoint() == "http://a"

    @pytest.mark.asyncio
    async def test_switch_rotates_endpoints(self):
        eths = {"http://a": MockEth(), "http://b": MockEth()}
        reader = make_reader(["http://a", "http://b"], eths)
        assert await reader.attempt_switch() is True
        assert reader.current_endpoint() == "http://b"
        assert await reader.attempt_switch() is True
        assert reader.current_endpoint() == "http://a"

    @pytest.mark.asyncio
    async def test_retry_moves_to_fallback(self):
        eths = {"http://a": MockEth(fail=True), "http://b": MockEth(head=777)}
        reader = make_reader(["http://a", "http://b"], eths, max_retries=3)
        await reader.connect()

        assert reader.current_endpoint() == "http://b"
        assert await reader.current_height() == 777
