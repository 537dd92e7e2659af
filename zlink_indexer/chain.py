"""Chain reader: a narrow boundary over one AsyncWeb3 endpoint.

All RPC calls go through the governor under a fixed operation name.  The
reader also acts as the governor's endpoint switcher when fallback URLs are
configured.
"""
import logging
from typing import List, Optional, Sequence

from web3 import AsyncWeb3, AsyncHTTPProvider

from zlink_indexer.errors import MaxRetriesExceeded, RpcConnectionError
from zlink_indexer.governor import RateGovernor
from zlink_indexer.helpers import normalize_log
from zlink_indexer.models import RawEventLog

logger = logging.getLogger(__name__)


class ChainReader:
    def __init__(self, endpoints: Sequence[str], governor: RateGovernor):
        if not endpoints:
            raise ValueError("at least one RPC endpoint is required")
        self._endpoints = list(endpoints)
        self._active = 0
        self._w3: Optional[AsyncWeb3] = None
        self.governor = governor

    @classmethod
    def from_settings(cls, settings) -> "ChainReader":
        governor = RateGovernor.from_settings(settings)
        reader = cls(settings.endpoints, governor)
        if len(reader._endpoints) > 1:
            governor.set_switcher(reader)
        return reader

    def _build(self, url: str) -> AsyncWeb3:
        return AsyncWeb3(AsyncHTTPProvider(url))

    def current_endpoint(self) -> str:
        return self._endpoints[self._active]

    # ---------- connection ----------
    async def connect(self) -> None:
        self._w3 = self._build(self.current_endpoint())
        try:
            head = await self.current_height()
        except MaxRetriesExceeded as e:
            self._w3 = None
            raise RpcConnectionError(f"cannot reach {self.current_endpoint()}: {e.last_error}") from e
        logger.info("[chain] connected to %s at block %d", self.current_endpoint(), head)

    def close(self) -> None:
        self._w3 = None
        logger.info("[chain] connection closed")

    async def is_connected(self) -> bool:
        if self._w3 is None:
            return False
        try:
            return bool(await self._w3.is_connected())
        except Exception as e:
            logger.warning("[chain] connection check failed: %s", e)
            return False

    def _require(self) -> AsyncWeb3:
        if self._w3 is None:
            raise RpcConnectionError("Web3 connection not established; call connect() first")
        return self._w3

    # ---------- reads ----------
    async def current_height(self) -> int:
        self._require()
        # re-read self._w3 on every attempt so an endpoint switch takes effect
        result = await self.governor.run(lambda: self._w3.eth.block_number, "getBlockNumber")
        return int(result)

    async def get_logs(
        self,
        from_block: int,
        to_block: int,
        addresses: Optional[List[str]] = None,
        topic_filters: Optional[List] = None,
    ) -> List[RawEventLog]:
        self._require()
        params = {"fromBlock": from_block, "toBlock": to_block}
        if addresses:
            params["address"] = addresses
        if topic_filters:
            params["topics"] = topic_filters

        logs = await self.governor.run(
            lambda: self._w3.eth.get_logs(params), f"getLogs({from_block}-{to_block})"
        )
        return [normalize_log(lg) for lg in logs]

    # ---------- failover ----------
    async def attempt_switch(self) -> bool:
        if len(self._endpoints) <= 1:
            return False
        previous = self.current_endpoint()
        self._active = (self._active + 1) % len(self._endpoints)
        self._w3 = self._build(self.current_endpoint())
        logger.info("[chain] switched endpoint %s -> %s", previous, self.current_endpoint())
        return True
