"""Sync engine: resumable, checkpointed polling of zLink contract events.

One iteration is connect -> head -> range -> fetch -> decode -> checkpoint ->
persist.  The checkpoint for a range is written before any of its records, so
after a crash in between the range is not fetched again; duplicate inserts
from an in-process retry are skipped by the store's uniqueness keys.
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from zlink_indexer.config import TOPIC_SHIELD_ASSETS, TOPIC_UTXOS_UPDATE
from zlink_indexer.errors import FatalSyncFailure
from zlink_indexer.models import DecodedBatch

logger = logging.getLogger(__name__)


class SyncState(str, Enum):
    INITIALIZING   = "INITIALIZING"
    CONNECTING     = "CONNECTING"
    RANGE_COMPUTED = "RANGE_COMPUTED"
    FETCHING       = "FETCHING"
    DECODING       = "DECODING"
    CHECKPOINTING  = "CHECKPOINTING"
    PERSISTING     = "PERSISTING"
    IDLE_WAIT      = "IDLE_WAIT"
    ERROR_BACKOFF  = "ERROR_BACKOFF"
    STOPPED        = "STOPPED"


@dataclass(frozen=True)
class BlockRange:
    start: int
    end: int
    behind: int


def compute_range(next_block: int, head: int, block_difference: int, max_blocks: int) -> Optional[BlockRange]:
    """Next inclusive range to index, or None when the safe head has not moved past ``next_block``."""
    safe = head - block_difference
    if safe <= next_block:
        return None
    end = min(next_block + max_blocks, safe)
    return BlockRange(next_block, end, safe - next_block)


class BlockchainSync:
    def __init__(
        self,
        reader,
        decoder,
        checkpoints,
        records,
        contract_address: str,
        start_block: int = 1,
        block_difference: int = 10,
        max_blocks_per_batch: int = 1000,
        poll_delay_ms: int = 1000,
        error_delay_ms: int = 1000,
        max_consecutive_errors: int = 10,
        unspent_start_block: int = 0,
    ):
        self.reader = reader
        self.decoder = decoder
        self.checkpoints = checkpoints
        self.records = records
        self.addresses = [contract_address]
        self.topic_filters: List = [[TOPIC_SHIELD_ASSETS, TOPIC_UTXOS_UPDATE]]

        self.start_block = start_block
        self.block_difference = block_difference
        self.max_blocks_per_batch = max_blocks_per_batch
        self.poll_delay = poll_delay_ms / 1000
        self.error_delay = error_delay_ms / 1000
        self.max_consecutive_errors = max_consecutive_errors
        self.unspent_start_block = unspent_start_block

        self.state = SyncState.INITIALIZING
        self.next_block: Optional[int] = None
        self.latest_observed: Optional[int] = None
        self.consecutive_errors = 0
        self.last_error: Optional[BaseException] = None
        self._stop = asyncio.Event()

    @classmethod
    def from_settings(cls, settings, reader, decoder, checkpoints, records) -> "BlockchainSync":
        return cls(
            reader, decoder, checkpoints, records,
            contract_address=settings.contract_address,
            start_block=settings.start_block,
            block_difference=settings.block_difference,
            max_blocks_per_batch=settings.max_blocks_per_batch,
            poll_delay_ms=settings.poll_delay_ms,
            error_delay_ms=settings.retry_delay_ms,
            max_consecutive_errors=settings.max_consecutive_errors,
            unspent_start_block=settings.unspent_start_block,
        )

    def _set_state(self, state: SyncState) -> None:
        if state is not self.state:
            logger.debug("[sync] %s -> %s", self.state.value, state.value)
        self.state = state

    # ---------- lifecycle ----------
    def load_start_block(self) -> int:
        cp = self.checkpoints.get_checkpoint()
        if cp is not None:
            self.next_block = cp.last_indexed_block
            logger.info("[sync] resuming from checkpoint at block %d", self.next_block)
        else:
            self.next_block = self.start_block
            logger.info("[sync] no checkpoint, starting at block %d", self.next_block)
        return self.next_block

    def request_stop(self) -> None:
        if not self._stop.is_set():
            logger.info("[sync] stop requested")
        self._stop.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    async def _pause(self, seconds: float) -> None:
        # wakes early on stop
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    # ---------- one iteration ----------
    async def _ensure_connected(self) -> None:
        self._set_state(SyncState.CONNECTING)
        if not await self.reader.is_connected():
            await self.reader.connect()

    async def sync_once(self) -> bool:
        """Index the next range. Returns False when there was nothing to do."""
        if self.next_block is None:
            self.load_start_block()

        await self._ensure_connected()
        head = await self.reader.current_height()
        self.latest_observed = head

        rng = compute_range(self.next_block, head, self.block_difference, self.max_blocks_per_batch)
        if rng is None:
            logger.debug("[sync] no new blocks (head=%d, next=%d)", head, self.next_block)
            return False
        self._set_state(SyncState.RANGE_COMPUTED)
        logger.info("[sync] processing blocks %d to %d (%d blocks behind)", rng.start, rng.end, rng.behind)

        if self._stop.is_set():
            return False

        self._set_state(SyncState.FETCHING)
        logs = await self.reader.get_logs(rng.start, rng.end, self.addresses, self.topic_filters)

        self._set_state(SyncState.DECODING)
        batch = self.decoder.decode_batch(logs)

        # checkpoint before records
        self._set_state(SyncState.CHECKPOINTING)
        self.checkpoints.set_checkpoint(rng.end + 1, head)

        self._set_state(SyncState.PERSISTING)
        self._persist(batch)

        self.next_block = rng.end + 1
        logger.info(
            "[sync] indexed blocks %d to %d: %d logs, %d leaves, %d dropped",
            rng.start, rng.end, len(logs), len(batch.leaves), batch.dropped,
        )
        return True

    def _persist(self, batch: DecodedBatch) -> None:
        if batch.leaves:
            n = self.records.insert_leaves(batch.leaves)
            logger.info("[sync] inserted %d/%d leaves", n, len(batch.leaves))
        unspents = [u for u in batch.unspents if u.block_number >= self.unspent_start_block]
        if unspents:
            n = self.records.insert_unspents(unspents)
            logger.info("[sync] inserted %d/%d unspents", n, len(unspents))

    # ---------- main loop ----------
    async def run(self) -> None:
        self._set_state(SyncState.INITIALIZING)
        if self.next_block is None:
            self.load_start_block()

        while not self._stop.is_set():
            try:
                worked = await self.sync_once()
                self.consecutive_errors = 0
                if not worked and not self._stop.is_set():
                    self._set_state(SyncState.IDLE_WAIT)
                    await self._pause(self.poll_delay)
            except Exception as e:
                self.consecutive_errors += 1
                self.last_error = e
                if self.consecutive_errors >= self.max_consecutive_errors:
                    self._set_state(SyncState.STOPPED)
                    logger.error("[sync] too many consecutive errors (%d), stopping", self.consecutive_errors)
                    raise FatalSyncFailure(self.consecutive_errors, e) from e
                self._set_state(SyncState.ERROR_BACKOFF)
                logger.error(
                    "[sync] error in sync cycle (%d/%d), retrying from block %s: %s",
                    self.consecutive_errors, self.max_consecutive_errors, self.next_block, e,
                )
                await self._pause(self.error_delay * 2)

        self._set_state(SyncState.STOPPED)
        logger.info("[sync] sync process stopped gracefully at block %s", self.next_block)
