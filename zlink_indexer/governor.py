"""Rate/retry governor for outbound chain RPC calls.

Every call goes through ``run``: it waits for a free slot (minimum spacing of
``1 / requests_per_second`` between call starts and at most
``requests_per_second`` starts per one-second window, with the spacing
clock started when the governor is created), then executes the
operation with exponential-backoff retries.  Endpoint failover is delegated
to an injected ``EndpointSwitcher``.
"""
import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, List, Optional, Protocol, Sequence

from zlink_indexer.errors import MaxRetriesExceeded

logger = logging.getLogger(__name__)

Operation = Callable[[], Awaitable[Any]]


class EndpointSwitcher(Protocol):
    async def attempt_switch(self) -> bool:
        """Move to another endpoint; return whether a switch happened."""
        ...


class RateGovernor:
    def __init__(
        self,
        requests_per_second: int = 5,
        max_retries: int = 3,
        retry_delay_ms: int = 1000,
        batch_size: int = 10,
        switcher: Optional[EndpointSwitcher] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if requests_per_second < 1:
            raise ValueError("requests_per_second must be >= 1")
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        self.requests_per_second = requests_per_second
        self.max_retries = max_retries
        self.retry_delay_ms = retry_delay_ms
        self.batch_size = batch_size
        self._switcher = switcher
        self._clock = clock
        self._sleep = sleep

        self._lock = asyncio.Lock()
        self._min_spacing = 1.0 / requests_per_second
        # spacing counts from creation, so the first call of a fresh governor waits too
        self._last_request: float = clock()
        self._request_count = 0
        self._window_start = self._last_request

        self._switch_count = 0
        self._last_switch: Optional[float] = None

    @classmethod
    def from_settings(cls, settings, switcher: Optional[EndpointSwitcher] = None) -> "RateGovernor":
        return cls(
            requests_per_second=settings.requests_per_second,
            max_retries=settings.max_retries,
            retry_delay_ms=settings.retry_delay_ms,
            batch_size=settings.governor_batch_size,
            switcher=switcher,
        )

    def set_switcher(self, switcher: Optional[EndpointSwitcher]) -> None:
        self._switcher = switcher

    # ---------- rate limiting ----------
    async def _acquire_slot(self, name: str) -> None:
        async with self._lock:
            now = self._clock()
            if now - self._window_start >= 1.0:
                self._request_count = 0
                self._window_start = now

            # window full: wait for it to reset, then re-check
            while self._request_count >= self.requests_per_second:
                wait = 1.0 - (now - self._window_start)
                if wait > 0:
                    logger.debug(
                        "[governor] rate limit reached, waiting %.0fms before %s", wait * 1000, name,
                        extra={"operation": name, "delay_ms": wait * 1000},
                    )
                    await self._sleep(wait)
                now = self._clock()
                if now - self._window_start >= 1.0:
                    self._request_count = 0
                    self._window_start = now

            gap = self._min_spacing - (now - self._last_request)
            if gap > 0:
                await self._sleep(gap)

            self._last_request = self._clock()
            self._request_count += 1

    # ---------- endpoint failover ----------
    async def _try_switch(self, name: str, attempt: int) -> bool:
        try:
            switched = await self._switcher.attempt_switch()
        except Exception as e:
            logger.warning(
                "[governor] endpoint switch failed during retry of %s: %s", name, e,
                extra={"operation": name, "attempt": attempt},
            )
            return False
        if switched:
            self._switch_count += 1
            self._last_switch = self._clock()
            logger.info(
                "[governor] switched RPC endpoint during retry of %s (attempt %d)", name, attempt,
                extra={"operation": name, "attempt": attempt},
            )
        return bool(switched)

    # ---------- execution ----------
    async def run(self, operation: Operation, name: str = "operation"):
        last_error: Optional[BaseException] = None
        switched = False

        for attempt in range(1, self.max_retries + 1):
            await self._acquire_slot(name)
            try:
                return await operation()
            except Exception as e:
                last_error = e
                logger.warning(
                    "[governor] retry attempt %d/%d for %s: %s", attempt, self.max_retries, name, e,
                    extra={"operation": name, "attempt": attempt},
                )
                if attempt == self.max_retries:
                    break

                # switch on the first failure, then every second attempt
                if self._switcher is not None and (not switched or attempt % 2 == 0):
                    if await self._try_switch(name, attempt):
                        switched = True

                delay_ms = self.retry_delay_ms * 2 ** (attempt - 1)
                logger.info(
                    "[governor] retrying %s in %dms (attempt %d/%d)",
                    name, delay_ms, attempt + 1, self.max_retries,
                    extra={"operation": name, "attempt": attempt + 1, "delay_ms": delay_ms},
                )
                await self._sleep(delay_ms / 1000)

        logger.error(
            "[governor] %s failed after %d attempts: %s", name, self.max_retries, last_error,
            extra={"operation": name},
        )
        raise MaxRetriesExceeded(name, last_error, self.max_retries) from last_error

    async def run_batch(
        self,
        operations: Sequence[Operation],
        batch_size: Optional[int] = None,
        name: str = "batch",
    ) -> List[Any]:
        """Run operations in chunks of ``batch_size``; results keep submission order."""
        size = batch_size or self.batch_size
        if size < 1:
            raise ValueError("batch_size must be >= 1")

        results: List[Any] = []
        total_chunks = (len(operations) + size - 1) // size
        for i in range(0, len(operations), size):
            chunk = operations[i:i + size]
            chunk_results = await asyncio.gather(
                *[self.run(op, f"{name}[{i + j}]") for j, op in enumerate(chunk)]
            )
            results.extend(chunk_results)
            logger.debug(
                "[governor] processed chunk %d/%d (%d ops, %d total)",
                i // size + 1, total_chunks, len(chunk), len(results),
            )
        return results

    def stats(self) -> dict:
        now = self._clock()
        return {
            "request_count": self._request_count,
            "time_until_reset_ms": max(0.0, 1.0 - (now - self._window_start)) * 1000,
            "total_switches": self._switch_count,
            "last_switch_at": self._last_switch,
            "seconds_since_last_switch": None if self._last_switch is None else now - self._last_switch,
        }
