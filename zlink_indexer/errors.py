"""Error taxonomy for the indexer.

Transient RPC problems are retried by the governor, malformed events are
dropped one log at a time, duplicate records are ignored by the store, and
only repeated loop failures escalate to ``FatalSyncFailure``.
"""


class IndexerError(Exception):
    pass


class RpcConnectionError(IndexerError, ConnectionError):
    """No usable connection to the RPC endpoint."""


class DecodeError(IndexerError, ValueError):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class StoreConflict(IndexerError):
    """A record collides with an existing one on its uniqueness key."""


class MaxRetriesExceeded(IndexerError):
    def __init__(self, name: str, last_error: BaseException, attempts: int):
        super().__init__(
            f"Operation '{name}' failed after {attempts} retry attempts: {last_error}"
        )
        self.name = name
        self.last_error = last_error
        self.attempts = attempts


class FatalSyncFailure(IndexerError):
    def __init__(self, consecutive_errors: int, last_error: BaseException | None = None):
        super().__init__(
            f"sync stopped after {consecutive_errors} consecutive failures: {last_error}"
        )
        self.consecutive_errors = consecutive_errors
        self.last_error = last_error


class RelayError(IndexerError):
    pass
