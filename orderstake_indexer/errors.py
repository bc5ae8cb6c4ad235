"""Exception taxonomy shared by the indexer components."""

from typing import Optional


class IndexerError(Exception):
    """Base class for all indexer errors."""


class ConfigError(IndexerError):
    pass


class ChainConnectionError(IndexerError, ConnectionError):
    """The RPC endpoint is unreachable or a reconnect is in progress."""


class NetworkMismatchError(IndexerError):
    """The endpoint reports a different chain than the one configured."""

    def __init__(self, expected: int, actual: int):
        super().__init__(f"Network mismatch: expected chain {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class QueryRangeError(IndexerError):
    """A log query for one block range failed."""

    def __init__(
        self,
        event_name: str,
        address: str,
        from_block: int,
        to_block: int,
        reason: Optional[str] = None,
    ):
        msg = f"{event_name} logs for {address} in {from_block}-{to_block} failed"
        if reason:
            msg = f"{msg}: {reason}"
        super().__init__(msg)
        self.event_name = event_name
        self.address = address
        self.from_block = from_block
        self.to_block = to_block


class StoreCorruptionError(IndexerError):
    def __init__(self, path: str, reason: str):
        super().__init__(f"Unreadable store file {path}: {reason}")
        self.path = path


class EnrichmentError(IndexerError):
    """An auxiliary contract read used for a projection failed."""
