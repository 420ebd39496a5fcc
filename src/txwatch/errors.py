"""Errors raised by the sync engine and its collaborators."""


class TxWatchError(Exception):
    """Base for all txwatch errors."""


class ChainUnavailable(TxWatchError):
    """The ledger node could not answer a query (transport, timeout, bad status or RPC error)."""

    def __init__(self, method: str, reason: str) -> None:
        self.method = method
        self.reason = reason
        super().__init__(f"{method} failed: {reason}")


class InvalidAddress(TxWatchError):
    """Empty or malformed address."""


class NotSubscribed(TxWatchError):
    """The address has no subscription."""

    def __init__(self, address: str) -> None:
        self.address = address
        super().__init__(f"address {address} is not subscribed")


class InvariantViolation(TxWatchError):
    """Stored progress is ahead of the chain. Either a rollback on the node or a bug here."""
