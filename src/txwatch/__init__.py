"""Track transactions of subscribed addresses by incrementally scanning blocks from a ledger node."""

__version__ = "0.1.0"
