"""Domain data structures for subscriptions and the chain data they track."""

import re
from dataclasses import dataclass, field
from typing import Any

from txwatch.errors import InvalidAddress

_HEX_ADDRESS = re.compile(r"^0x[0-9a-fA-F]{40}$")


def parse_hex_quantity(value: str) -> int:
    """Decode a 0x-prefixed base-16 quantity (e.g. "0x1b4") into an int."""
    if not isinstance(value, str) or not value.startswith(("0x", "0X")) or len(value) < 3:
        raise ValueError(f"not a hex quantity: {value!r}")
    return int(value[2:], 16)


def to_hex_quantity(value: int) -> str:
    if value < 0:
        raise ValueError(f"quantity must be unsigned: {value}")
    return hex(value)


def normalize_address(address: str | None) -> str:
    """Validate an address and return its canonical form.

    0x-prefixed addresses must be 20-byte hex and are lowercased, which is how
    nodes render ``from``/``to``. Anything else non-empty is kept as an opaque id.
    """
    if address is None:
        raise InvalidAddress("address is not defined")
    addr = address.strip()
    if not addr:
        raise InvalidAddress("address is not defined")
    if any(ch.isspace() for ch in addr):
        raise InvalidAddress(f"address contains whitespace: {address!r}")
    if addr[:2].lower() == "0x":
        if not _HEX_ADDRESS.match(addr):
            raise InvalidAddress(f"malformed hex address: {address!r}")
        return addr.lower()
    return addr


@dataclass(frozen=True, slots=True)
class Transaction:
    hash: str
    block_height: int
    sender: str
    recipient: str | None
    value: str

    @classmethod
    def from_rpc(cls, obj: dict[str, Any], height: int) -> "Transaction":
        """Build from a node transaction object.

        ``to`` is null for contract creation. ``blockNumber`` is ignored in favour
        of the height the block was requested at.
        """
        return cls(
            hash=obj.get("hash", ""),
            block_height=height,
            sender=_lower_hex(obj.get("from") or ""),
            recipient=_lower_hex(obj["to"]) if obj.get("to") else None,
            value=obj.get("value") or "0x0",
        )

    def touches(self, address: str) -> bool:
        return self.sender == address or self.recipient == address

    def to_dict(self) -> dict[str, Any]:
        return {
            "hash": self.hash,
            "blockNumber": to_hex_quantity(self.block_height),
            "from": self.sender,
            "to": self.recipient,
            "value": self.value,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Transaction":
        return cls(
            hash=d["hash"],
            block_height=parse_hex_quantity(d["blockNumber"]),
            sender=d["from"],
            recipient=d.get("to"),
            value=d["value"],
        )


@dataclass(frozen=True, slots=True)
class Block:
    height: int
    hash: str | None
    transactions: tuple[Transaction, ...] = ()

    @classmethod
    def from_rpc(cls, obj: dict[str, Any], height: int) -> "Block":
        txs = []
        for t in obj.get("transactions") or []:
            # Blocks fetched without full transactions only carry hashes
            if isinstance(t, dict):
                txs.append(Transaction.from_rpc(t, height))
        return cls(height=height, hash=obj.get("hash"), transactions=tuple(txs))

    def matching(self, address: str) -> list[Transaction]:
        return [tx for tx in self.transactions if tx.touches(address)]


@dataclass(slots=True)
class SubscriptionState:
    """Sync progress for one address.

    Every block below ``last_processed_height`` has been scanned for ``address``.
    """

    address: str
    last_processed_height: int
    transactions: list[Transaction] = field(default_factory=list)

    def copy(self) -> "SubscriptionState":
        # Transactions are frozen, so a new list is enough to isolate the copy
        return SubscriptionState(
            address=self.address,
            last_processed_height=self.last_processed_height,
            transactions=list(self.transactions),
        )

    def __str__(self):
        return f"{self.address} -- next={self.last_processed_height} -- txs={len(self.transactions)}"


def _lower_hex(value: str) -> str:
    return value.lower() if value[:2].lower() == "0x" else value
