"""In-memory stand-in for the ledger node."""
from txwatch.errors import ChainUnavailable
from txwatch.models import Block, Transaction

ADDR_A = "0x" + "aa" * 20
ADDR_B = "0x" + "bb" * 20
OTHER = "0x" + "99" * 20


def tx(tx_hash: str, height: int, sender: str, recipient: str | None, value: str = "0x1") -> Transaction:
    return Transaction(hash=tx_hash, block_height=height, sender=sender, recipient=recipient, value=value)


class FakeChain:
    def __init__(self, head: int = 0) -> None:
        self.head = head
        self.blocks: dict[int, list[Transaction]] = {}
        self.fail_heights: set[int] = set()
        self.height_down = False
        self.fetched: list[int] = []
        self.on_fetch = None  # optional coroutine function called with each fetched height

    def add(self, height: int, *txs: Transaction) -> None:
        self.blocks.setdefault(height, []).extend(txs)

    async def current_height(self) -> int:
        if self.height_down:
            raise ChainUnavailable("eth_blockNumber", "node unreachable")
        return self.head

    async def block_by_height(self, height: int, full_transactions: bool = True) -> Block:
        if height in self.fail_heights:
            raise ChainUnavailable("eth_getBlockByNumber", f"block {height} unavailable")
        self.fetched.append(height)
        if self.on_fetch is not None:
            await self.on_fetch(height)
        return Block(height=height, hash=f"0xblock{height}", transactions=tuple(self.blocks.get(height, ())))
