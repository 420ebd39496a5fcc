# txwatch/engine.py
"""
Incremental synchronization of subscribed addresses against the chain head.

Two paths share the subscriber store:
1. On-demand catch-up (get_transactions) scans one address from its stored
   height to the current head and returns what it found.
2. Batch advance (update_transactions_data) is run by a periodic task; it scans
   from the lowest stored height once and fans every block out to all
   subscribers that still need it.

Progress is only ever written through store.update() with a FrontierMerge, so
whichever path reaches the store first wins a height range and the other path
cannot rewind it or count its transactions twice.
"""
import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from txwatch.chain import ChainClient
from txwatch.errors import ChainUnavailable, InvariantViolation, NotSubscribed
from txwatch.models import SubscriptionState, Transaction, normalize_address
from txwatch.store import SubscriberStore

log = logging.getLogger("txwatch.engine")


@dataclass(slots=True)
class FrontierMerge:
    """Store update applying a scan of the contiguous heights [start, stop).

    The scan only counts if it covers the stored frontier ``c``
    (``start <= c < stop``). Matches below ``c`` were already recorded by
    another scan and are dropped.
    """

    start: int
    stop: int
    matches: list[Transaction]
    applied: bool = False
    appended: int = 0

    def __call__(self, state: SubscriptionState) -> SubscriptionState:
        c = state.last_processed_height
        if c < self.start or c >= self.stop:
            return state
        fresh = [tx for tx in self.matches if tx.block_height >= c]
        state.transactions.extend(fresh)
        state.last_processed_height = self.stop
        self.applied = True
        self.appended = len(fresh)
        return state


@dataclass(slots=True)
class CatchUpResult:
    address: str
    last_processed_height: int
    transactions: list[Transaction]


@dataclass(slots=True)
class AdvanceReport:
    start_height: int | None = None
    end_height: int | None = None
    blocks_fetched: int = 0
    addresses: int = 0
    advanced: dict[str, int] = field(default_factory=dict)
    matched: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "start_height": self.start_height,
            "end_height": self.end_height,
            "blocks_fetched": self.blocks_fetched,
            "addresses": self.addresses,
            "advanced": dict(self.advanced),
            "matched": self.matched,
            "error": self.error,
        }


class SyncEngine:
    def __init__(self, client: ChainClient, store: SubscriberStore) -> None:
        self.client = client
        self.store = store

    async def get_current_block(self) -> int:
        return await self.client.current_height()

    # =========================================================================
    # Subscriptions
    # =========================================================================

    async def subscribe_address(self, address: str) -> SubscriptionState:
        """Start tracking ``address`` from the current head.

        Earlier blocks are never scanned. Subscribing again replaces the old
        state, history included.
        """
        addr = normalize_address(address)
        height = await self.get_current_block()
        state = SubscriptionState(address=addr, last_processed_height=height)
        await self.store.set(addr, state)
        log.info("Subscribed %s at block %s", addr, height)
        return state

    async def unsubscribe_address(self, address: str) -> None:
        addr = normalize_address(address)
        await self.store.delete(addr)
        log.info("Unsubscribed %s", addr)

    async def is_subscribed(self, address: str) -> bool:
        return await self.store.exists(normalize_address(address))

    async def get_subscription(self, address: str) -> SubscriptionState:
        return await self.store.get(normalize_address(address))

    async def get_history(self, address: str) -> list[Transaction]:
        """All transactions recorded for ``address`` since it was subscribed."""
        state = await self.store.get(normalize_address(address))
        return state.transactions

    # =========================================================================
    # On-demand catch-up
    # =========================================================================

    async def get_transactions(self, address: str, stop: asyncio.Event | None = None) -> list[Transaction]:
        """Scan ``address`` up to the current head and return the newly found transactions.

        A block fetch failure (or ``stop`` being set) ends the scan early. That
        is not an error: progress is saved up to the block that failed, which is
        where the next call resumes, and the matches found so far are returned.
        """
        result = await self.catch_up(address, stop)
        return result.transactions

    async def catch_up(self, address: str, stop: asyncio.Event | None = None) -> CatchUpResult:
        """get_transactions, plus the height the address was left at."""
        addr = normalize_address(address)
        if not await self.store.exists(addr):
            raise NotSubscribed(addr)

        current = await self.client.current_height()
        state = await self.store.get(addr)
        start = state.last_processed_height

        if start > current + 1:
            raise InvariantViolation(
                f"{addr} is recorded at block {start} but the chain head is {current}"
            )
        if start == current + 1:
            log.debug("%s already synced to head %s", addr, current)
            return CatchUpResult(addr, start, [])

        matches, next_height = await self._scan(addr, start, current, stop)
        last_processed = next_height
        if next_height > start:
            merge = FrontierMerge(start, next_height, matches)
            updated = await self.store.update(addr, merge)
            if updated is None:
                log.warning("%s was unsubscribed during catch-up; progress dropped", addr)
            else:
                last_processed = updated.last_processed_height
                if not merge.applied:
                    log.debug("%s moved to %s during catch-up; keeping it", addr, last_processed)
        log.info("Catch-up %s: blocks %s..%s, %s transactions", addr, start, next_height - 1, len(matches))
        return CatchUpResult(addr, last_processed, matches)

    async def _scan(
        self, address: str, start: int, end: int, stop: asyncio.Event | None
    ) -> tuple[list[Transaction], int]:
        """Fetch blocks start..end for one address. Returns the matches and the first unscanned height."""
        matches: list[Transaction] = []
        for height in range(start, end + 1):
            if stop is not None and stop.is_set():
                log.info("Catch-up of %s stopped before block %s", address, height)
                return matches, height
            try:
                block = await self.client.block_by_height(height)
            except ChainUnavailable as e:
                log.error("Failed to get block %s: %s", height, e)
                return matches, height
            log.debug("Retrieved transactions of block %s", height)
            matches.extend(block.matching(address))
        return matches, end + 1

    # =========================================================================
    # Batch advance
    # =========================================================================

    async def update_transactions_data(self, stop: asyncio.Event | None = None) -> AdvanceReport:
        """Advance every subscription to the current head in one pass.

        Best effort: a failed height query or block fetch ends the pass and is
        reported in the returned AdvanceReport, never raised.
        """
        report = AdvanceReport()
        try:
            current = await self.client.current_height()
        except ChainUnavailable as e:
            report.error = str(e)
            log.warning("Batch advance skipped: %s", e)
            return report

        subscribers = await self.store.get_all()
        if not subscribers:
            return report

        # Our view of each address's frontier, refreshed from every store write
        heights = {addr: st.last_processed_height for addr, st in subscribers.items()}
        start = min(heights.values())
        report.addresses = len(heights)
        report.start_height = start
        report.end_height = current

        for height in range(start, current + 1):
            if not heights:
                break
            eligible = [addr for addr, h in heights.items() if h <= height]
            if not eligible:
                continue
            if stop is not None and stop.is_set():
                report.error = f"stopped before block {height}"
                break
            try:
                block = await self.client.block_by_height(height)
            except ChainUnavailable as e:
                report.error = str(e)
                log.error("Batch advance stopped at block %s: %s", height, e)
                break
            report.blocks_fetched += 1

            for addr in eligible:
                merge = FrontierMerge(height, height + 1, block.matching(addr))
                updated = await self.store.update(addr, merge)
                if updated is None:
                    log.debug("%s unsubscribed during batch advance", addr)
                    heights.pop(addr)
                    continue
                if not merge.applied and updated.last_processed_height <= height:
                    # Re-subscribed behind this pass; its earlier progress here was discarded
                    log.debug("%s reset to %s during batch advance", addr, updated.last_processed_height)
                    heights.pop(addr)
                    report.advanced.pop(addr, None)
                    continue
                heights[addr] = updated.last_processed_height
                if merge.applied:
                    report.advanced[addr] = updated.last_processed_height
                    report.matched += merge.appended

        log.info(
            "Batch advance %s..%s: %s blocks, %s addresses advanced, %s transactions%s",
            start, current, report.blocks_fetched, len(report.advanced), report.matched,
            f" (aborted: {report.error})" if report.error else "",
        )
        return report


@dataclass(slots=True)
class SyncStatus:
    """Outcome of the background ticks, for health reporting."""

    ticks: int = 0
    consecutive_failures: int = 0
    last_error: str | None = None
    last_success_at: float | None = None
    last_report: AdvanceReport | None = None

    def record(self, report: AdvanceReport) -> None:
        self.ticks += 1
        self.last_report = report
        if report.ok:
            self.consecutive_failures = 0
            self.last_success_at = time.time()
        else:
            self.consecutive_failures += 1
            self.last_error = report.error

    def record_exception(self, e: BaseException) -> None:
        self.ticks += 1
        self.consecutive_failures += 1
        self.last_error = f"{e.__class__.__name__}: {e}"

    @property
    def healthy(self) -> bool:
        return self.consecutive_failures == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "ticks": self.ticks,
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error,
            "last_success_at": self.last_success_at,
            "last_report": self.last_report.to_dict() if self.last_report else None,
        }


async def periodic_update(
    engine: SyncEngine, stop: asyncio.Event, interval: float, status: SyncStatus | None = None
) -> None:
    """Run a batch advance every ``interval`` seconds until ``stop`` is set.

    A failed tick is skipped, not retried; the next one resumes from whatever
    progress was stored.
    """
    status = status if status is not None else SyncStatus()
    log.info("Periodic update starting (every %ss)", interval)
    while not stop.is_set():
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(stop.wait(), timeout=interval)
        if stop.is_set():
            break
        try:
            status.record(await engine.update_transactions_data(stop))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.exception("[sync] batch advance failed; continuing")
            status.record_exception(e)
    log.info("Periodic update stopped after %s ticks", status.ticks)
