import asyncio
import logging
from typing import Callable, Protocol

import txwatch.constants as C
from txwatch.errors import NotSubscribed
from txwatch.models import SubscriptionState

log = logging.getLogger("txwatch.store")

StateUpdate = Callable[[SubscriptionState], SubscriptionState]


class SubscriberStore(Protocol):
    async def get_all(self) -> dict[str, SubscriptionState]: ...
    async def get(self, address: str) -> SubscriptionState: ...
    async def set(self, address: str, state: SubscriptionState) -> None: ...
    async def exists(self, address: str) -> bool: ...
    async def delete(self, address: str) -> None: ...
    async def update(self, address: str, fn: StateUpdate) -> SubscriptionState | None: ...


class InMemorySubscriberStore:
    """Subscriptions held in process memory.

    One lock covers the whole map, so reads queue behind each other as well as
    behind writes; every hold is short and never awaits. Nothing handed out is
    a reference into the map: reads return copies and writes store copies.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._subscribers: dict[str, SubscriptionState] = {}

    async def get_all(self) -> dict[str, SubscriptionState]:
        async with self._lock:
            return {addr: st.copy() for addr, st in self._subscribers.items()}

    async def get(self, address: str) -> SubscriptionState:
        async with self._lock:
            st = self._subscribers.get(address)
            if st is None:
                raise NotSubscribed(address)
            return st.copy()

    async def set(self, address: str, state: SubscriptionState) -> None:
        if state.address != address:
            raise ValueError(f"state for {state.address} stored under {address}")
        async with self._lock:
            self._subscribers[address] = state.copy()
        log.debug("set %s", state)

    async def exists(self, address: str) -> bool:
        async with self._lock:
            return address in self._subscribers

    async def delete(self, address: str) -> None:
        async with self._lock:
            self._subscribers.pop(address, None)

    async def update(self, address: str, fn: StateUpdate) -> SubscriptionState | None:
        """Apply ``fn`` to the stored state atomically. Absent addresses are left absent."""
        async with self._lock:
            current = self._subscribers.get(address)
            if current is None:
                return None
            new = fn(current.copy())
            if new.last_processed_height < current.last_processed_height:
                raise ValueError(
                    f"refusing to rewind {address} from {current.last_processed_height} to {new.last_processed_height}"
                )
            self._subscribers[address] = new.copy()
            return new.copy()

    def __len__(self) -> int:
        return len(self._subscribers)


def build_store(cfg: dict) -> SubscriberStore:
    """Pick the store backend named in the ``[store]`` config section."""
    store_cfg = cfg.get("store", {})
    backend = store_cfg.get("backend", C.StoreBackend.MEMORY)
    if backend == C.StoreBackend.MEMORY:
        return InMemorySubscriberStore()
    if backend == C.StoreBackend.SQLITE:
        from txwatch.sqlite_store import SQLiteSubscriberStore

        return SQLiteSubscriberStore(db_path=store_cfg.get("path", C.DB_PATH))
    raise ValueError(f"unknown store backend: {backend!r}")
