"""SQLite-backed persistent store for subscription state."""

import asyncio
import json
import sqlite3
import time
from pathlib import Path

from txwatch.errors import NotSubscribed
from txwatch.models import SubscriptionState, Transaction
from txwatch.store import StateUpdate
import txwatch.constants as C
import logging

log = logging.getLogger("txwatch.sqlite_store")


class SQLiteSubscriberStore:
    """Persistent subscriber store backed by SQLite.

    Same contract as InMemorySubscriberStore. The transaction history of an
    address is kept as a JSON blob on its row and replaced wholesale on write.
    """

    def __init__(self, db_path: str | Path = C.DB_PATH) -> None:
        self.db_path = Path(db_path)
        self._lock = asyncio.Lock()
        self._init_db()

    def _init_db(self) -> None:
        """Create tables if they don't exist."""
        conn = sqlite3.connect(self.db_path)
        try:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS subscriptions (
                    address TEXT PRIMARY KEY,
                    last_processed_height INTEGER NOT NULL,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL,
                    transactions TEXT NOT NULL  -- JSON list of wire-format transactions
                );
                """
            )
            conn.commit()
            log.debug(f"SQLite database initialized at {self.db_path}")
        finally:
            conn.close()

    @staticmethod
    def _row_to_state(address: str, height: int, blob: str) -> SubscriptionState:
        txs = [Transaction.from_dict(d) for d in json.loads(blob)]
        return SubscriptionState(address=address, last_processed_height=height, transactions=txs)

    @staticmethod
    def _fetch(conn: sqlite3.Connection, address: str) -> SubscriptionState | None:
        cursor = conn.execute(
            "SELECT address, last_processed_height, transactions FROM subscriptions WHERE address = ?",
            (address,),
        )
        row = cursor.fetchone()
        return SQLiteSubscriberStore._row_to_state(*row) if row else None

    @staticmethod
    def _write(conn: sqlite3.Connection, state: SubscriptionState) -> None:
        now = time.time()
        conn.execute(
            """
            INSERT INTO subscriptions (address, last_processed_height, created_at, updated_at, transactions)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(address) DO UPDATE SET
                last_processed_height = excluded.last_processed_height,
                updated_at = excluded.updated_at,
                transactions = excluded.transactions
            """,
            (
                state.address,
                state.last_processed_height,
                now,
                now,
                json.dumps([tx.to_dict() for tx in state.transactions]),
            ),
        )

    async def get_all(self) -> dict[str, SubscriptionState]:
        async with self._lock:
            conn = sqlite3.connect(self.db_path)
            try:
                cursor = conn.execute("SELECT address, last_processed_height, transactions FROM subscriptions")
                return {row[0]: self._row_to_state(*row) for row in cursor.fetchall()}
            finally:
                conn.close()

    async def get(self, address: str) -> SubscriptionState:
        async with self._lock:
            conn = sqlite3.connect(self.db_path)
            try:
                state = self._fetch(conn, address)
            finally:
                conn.close()
        if state is None:
            raise NotSubscribed(address)
        return state

    async def set(self, address: str, state: SubscriptionState) -> None:
        if state.address != address:
            raise ValueError(f"state for {state.address} stored under {address}")
        async with self._lock:
            conn = sqlite3.connect(self.db_path)
            try:
                self._write(conn, state)
                conn.commit()
            finally:
                conn.close()
        log.debug("set %s", state)

    async def exists(self, address: str) -> bool:
        async with self._lock:
            conn = sqlite3.connect(self.db_path)
            try:
                cursor = conn.execute("SELECT 1 FROM subscriptions WHERE address = ?", (address,))
                return cursor.fetchone() is not None
            finally:
                conn.close()

    async def delete(self, address: str) -> None:
        async with self._lock:
            conn = sqlite3.connect(self.db_path)
            try:
                conn.execute("DELETE FROM subscriptions WHERE address = ?", (address,))
                conn.commit()
            finally:
                conn.close()

    async def update(self, address: str, fn: StateUpdate) -> SubscriptionState | None:
        """Read, apply ``fn`` and write back in one locked transaction."""
        async with self._lock:
            conn = sqlite3.connect(self.db_path)
            try:
                current = self._fetch(conn, address)
                if current is None:
                    return None
                prev_height = current.last_processed_height
                new = fn(current)
                if new.last_processed_height < prev_height:
                    raise ValueError(
                        f"refusing to rewind {address} from {prev_height} to {new.last_processed_height}"
                    )
                self._write(conn, new)
                conn.commit()
                return new.copy()
            finally:
                conn.close()

    def has_state(self) -> bool:
        """Check if the database holds any subscriptions."""
        conn = sqlite3.connect(self.db_path)
        try:
            cursor = conn.execute("SELECT COUNT(*) FROM subscriptions")
            count = cursor.fetchone()[0]
            log.debug(f"Database state check: {count} subscriptions")
            return count > 0
        finally:
            conn.close()
