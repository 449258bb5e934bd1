"""
SQLite-backed shared store.

Lets several worker processes on one host share counters and leases
through a single database file. Every primitive runs inside a
BEGIN IMMEDIATE transaction, so the read and the write of one call are
never interleaved with another writer.

SQLiteDatabase is also used by the SQLite job queue and verification
repository backends.
"""

import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import Generator, Optional, Tuple

from visitproof.core.clock import Clock, SystemClock
from visitproof.core.exceptions import StoreUnavailableError
from visitproof.store.base import SharedStore


_KV_SCHEMA = """
CREATE TABLE IF NOT EXISTS kv (
    key        TEXT PRIMARY KEY,
    value      TEXT NOT NULL,
    expires_at INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS kv_expires ON kv (expires_at);
"""


class SQLiteDatabase:
    """
    One shared connection (check_same_thread=False) guarded by a
    re-entrant lock, with IMMEDIATE transactions.
    """

    def __init__(self, path: str, schema: str = "") -> None:
        self.path = path
        if path != ":memory:":
            directory = os.path.dirname(os.path.abspath(path))
            os.makedirs(directory, exist_ok=True)
        self._g = threading.RLock()
        try:
            self._conn = sqlite3.connect(
                path,
                check_same_thread=False,
                isolation_level=None,
                timeout=30.0,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA busy_timeout=30000;")
            if path != ":memory:":
                self._conn.execute("PRAGMA journal_mode=WAL;")
        except sqlite3.Error as exc:
            raise StoreUnavailableError(
                "Cannot open SQLite database", {"path": path, "error": exc}
            ) from exc
        if schema:
            self.ensure_schema(schema)

    def ensure_schema(self, schema: str) -> None:
        with self._g:
            try:
                self._conn.executescript(schema)
            except sqlite3.Error as exc:
                raise StoreUnavailableError(
                    "Cannot create SQLite schema", {"path": self.path, "error": exc}
                ) from exc

    @contextmanager
    def tx(self) -> Generator[sqlite3.Connection, None, None]:
        """
        IMMEDIATE transaction. sqlite3 errors surface as
        StoreUnavailableError after rollback.
        """
        with self._g:
            try:
                self._conn.execute("BEGIN IMMEDIATE;")
            except sqlite3.Error as exc:
                raise StoreUnavailableError(
                    "SQLite store unavailable", {"path": self.path, "error": exc}
                ) from exc
            try:
                yield self._conn
            except sqlite3.Error as exc:
                self._conn.execute("ROLLBACK;")
                raise StoreUnavailableError(
                    "SQLite operation failed", {"path": self.path, "error": exc}
                ) from exc
            except BaseException:
                self._conn.execute("ROLLBACK;")
                raise
            else:
                self._conn.execute("COMMIT;")

    def close(self) -> None:
        with self._g:
            self._conn.close()


class SQLiteStore(SharedStore):

    def __init__(self, path: str, clock: Optional[Clock] = None) -> None:
        self.clock = clock or SystemClock()
        self.db    = SQLiteDatabase(path, _KV_SCHEMA)

    def _sweep(self, conn: sqlite3.Connection, now: int) -> None:
        conn.execute("DELETE FROM kv WHERE expires_at <= ?", (now,))

    def incr(self, key: str, ttl_ms: int) -> Tuple[int, int]:
        now = self.clock.now_ms()
        with self.db.tx() as conn:
            self._sweep(conn, now)
            row = conn.execute(
                "SELECT value, expires_at FROM kv WHERE key = ?", (key,)
            ).fetchone()
            if row is None:
                count, exp = 1, now + ttl_ms
                conn.execute(
                    "INSERT INTO kv (key, value, expires_at) VALUES (?, ?, ?)",
                    (key, "1", exp),
                )
            else:
                count, exp = int(row["value"]) + 1, int(row["expires_at"])
                conn.execute(
                    "UPDATE kv SET value = ? WHERE key = ?", (str(count), key)
                )
        return count, exp - now

    def get_counter(self, key: str) -> Tuple[int, int]:
        now = self.clock.now_ms()
        with self.db.tx() as conn:
            self._sweep(conn, now)
            row = conn.execute(
                "SELECT value, expires_at FROM kv WHERE key = ?", (key,)
            ).fetchone()
        if row is None:
            return 0, 0
        return int(row["value"]), int(row["expires_at"]) - now

    def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        now = self.clock.now_ms()
        with self.db.tx() as conn:
            self._sweep(conn, now)
            cur = conn.execute(
                "INSERT OR IGNORE INTO kv (key, value, expires_at) VALUES (?, ?, ?)",
                (key, value, now + ttl_ms),
            )
            return cur.rowcount == 1

    def get(self, key: str) -> Optional[str]:
        now = self.clock.now_ms()
        with self.db.tx() as conn:
            self._sweep(conn, now)
            row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def delete(self, key: str) -> bool:
        now = self.clock.now_ms()
        with self.db.tx() as conn:
            self._sweep(conn, now)
            cur = conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            return cur.rowcount == 1

    def delete_if_equals(self, key: str, value: str) -> bool:
        now = self.clock.now_ms()
        with self.db.tx() as conn:
            self._sweep(conn, now)
            cur = conn.execute(
                "DELETE FROM kv WHERE key = ? AND value = ?", (key, value)
            )
            return cur.rowcount == 1

    def ping(self) -> bool:
        try:
            with self.db.tx() as conn:
                conn.execute("SELECT 1")
            return True
        except StoreUnavailableError:
            return False

    def close(self) -> None:
        self.db.close()
