"""
Shared store backends.

Accepted DSNs:
  - None or "mem://"          -> InMemoryStore (single process)
  - "sqlite:///path/to/db"    -> SQLiteStore on that file
  - "sqlite:///:memory:"      -> SQLiteStore on a private in-memory db
"""

from typing import Optional

from visitproof.core.clock import Clock
from visitproof.store.base import SharedStore
from visitproof.store.memory import InMemoryStore
from visitproof.store.sqlite import SQLiteDatabase, SQLiteStore


def sqlite_path(dsn: Optional[str]) -> Optional[str]:
    """Return the file path of a sqlite:/// DSN, or None for mem://."""
    if not dsn or dsn.strip().lower().startswith("mem://"):
        return None
    dsn = dsn.strip()
    if dsn.lower().startswith("sqlite:///"):
        path = dsn[len("sqlite:///"):]
        if path in (":memory:", ":mem:"):
            return ":memory:"
        if not path:
            raise ValueError(f"Missing path in dsn: {dsn}")
        return path
    raise ValueError(f"Unsupported store dsn: {dsn}")


def make_store(dsn: Optional[str], clock: Optional[Clock] = None) -> SharedStore:
    path = sqlite_path(dsn)
    if path is None:
        return InMemoryStore(clock)
    return SQLiteStore(path, clock)


__all__ = [
    "SharedStore",
    "InMemoryStore",
    "SQLiteStore",
    "SQLiteDatabase",
    "make_store",
    "sqlite_path",
]
