"""
In-process shared store.

A single lock guards a dict of key -> (value, expires_at_ms). Expired
keys are swept lazily at the start of every call, so no timer thread
exists. Suitable for a single owning process and for tests.
"""

import threading
from typing import Dict, Optional, Tuple

from visitproof.core.clock import Clock, SystemClock
from visitproof.store.base import SharedStore


class InMemoryStore(SharedStore):

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self.clock = clock or SystemClock()
        self._lock: threading.Lock = threading.Lock()
        self._data: Dict[str, Tuple[str, int]] = {}

    # ── Internal ──────────────────────────────────────────────

    def _sweep(self, now: int) -> None:
        expired = [k for k, (_, exp) in self._data.items() if exp <= now]
        for k in expired:
            del self._data[k]

    # ── SharedStore ───────────────────────────────────────────

    def incr(self, key: str, ttl_ms: int) -> Tuple[int, int]:
        with self._lock:
            now = self.clock.now_ms()
            self._sweep(now)
            if key in self._data:
                value, exp = self._data[key]
                count = int(value) + 1
            else:
                count, exp = 1, now + ttl_ms
            self._data[key] = (str(count), exp)
            return count, exp - now

    def get_counter(self, key: str) -> Tuple[int, int]:
        with self._lock:
            now = self.clock.now_ms()
            self._sweep(now)
            if key not in self._data:
                return 0, 0
            value, exp = self._data[key]
            return int(value), exp - now

    def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        with self._lock:
            now = self.clock.now_ms()
            self._sweep(now)
            if key in self._data:
                return False
            self._data[key] = (value, now + ttl_ms)
            return True

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            self._sweep(self.clock.now_ms())
            entry = self._data.get(key)
            return entry[0] if entry else None

    def delete(self, key: str) -> bool:
        with self._lock:
            self._sweep(self.clock.now_ms())
            return self._data.pop(key, None) is not None

    def delete_if_equals(self, key: str, value: str) -> bool:
        with self._lock:
            self._sweep(self.clock.now_ms())
            entry = self._data.get(key)
            if entry is None or entry[0] != value:
                return False
            del self._data[key]
            return True

    def ping(self) -> bool:
        return True

    def __len__(self) -> int:
        with self._lock:
            self._sweep(self.clock.now_ms())
            return len(self._data)
