"""
visitproof/core/clock.py

The only source of "now" in VisitProof.

Every component that needs the current time takes a Clock. Production
code uses SystemClock; tests drive ManualClock so that TTLs, backoff and
token expiry are exercised without real wall-clock waits.
"""

import threading
import time
from datetime import datetime, timezone


class Clock:
    """Millisecond wall clock."""

    def now_ms(self) -> int:
        raise NotImplementedError


class SystemClock(Clock):
    def now_ms(self) -> int:
        return int(time.time() * 1000)


class ManualClock(Clock):
    """
    Deterministic clock. Starts at start_ms and only moves when told to.
    Thread-safe so it can be shared by concurrent workers in tests.
    """

    def __init__(self, start_ms: int = 1_700_000_000_000) -> None:
        self._now  = start_ms
        self._lock = threading.Lock()

    def now_ms(self) -> int:
        with self._lock:
            return self._now

    def advance(self, ms: int) -> int:
        with self._lock:
            self._now += ms
            return self._now

    def set(self, ms: int) -> None:
        with self._lock:
            self._now = ms


def iso_timestamp(ms: int) -> str:
    """
    Format epoch milliseconds as YYYY-MM-DDTHH:MM:SS.mmmZ
    (exactly 3 fractional digits, Z suffix).
    """
    dt = datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ms % 1000:03d}Z"
