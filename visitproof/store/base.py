"""
Shared store contract.

Everything that crosses worker boundaries (rate-limit counters,
idempotency leases) goes through these primitives. Each one must be
atomic in its implementation; callers never read-modify-write.

Implementations raise StoreUnavailableError when the backing store
cannot be reached. Callers decide the policy (fail-open, skip).
"""

from typing import Optional, Tuple


class SharedStore:
    """Atomic key/value primitives with per-key expiry."""

    def incr(self, key: str, ttl_ms: int) -> Tuple[int, int]:
        """
        Atomically increment key. The TTL is applied only when this call
        creates the key (first increment of a window).

        Returns:
            (new_count, remaining_ttl_ms)
        """
        raise NotImplementedError

    def get_counter(self, key: str) -> Tuple[int, int]:
        """(count, remaining_ttl_ms) without incrementing. (0, 0) if absent."""
        raise NotImplementedError

    def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        """Create key with value and expiry only if no live key exists."""
        raise NotImplementedError

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def delete(self, key: str) -> bool:
        """Delete key unconditionally. True if a live key was removed."""
        raise NotImplementedError

    def delete_if_equals(self, key: str, value: str) -> bool:
        """Compare-and-delete: remove key only if it currently holds value."""
        raise NotImplementedError

    def ping(self) -> bool:
        """True if the store is reachable. Never raises."""
        raise NotImplementedError

    def close(self) -> None:
        pass
