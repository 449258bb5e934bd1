"""
Idempotency leases.

Two interfaces over the same store keys:

    try_lock(key, ttl_ms) / unlock(key)
        Base form. unlock deletes unconditionally, so any caller that
        knows the key can release it.

    acquire(key, ttl_ms) -> Lease | None / release(lease)
        Ownership form. The lease value is a random token and release is
        compare-and-delete, so a caller whose lease already expired and
        was re-acquired elsewhere cannot release the new holder's lease.

A failed acquisition is a normal "someone else is processing" signal.
If the store is unreachable the manager skips duplicate suppression and
reports the lock as held (Lease.degraded=True) so work continues without
the safety net; the downstream provider's idempotency key remains the
correctness guarantee.
"""

import logging
import secrets
from typing import Optional

from visitproof.core.clock import Clock, SystemClock
from visitproof.core.exceptions import StoreUnavailableError
from visitproof.core.models import Lease
from visitproof.store.base import SharedStore


logger = logging.getLogger(__name__)

DEFAULT_LOCK_TTL_MS = 60_000
_BASE_LOCK_VALUE    = "1"


class IdempotencyLockManager:

    def __init__(
        self,
        store:  SharedStore,
        prefix: str = "idem:",
        clock:  Optional[Clock] = None,
    ) -> None:
        self.store  = store
        self.prefix = prefix
        self.clock  = clock or getattr(store, "clock", None) or SystemClock()

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    # ── Base form ─────────────────────────────────────────────

    def try_lock(self, key: str, ttl_ms: int = DEFAULT_LOCK_TTL_MS) -> bool:
        try:
            return self.store.set_if_absent(self._key(key), _BASE_LOCK_VALUE, ttl_ms)
        except StoreUnavailableError as exc:
            logger.warning("lock store unavailable, skipping duplicate check for %s: %s", key, exc)
            return True

    def unlock(self, key: str) -> None:
        try:
            self.store.delete(self._key(key))
        except StoreUnavailableError as exc:
            logger.warning("lock store unavailable, lease %s left to expire: %s", key, exc)

    # ── Ownership form ────────────────────────────────────────

    def acquire(self, key: str, ttl_ms: int = DEFAULT_LOCK_TTL_MS) -> Optional[Lease]:
        token = secrets.token_hex(16)
        now   = self.clock.now_ms()
        try:
            if not self.store.set_if_absent(self._key(key), token, ttl_ms):
                return None
        except StoreUnavailableError as exc:
            logger.warning("lock store unavailable, skipping duplicate check for %s: %s", key, exc)
            return Lease(key=key, token=token, expires_at_ms=0, degraded=True)
        return Lease(key=key, token=token, expires_at_ms=now + ttl_ms)

    def release(self, lease: Lease) -> bool:
        """True if this lease was still held and is now released."""
        if lease.degraded:
            return False
        try:
            return self.store.delete_if_equals(self._key(lease.key), lease.token)
        except StoreUnavailableError as exc:
            logger.warning("lock store unavailable, lease %s left to expire: %s", lease.key, exc)
            return False

    def is_locked(self, key: str) -> bool:
        try:
            return self.store.get(self._key(key)) is not None
        except StoreUnavailableError:
            return False
