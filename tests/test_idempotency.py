"""
tests/test_idempotency.py

Idempotency leases: mutual exclusion, release, TTL expiry, ownership
tokens, and the skip policy when the store is unreachable.
"""

import threading

import pytest

from visitproof.guard.idempotency import IdempotencyLockManager
from visitproof.store.sqlite import SQLiteStore


@pytest.fixture(params=["memory", "sqlite"])
def locks(request, store, clock, tmp_path):
    if request.param == "memory":
        return IdempotencyLockManager(store)
    return IdempotencyLockManager(SQLiteStore(str(tmp_path / "locks.db"), clock))


class TestTryLock:

    def test_second_lock_fails(self, locks):
        assert locks.try_lock("settle:k1", 60_000)
        assert not locks.try_lock("settle:k1", 60_000)

    def test_unlock_allows_relock(self, locks):
        locks.try_lock("settle:k1", 60_000)
        locks.unlock("settle:k1")
        assert locks.try_lock("settle:k1", 60_000)

    def test_ttl_expiry_allows_relock(self, locks, clock):
        locks.try_lock("settle:k1", 1_000)
        clock.advance(999)
        assert not locks.try_lock("settle:k1", 1_000)
        clock.advance(1)
        assert locks.try_lock("settle:k1", 1_000)

    def test_keys_are_independent(self, locks):
        assert locks.try_lock("a", 60_000)
        assert locks.try_lock("b", 60_000)

    def test_is_locked(self, locks):
        assert not locks.is_locked("k")
        locks.try_lock("k", 60_000)
        assert locks.is_locked("k")

    def test_concurrent_try_lock_grants_exactly_one(self, locks):
        winners = []
        barrier = threading.Barrier(16)

        def contend():
            barrier.wait()
            if locks.try_lock("settle:race", 60_000):
                winners.append(threading.get_ident())

        threads = [threading.Thread(target=contend) for _ in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(winners) == 1


class TestLeases:

    def test_acquire_and_release(self, locks, clock):
        lease = locks.acquire("settle:k1", 60_000)
        assert lease is not None
        assert len(lease.token) == 32
        assert lease.expires_at_ms == clock.now_ms() + 60_000
        assert locks.acquire("settle:k1", 60_000) is None
        assert locks.release(lease)
        assert locks.acquire("settle:k1", 60_000) is not None

    def test_stale_lease_cannot_release_new_holder(self, locks, clock):
        stale = locks.acquire("settle:k1", 1_000)
        clock.advance(1_000)
        current = locks.acquire("settle:k1", 60_000)
        assert current is not None

        assert not locks.release(stale)
        assert locks.is_locked("settle:k1")
        assert locks.release(current)

    def test_release_twice(self, locks):
        lease = locks.acquire("k", 60_000)
        assert locks.release(lease)
        assert not locks.release(lease)


class TestStoreUnavailable:

    def test_try_lock_skips_duplicate_check(self, unreachable_store, clock):
        locks = IdempotencyLockManager(unreachable_store, clock=clock)
        assert locks.try_lock("k", 60_000)
        assert locks.try_lock("k", 60_000)
        locks.unlock("k")

    def test_acquire_returns_degraded_lease(self, unreachable_store, clock):
        locks = IdempotencyLockManager(unreachable_store, clock=clock)
        lease = locks.acquire("k", 60_000)
        assert lease is not None and lease.degraded
        assert not locks.release(lease)
        assert not locks.is_locked("k")
