"""
tests/test_concurrency.py

Concurrency safety for the shared primitives.
Several threads sharing one queue, store and provider must never settle
a job twice, lose a job, or lose a counter increment.

Run:
    pytest tests/test_concurrency.py -v --tb=short
"""

import threading

import pytest

from visitproof.core.models import JobOutcomeStatus, SettlementPayload
from visitproof.guard.idempotency import IdempotencyLockManager
from visitproof.guard.ratelimit import RateLimiter
from visitproof.settlement.provider import MockProvider
from visitproof.settlement.queue import SettlementQueue, make_job_backend, new_settlement_job
from visitproof.settlement.worker import SettlementWorker
from visitproof.store import make_store


def _run_threads(target, n: int):
    errors = []
    barrier = threading.Barrier(n)

    def wrapped():
        try:
            barrier.wait()
            target()
        except Exception as e:
            errors.append(str(e))

    threads = [threading.Thread(target=wrapped) for _ in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return errors


@pytest.fixture(params=["mem://", "sqlite"])
def dsn(request, tmp_path):
    if request.param == "sqlite":
        return f"sqlite:///{tmp_path / 'shared.db'}"
    return request.param


class TestConcurrency:

    def test_concurrent_workers_settle_each_job_once(self, dsn, clock, signer):
        """Four workers draining one queue must settle all 40 jobs exactly once."""
        store    = make_store(dsn, clock)
        queue    = SettlementQueue(make_job_backend(dsn), clock)
        provider = MockProvider()
        events   = []
        events_lock = threading.Lock()

        def on_event(event):
            with events_lock:
                events.append(event)

        for i in range(40):
            queue.enqueue(new_settlement_job(SettlementPayload(
                mission_id=      f"m{i}",
                amount=          100,
                currency=        "KRW",
                idempotency_key= f"u{i}:gangnam:m{i}",
            )))

        outcomes = []
        outcomes_lock = threading.Lock()

        def drain():
            worker = SettlementWorker(
                queue, IdempotencyLockManager(store, clock=clock), signer, provider,
                clock=clock, batch_limit=3, on_event=on_event,
            )
            while True:
                batch = worker.run_once()
                if not batch:
                    return
                with outcomes_lock:
                    outcomes.extend(batch)

        errors = _run_threads(drain, 4)

        # Step 1: no exceptions escaped any worker
        assert errors == [], f"Concurrent workers raised: {errors}"

        # Step 2: every job settled, none twice
        settled = [o.job_id for o in outcomes if o.status == JobOutcomeStatus.SETTLED]
        assert len(settled) == 40
        assert len(set(settled)) == 40

        # Step 3: one captured payment and one event per mission
        assert provider.calls == 40
        assert sorted(e.mission_id for e in events) == sorted(f"m{i}" for i in range(40))
        assert queue.stats()["total"] == 0

    def test_concurrent_rate_limit_increments_are_not_lost(self, dsn, clock):
        """32 simultaneous checks must observe 32 distinct counts."""
        limiter = RateLimiter(make_store(dsn, clock))
        seen = []
        seen_lock = threading.Lock()

        def hit():
            result = limiter.check("scan_verify", "198.51.100.4", limit=10, window_sec=60)
            with seen_lock:
                seen.append(result.used)

        errors = _run_threads(hit, 32)

        assert errors == []
        assert sorted(seen) == list(range(1, 33))
        assert sum(1 for used in seen if used <= 10) == 10

    def test_concurrent_leases_are_exclusive(self, dsn, clock):
        """Only one of many simultaneous acquirers holds the lease."""
        locks = IdempotencyLockManager(make_store(dsn, clock), clock=clock)
        leases = []
        leases_lock = threading.Lock()

        def grab():
            lease = locks.acquire("settle:u1:gangnam:m1", 60_000)
            if lease is not None:
                with leases_lock:
                    leases.append(lease)

        errors = _run_threads(grab, 16)

        assert errors == []
        assert len(leases) == 1
        assert not leases[0].degraded
