"""
tests/test_aggregator.py

Verification aggregation: monotonic flags, the eligibility rule, and the
single "became allowed" transition per (user, place).
"""

import threading

import pytest

from visitproof.verification.aggregator import (
    InMemoryVerificationRepository,
    SQLiteVerificationRepository,
    VerificationAggregator,
    make_verification_repository,
)


@pytest.fixture(params=["memory", "sqlite"])
def repository(request, tmp_path):
    if request.param == "memory":
        return InMemoryVerificationRepository()
    return SQLiteVerificationRepository(str(tmp_path / "verification.db"))


@pytest.fixture
def aggregator(repository, clock):
    return VerificationAggregator(repository, clock=clock)


class TestEligibility:

    def test_initially_not_allowed(self, aggregator):
        e = aggregator.get_eligibility("u1", "gangnam")
        assert not e.allowed
        assert not (e.gps_ok or e.qr_ok or e.receipt_ok)

    def test_gps_alone_is_not_enough(self, aggregator):
        assert not aggregator.record_gps("u1", "gangnam", True).after.allowed

    def test_gps_and_qr(self, aggregator):
        aggregator.record_gps("u1", "gangnam", True)
        change = aggregator.record_qr("u1", "gangnam", True)
        assert change.became_allowed
        assert aggregator.get_eligibility("u1", "gangnam").allowed

    def test_gps_and_receipt(self, aggregator):
        aggregator.record_receipt("u1", "gangnam", True)
        assert aggregator.record_gps("u1", "gangnam", True).became_allowed

    def test_qr_and_receipt_without_gps(self, aggregator):
        aggregator.record_qr("u1", "gangnam", True)
        aggregator.record_receipt("u1", "gangnam", True)
        assert not aggregator.get_eligibility("u1", "gangnam").allowed

    def test_pairs_are_independent(self, aggregator):
        aggregator.record("u1", "gangnam", gps_ok=True, qr_ok=True)
        assert not aggregator.get_eligibility("u1", "seongsu").allowed
        assert not aggregator.get_eligibility("u2", "gangnam").allowed

    def test_to_dict(self, aggregator):
        aggregator.record("u1", "gangnam", gps_ok=True, qr_ok=True)
        assert aggregator.get_eligibility("u1", "gangnam").to_dict() == {
            "allowed": True, "gpsOk": True, "qrOk": True, "receiptOk": False,
        }


class TestMonotonicity:

    def test_false_never_clears_true(self, aggregator):
        aggregator.record_gps("u1", "gangnam", True)
        aggregator.record_gps("u1", "gangnam", False)
        assert aggregator.get_eligibility("u1", "gangnam").gps_ok

    def test_recording_one_flag_leaves_others(self, aggregator):
        aggregator.record_qr("u1", "gangnam", True)
        aggregator.record_gps("u1", "gangnam", False)
        e = aggregator.get_eligibility("u1", "gangnam")
        assert e.qr_ok and not e.gps_ok

    def test_became_allowed_fires_once(self, aggregator):
        aggregator.record_gps("u1", "gangnam", True)
        assert aggregator.record_qr("u1", "gangnam", True).became_allowed
        assert not aggregator.record_qr("u1", "gangnam", True).became_allowed
        assert not aggregator.record_receipt("u1", "gangnam", True).became_allowed
        assert not aggregator.record_gps("u1", "gangnam", False).became_allowed

    def test_updated_at_follows_clock(self, aggregator, repository, clock):
        aggregator.record_gps("u1", "gangnam", True)
        clock.advance(5_000)
        aggregator.record_qr("u1", "gangnam", True)
        assert repository.get("u1", "gangnam").updated_at_ms == clock.now_ms()


class TestReceiptRequired:

    def test_qr_and_receipt_both_required(self, repository, clock):
        aggregator = VerificationAggregator(repository, receipt_required=True, clock=clock)
        aggregator.record("u1", "gangnam", gps_ok=True, qr_ok=True)
        assert not aggregator.get_eligibility("u1", "gangnam").allowed
        assert aggregator.record_receipt("u1", "gangnam", True).became_allowed


class TestConcurrentRecording:

    def test_exactly_one_transition_under_contention(self, clock):
        aggregator = VerificationAggregator(clock=clock)
        aggregator.record_gps("u1", "gangnam", True)
        transitions = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            if aggregator.record_qr("u1", "gangnam", True).became_allowed:
                transitions.append(1)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(transitions) == 1


class TestRepositoryFactory:

    def test_memory_default(self):
        assert isinstance(make_verification_repository(None), InMemoryVerificationRepository)
        assert isinstance(make_verification_repository("mem://"), InMemoryVerificationRepository)

    def test_sqlite_persists_across_instances(self, tmp_path, clock):
        dsn = f"sqlite:///{tmp_path / 'v.db'}"
        VerificationAggregator(make_verification_repository(dsn), clock=clock).record(
            "u1", "gangnam", gps_ok=True, qr_ok=True
        )
        reopened = VerificationAggregator(make_verification_repository(dsn), clock=clock)
        assert reopened.get_eligibility("u1", "gangnam").allowed
