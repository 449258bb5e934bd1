"""
tests/test_scan.py

Scan verification flow: each failing factor is reported by name, and a
successful scan records evidence and enqueues exactly one settlement job.
"""

import math

import pytest

from visitproof.core.models import GeoPoint, Geofence, LocationSample, Place, VerifyFailure
from visitproof.core.signer import DEFAULT_VALIDITY_MS
from visitproof.guard.ratelimit import RateLimiter
from visitproof.settlement.queue import SettlementQueue
from visitproof.verification.aggregator import VerificationAggregator
from visitproof.verification.scan import ScanVerifier, idempotency_key


CENTER = GeoPoint(37.4979, 127.0276)
_M_PER_DEG_LAT = math.pi * 6_371_000 / 180


def at(metres_north: float, accuracy: float = 10.0) -> LocationSample:
    return LocationSample(CENTER.lat + metres_north / _M_PER_DEG_LAT, CENTER.lng, accuracy)


@pytest.fixture
def places():
    return [Place("gangnam", Geofence(CENTER, radius_meters=80, max_accuracy_meters=100))]


@pytest.fixture
def queue(clock):
    return SettlementQueue(clock=clock)


@pytest.fixture
def aggregator(clock):
    return VerificationAggregator(clock=clock)


@pytest.fixture
def scanner(signer, aggregator, places, queue, clock):
    return ScanVerifier(signer, aggregator, places, queue=queue, clock=clock)


class TestRejections:

    def test_malformed(self, scanner):
        outcome = scanner.verify("garbage", "u1", at(10))
        assert not outcome.ok
        assert outcome.reason == VerifyFailure.MALFORMED

    def test_expired(self, scanner, signer, clock):
        raw = signer.issue("gangnam", "m1").serialize()
        clock.advance(DEFAULT_VALIDITY_MS + 1)
        assert scanner.verify(raw, "u1", at(10)).reason == VerifyFailure.EXPIRED

    def test_signature(self, scanner, signer):
        token = signer.issue("gangnam", "m1").with_signature("forged")
        outcome = scanner.verify(token.serialize(), "u1", at(10))
        assert outcome.reason == VerifyFailure.SIGNATURE
        assert outcome.place_id == "gangnam"

    def test_unknown_place(self, scanner, signer):
        raw = signer.issue("atlantis", "m1").serialize()
        assert scanner.verify(raw, "u1", at(10)).reason == VerifyFailure.MALFORMED

    def test_geofence_reports_distance(self, scanner, signer):
        raw = signer.issue("gangnam", "m1").serialize()
        outcome = scanner.verify(raw, "u1", at(500))
        assert outcome.reason == VerifyFailure.GEOFENCE
        data = outcome.to_dict()
        assert data["reason"] == "GEOFENCE"
        assert data["geofence"]["radius"] == 80
        assert data["geofence"]["distance"] == pytest.approx(500, abs=0.5)
        assert data["geofence"]["center"] == {"lat": CENTER.lat, "lng": CENTER.lng}

    def test_receipt_rule(self, signer, aggregator, places, queue, clock):
        scanner = ScanVerifier(
            signer, aggregator, places, queue=queue, receipt_required=True, clock=clock,
        )
        raw = signer.issue("gangnam", "m1").serialize()
        assert scanner.verify(raw, "u1", at(10)).reason == VerifyFailure.RULE
        assert scanner.verify(raw, "u1", at(10), receipt_id="r-1").ok

    def test_rejection_records_nothing(self, scanner, signer, aggregator, queue):
        raw = signer.issue("gangnam", "m1").serialize()
        scanner.verify(raw, "u1", at(500))
        e = aggregator.get_eligibility("u1", "gangnam")
        assert not (e.gps_ok or e.qr_ok)
        assert queue.stats()["total"] == 0


class TestSuccess:

    def test_first_success_enqueues_one_job(self, scanner, signer, queue):
        raw = signer.issue("gangnam", "m1").serialize()
        outcome = scanner.verify(raw, "u1", at(50))
        assert outcome.ok
        assert outcome.eligibility.allowed
        assert outcome.job_id is not None

        [job] = queue.pop_ready()
        assert job.job_id == outcome.job_id
        assert job.payload.idempotency_key == idempotency_key("u1", "gangnam", "m1")
        assert job.payload.amount == 1000
        assert job.payload.currency == "KRW"

    def test_repeat_scan_does_not_enqueue_again(self, scanner, signer, queue):
        raw = signer.issue("gangnam", "m1").serialize()
        scanner.verify(raw, "u1", at(50))
        again = scanner.verify(raw, "u1", at(40))
        assert again.ok
        assert again.job_id is None
        assert queue.stats()["total"] == 1

    def test_receipt_evidence_recorded(self, scanner, signer, aggregator):
        raw = signer.issue("gangnam", "m1").serialize()
        scanner.verify(raw, "u1", at(10), receipt_id="r-1")
        assert aggregator.get_eligibility("u1", "gangnam").receipt_ok

    def test_amount_override(self, scanner, signer, queue):
        raw = signer.issue("gangnam", "m1").serialize()
        scanner.verify(raw, "u1", at(10), amount=2500)
        assert queue.pop_ready()[0].payload.amount == 2500

    def test_without_queue(self, signer, aggregator, places, clock):
        scanner = ScanVerifier(signer, aggregator, places, clock=clock)
        raw = signer.issue("gangnam", "m1").serialize()
        outcome = scanner.verify(raw, "u1", at(10))
        assert outcome.ok and outcome.job_id is None


class TestThrottle:

    @pytest.fixture
    def limited(self, signer, aggregator, places, queue, clock, store):
        limiter = RateLimiter(store, {"scan_verify": {"limit": 2, "window_sec": 60}})
        return ScanVerifier(
            signer, aggregator, places, queue=queue, clock=clock, rate_limiter=limiter,
        )

    def test_over_limit_is_rate_limited(self, limited, signer, aggregator):
        raw = signer.issue("gangnam", "m1").serialize()
        assert limited.verify(raw, "u1", at(10), client_id="203.0.113.7").ok
        assert limited.verify(raw, "u1", at(10), client_id="203.0.113.7").ok

        outcome = limited.verify(raw, "u2", at(10), client_id="203.0.113.7")

        assert outcome.reason == VerifyFailure.RATE_LIMITED
        assert outcome.rate_limit.remaining == -1
        assert outcome.to_dict()["retryAfter"] == 60
        assert RateLimiter.headers(outcome.rate_limit)["Retry-After"] == "60"
        assert not aggregator.get_eligibility("u2", "gangnam").qr_ok

    def test_throttled_before_token_check(self, limited):
        limited.verify("garbage", "u1", at(10))
        limited.verify("garbage", "u1", at(10))
        assert limited.verify("garbage", "u1", at(10)).reason == VerifyFailure.RATE_LIMITED

    def test_user_id_is_the_default_identity(self, limited, signer):
        raw = signer.issue("gangnam", "m1").serialize()
        for _ in range(2):
            limited.verify(raw, "u1", at(10))
        assert limited.verify(raw, "u1", at(10)).reason == VerifyFailure.RATE_LIMITED
        assert limited.verify(raw, "u2", at(10)).ok

    def test_window_reset(self, limited, signer, clock):
        raw = signer.issue("gangnam", "m1").serialize()
        for _ in range(3):
            limited.verify(raw, "u1", at(10))
        clock.advance(60_000)
        assert limited.verify(signer.issue("gangnam", "m1").serialize(), "u1", at(10)).ok

    def test_store_outage_fails_open(self, signer, aggregator, places, clock, unreachable_store):
        scanner = ScanVerifier(
            signer, aggregator, places, clock=clock,
            rate_limiter=RateLimiter(unreachable_store, {"scan_verify": {"limit": 0, "window_sec": 60}}),
        )
        outcome = scanner.verify(signer.issue("gangnam", "m1").serialize(), "u1", at(10))
        assert outcome.ok
        assert outcome.rate_limit.degraded
