"""
Verification: consensus over scanner reads, geofence evaluation, the
per-(user, place) eligibility aggregator, and the scan, location,
receipt and status flows built on them.
"""

from visitproof.verification.aggregator import (
    InMemoryVerificationRepository,
    SQLiteVerificationRepository,
    VerificationAggregator,
    make_verification_repository,
)
from visitproof.verification.consensus import (
    ConsensusValidator,
    ScanSession,
    adaptive_threshold,
)
from visitproof.verification.flow import RateGate, SettlementTrigger, VerifyOutcome
from visitproof.verification.geofence import GeofenceEvaluator, haversine_m
from visitproof.verification.location import LocationVerifier
from visitproof.verification.receipt import ReceiptVerifier
from visitproof.verification.scan import ScanVerifier
from visitproof.verification.status import EligibilityStatus

__all__ = [
    "ConsensusValidator",
    "EligibilityStatus",
    "GeofenceEvaluator",
    "InMemoryVerificationRepository",
    "LocationVerifier",
    "RateGate",
    "ReceiptVerifier",
    "SQLiteVerificationRepository",
    "ScanSession",
    "ScanVerifier",
    "SettlementTrigger",
    "VerificationAggregator",
    "VerifyOutcome",
    "adaptive_threshold",
    "haversine_m",
    "make_verification_repository",
]
